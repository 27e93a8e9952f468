"""
Color-based subject classification.

Skin-tone heuristic in HSV space. It is the guaranteed fallback when
the model backend is unavailable: no external dependency, no failure
mode, lower accuracy.
"""

from __future__ import annotations

from typing import Optional, Tuple
import numpy as np
from numpy.typing import NDArray
from loguru import logger

from subject_overlay.core.config import SkinToneThresholds
from subject_overlay.core.contracts import Frame, Mask, MaskKind


def rgb_to_hsv(rgb: NDArray[np.uint8]) -> Tuple[NDArray[np.float32], NDArray[np.float32], NDArray[np.float32]]:
    """
    Convert RGB pixels to HSV.

    Six-sector hue in whole degrees, wrapped to [0, 360).
    Saturation and value in [0, 1]; saturation is 0 when max is 0.

    Args:
        rgb: H x W x 3 uint8 array

    Returns:
        (hue, saturation, value) arrays, each H x W
    """
    channels = rgb.astype(np.float32) / 255.0
    r, g, b = channels[..., 0], channels[..., 1], channels[..., 2]

    cmax = channels.max(axis=-1)
    cmin = channels.min(axis=-1)
    delta = cmax - cmin
    safe_delta = np.where(delta == 0, 1.0, delta)

    sector = np.select(
        [delta == 0, cmax == r, cmax == g],
        [
            np.zeros_like(delta),
            np.mod((g - b) / safe_delta, 6.0),
            (b - r) / safe_delta + 2.0,
        ],
        default=(r - g) / safe_delta + 4.0,
    )

    # Round half up to whole degrees, then wrap 360 back to 0
    hue = np.mod(np.floor(sector * 60.0 + 0.5), 360.0).astype(np.float32)
    saturation = np.where(cmax == 0, 0.0, delta / np.where(cmax == 0, 1.0, cmax)).astype(np.float32)
    value = cmax.astype(np.float32)

    return hue, saturation, value


class ColorMaskClassifier:
    """
    Skin-tone classifier producing a binary opacity mask.

    Subject pixels get 255 (and, with color preservation on, keep their
    original RGB); everything else gets 0 and black.
    """

    def __init__(
        self,
        thresholds: Optional[SkinToneThresholds] = None,
        preserve_color: bool = True,
    ):
        """
        Initialize classifier.

        Args:
            thresholds: HSV bounds, tunable for lighting conditions
            preserve_color: Carry original subject RGB in the mask
        """
        self.thresholds = thresholds or SkinToneThresholds()
        self.preserve_color = preserve_color

    def skin_pixels(self, rgb: NDArray[np.uint8]) -> NDArray[np.bool_]:
        """Boolean H x W map of pixels inside the skin-tone bounds."""
        hue, saturation, value = rgb_to_hsv(rgb)
        t = self.thresholds

        hue_ok = np.zeros(hue.shape, dtype=bool)
        for low, high in t.hue_ranges:
            hue_ok |= (hue >= low) & (hue <= high)

        sat_ok = (saturation >= t.saturation[0]) & (saturation <= t.saturation[1])
        val_ok = (value >= t.value[0]) & (value <= t.value[1])

        return hue_ok & sat_ok & val_ok

    def classify(self, frame: Frame) -> Mask:
        """
        Classify every pixel of a frame.

        Args:
            frame: Source frame

        Returns:
            RAW mask with values exactly 0 or 255
        """
        rgb = frame.rgb
        skin = self.skin_pixels(rgb)

        values = np.where(skin, 255, 0).astype(np.uint8)
        color = None
        if self.preserve_color:
            color = np.where(skin[..., None], rgb, 0).astype(np.uint8)

        if values.size:
            logger.debug(
                f"Skin detection: {np.count_nonzero(skin)}/{values.size} pixels "
                f"({100.0 * np.count_nonzero(skin) / values.size:.2f}%)"
            )

        return Mask(values=values, color=color, kind=MaskKind.RAW)

"""
Output Surfaces.

The overlay surface is a transparent RGBA layer the subject is drawn
onto; the background stream is rendered separately and the two are
combined by compose_over_background() for display.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Tuple
import numpy as np
from numpy.typing import NDArray
import cv2

from subject_overlay.core.contracts import Frame, PlacementRect


class OutputSurface(ABC):
    """A drawable target whose size may change between ticks."""

    @property
    @abstractmethod
    def size(self) -> Tuple[int, int]:
        """Current (width, height) in pixels."""

    @abstractmethod
    def clear(self) -> None:
        """Erase the previous overlay."""

    @abstractmethod
    def draw(self, frame: Frame, rect: PlacementRect, opacity: float = 1.0) -> None:
        """Alpha-composite `frame` into `rect` ("over" operator)."""


class OverlaySurface(OutputSurface):
    """
    In-memory transparent RGBA canvas.

    Pixels are stored with straight (non-premultiplied) alpha.
    """

    def __init__(self, width: int = 640, height: int = 360):
        self._pixels = np.zeros((height, width, 4), dtype=np.uint8)
        self.draw_calls = 0

    @property
    def size(self) -> Tuple[int, int]:
        return (int(self._pixels.shape[1]), int(self._pixels.shape[0]))

    def resize(self, width: int, height: int) -> None:
        """Match the container size; contents are discarded on change."""
        if (width, height) != self.size:
            self._pixels = np.zeros((max(0, height), max(0, width), 4), dtype=np.uint8)

    def clear(self) -> None:
        self._pixels[:] = 0

    def draw(self, frame: Frame, rect: PlacementRect, opacity: float = 1.0) -> None:
        self.draw_calls += 1
        x, y, w, h = rect.to_pixels()
        if w <= 0 or h <= 0:
            return

        # Premultiply before scaling so transparent pixels do not bleed color
        src = frame.pixels.astype(np.float32) / 255.0
        src[:, :, :3] *= src[:, :, 3:4]
        src = cv2.resize(src, (w, h), interpolation=cv2.INTER_LINEAR)
        src *= float(np.clip(opacity, 0.0, 1.0))

        surface_w, surface_h = self.size
        x0, y0 = max(0, x), max(0, y)
        x1, y1 = min(surface_w, x + w), min(surface_h, y + h)
        if x0 >= x1 or y0 >= y1:
            return

        src = src[y0 - y:y1 - y, x0 - x:x1 - x]
        dst = self._pixels[y0:y1, x0:x1].astype(np.float32) / 255.0
        dst[:, :, :3] *= dst[:, :, 3:4]

        out = src + dst * (1.0 - src[:, :, 3:4])
        alpha = out[:, :, 3:4]
        out[:, :, :3] = np.where(alpha > 0, out[:, :, :3] / np.maximum(alpha, 1e-6), 0.0)

        self._pixels[y0:y1, x0:x1] = np.clip(np.rint(out * 255.0), 0, 255).astype(np.uint8)

    def snapshot(self) -> Frame:
        return Frame(self._pixels)

    @property
    def pixels(self) -> NDArray[np.uint8]:
        return self._pixels


def compose_over_background(
    background: Frame,
    overlay: Frame,
) -> NDArray[np.uint8]:
    """
    Blend the overlay layer over a background frame.

    The background is scaled to the overlay size first.

    Returns:
        RGB image (H x W x 3) the size of the overlay
    """
    width, height = overlay.size
    bg = background.rgb
    if background.size != (width, height):
        bg = cv2.resize(np.ascontiguousarray(bg), (width, height), interpolation=cv2.INTER_LINEAR)

    alpha = overlay.alpha.astype(np.float32)[:, :, None] / 255.0
    blended = overlay.rgb.astype(np.float32) * alpha + bg.astype(np.float32) * (1.0 - alpha)
    return np.clip(np.rint(blended), 0, 255).astype(np.uint8)

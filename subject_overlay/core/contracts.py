"""
Core data contracts for the subject overlay engine.

All components exchange these types:
- Frame: immutable RGBA pixel buffer
- Mask: per-pixel opacity with optional carried color
- SegmentationResult: one segmentation attempt, ready to composite
- PlacementRect: where the subject lands on the output surface
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple
import numpy as np
from numpy.typing import NDArray
import cv2


# ============================================================
# ENUMERATIONS
# ============================================================

class EngineState(Enum):
    """Lifecycle of the segmentation engine."""
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    READY = "ready"
    DEGRADED = "degraded"
    FAILED = "failed"


class BackendKind(Enum):
    """Which segmentation path produced a mask."""
    MODEL = "model"
    HEURISTIC = "heuristic"


class MaskKind(Enum):
    RAW = "raw"
    REFINED = "refined"


class Anchor(Enum):
    """Corner of the output surface the subject is pinned to."""
    BOTTOM_RIGHT = "bottom_right"
    BOTTOM_LEFT = "bottom_left"
    TOP_RIGHT = "top_right"
    TOP_LEFT = "top_left"
    CENTER = "center"


class TickOutcome(Enum):
    """What a single compositing tick ended up doing."""
    DRAWN = "drawn"
    SKIPPED_EMPTY_SURFACE = "skipped_empty_surface"
    SKIPPED_NO_FRAME = "skipped_no_frame"
    SKIPPED_SMALL_FRAME = "skipped_small_frame"
    DISCARDED_STALE = "discarded_stale"


# ============================================================
# PIXEL BUFFERS
# ============================================================

def _frozen_copy(array: NDArray) -> NDArray:
    copy = np.array(array, copy=True)
    copy.setflags(write=False)
    return copy


@dataclass(frozen=True, eq=False)
class Frame:
    """
    Immutable RGBA frame (H x W x 4, uint8).

    The pixel array is copied and locked on construction, so a Frame
    can be handed between pipeline steps without copying.
    Steps that need different pixels derive a new Frame.
    """
    pixels: NDArray[np.uint8]

    def __post_init__(self):
        pixels = np.asarray(self.pixels)
        if pixels.ndim != 3 or pixels.shape[2] != 4:
            raise ValueError(f"Frame expects H x W x 4 pixels, got {pixels.shape}")
        if pixels.dtype != np.uint8:
            pixels = pixels.astype(np.uint8)
        object.__setattr__(self, "pixels", _frozen_copy(pixels))

    @classmethod
    def from_rgb(cls, rgb: NDArray[np.uint8]) -> Frame:
        """Build an opaque frame from an RGB array."""
        h, w = rgb.shape[:2]
        alpha = np.full((h, w, 1), 255, dtype=np.uint8)
        return cls(np.concatenate([rgb.astype(np.uint8), alpha], axis=2))

    @classmethod
    def blank(cls, width: int, height: int) -> Frame:
        return cls(np.zeros((height, width, 4), dtype=np.uint8))

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def size(self) -> Tuple[int, int]:
        """(width, height)"""
        return (self.width, self.height)

    @property
    def rgb(self) -> NDArray[np.uint8]:
        return self.pixels[:, :, :3]

    @property
    def alpha(self) -> NDArray[np.uint8]:
        return self.pixels[:, :, 3]

    def mirrored(self) -> Frame:
        """Horizontally flipped copy (selfie / mirror-mode view)."""
        return Frame(cv2.flip(np.ascontiguousarray(self.pixels), 1))

    def with_alpha(self, alpha: NDArray[np.uint8]) -> Frame:
        """Copy of this frame with its alpha capped by `alpha`."""
        if alpha.shape != self.alpha.shape:
            raise ValueError(
                f"Alpha {alpha.shape} does not match frame {self.alpha.shape}"
            )
        pixels = np.array(self.pixels, copy=True)
        pixels[:, :, 3] = np.minimum(self.alpha, alpha)
        return Frame(pixels)


@dataclass(frozen=True, eq=False)
class Mask:
    """
    Per-pixel opacity buffer (H x W, uint8, 0-255).

    `color` optionally carries an RGB plane alongside the opacity
    (the color classifier keeps subject colors there).
    """
    values: NDArray[np.uint8]
    color: Optional[NDArray[np.uint8]] = None
    kind: MaskKind = MaskKind.RAW

    def __post_init__(self):
        values = np.asarray(self.values)
        if values.ndim != 2:
            raise ValueError(f"Mask expects H x W values, got {values.shape}")
        object.__setattr__(self, "values", _frozen_copy(values.astype(np.uint8)))
        if self.color is not None:
            color = np.asarray(self.color)
            if color.shape != values.shape + (3,):
                raise ValueError(
                    f"Mask color {color.shape} does not match values {values.shape}"
                )
            object.__setattr__(self, "color", _frozen_copy(color.astype(np.uint8)))

    @property
    def width(self) -> int:
        return int(self.values.shape[1])

    @property
    def height(self) -> int:
        return int(self.values.shape[0])

    @property
    def size(self) -> Tuple[int, int]:
        return (self.width, self.height)

    @property
    def coverage(self) -> float:
        """Fraction of pixels with nonzero opacity."""
        if self.values.size == 0:
            return 0.0
        return float(np.count_nonzero(self.values)) / self.values.size


# ============================================================
# RESULT TYPES
# ============================================================

@dataclass(frozen=True, eq=False)
class SegmentationResult:
    """
    Output of one segmentation attempt.

    `subject` is `source` with its alpha taken from `mask`, so no
    subject pixel is more opaque than the mask allows.
    """
    mask: Mask
    source: Frame
    subject: Frame
    backend: BackendKind
    inference_time_ms: float = 0.0

    @classmethod
    def build(
        cls,
        mask: Mask,
        source: Frame,
        backend: BackendKind,
        inference_time_ms: float = 0.0,
    ) -> SegmentationResult:
        if mask.size != source.size:
            raise ValueError(
                f"Mask {mask.size} does not match frame {source.size}"
            )
        return cls(
            mask=mask,
            source=source,
            subject=source.with_alpha(mask.values),
            backend=backend,
            inference_time_ms=inference_time_ms,
        )


@dataclass(frozen=True)
class PlacementRect:
    """Target rectangle for the subject on the output surface."""
    x: float
    y: float
    width: float
    height: float

    @property
    def is_empty(self) -> bool:
        return self.width <= 0 or self.height <= 0

    def to_pixels(self) -> Tuple[int, int, int, int]:
        """Integer (x, y, width, height)."""
        return (
            int(round(self.x)),
            int(round(self.y)),
            int(round(self.width)),
            int(round(self.height)),
        )


@dataclass
class TickResult:
    """Report from a single compositing tick."""
    outcome: TickOutcome
    placement: Optional[PlacementRect] = None
    backend: Optional[BackendKind] = None
    latency_ms: float = 0.0
    coverage: float = 0.0

    @property
    def drawn(self) -> bool:
        return self.outcome is TickOutcome.DRAWN


@dataclass
class EngineStats:
    """Per-session counters exposed by the segmentation engine."""
    model_frames: int = 0
    heuristic_frames: int = 0
    backend_failures: int = 0
    timestamp_anomalies: int = 0
    resets: int = 0
    downscales: int = 0

"""
Segmentation backends.

To add a new model capability:
1. Inherit from SegmentationCapability
2. Implement init / infer / dispose as coroutines
3. Raise BackendError with a structured code on failure
4. Hand it to SegmentationEngine

The engine only ever talks to SegmentationBackend. Two variants exist:
- ModelBackend: wraps a model capability (MediaPipe by default)
- HeuristicBackend: wraps the color classifier, cannot fail
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Optional
import numpy as np
from numpy.typing import NDArray
import cv2
from loguru import logger

from subject_overlay.core.contracts import BackendKind, Frame, Mask, MaskKind
from subject_overlay.core.errors import BackendError, BackendErrorCode, classify_error
from .color_classifier import ColorMaskClassifier


# ============================================================
# MODEL CAPABILITY (external)
# ============================================================

class SegmentationCapability(ABC):
    """A person-segmentation model.

    infer() returns a per-pixel array at the input's size: float
    confidence in [0, 1], a 0/1 category mask, or 0-255 opacity.
    """

    @abstractmethod
    async def init(self) -> None:
        """Load the model. Raises on failure."""

    @abstractmethod
    async def infer(self, rgb: NDArray[np.uint8], timestamp_ms: float) -> NDArray:
        """Segment one RGB image. Timestamps must strictly increase."""

    @abstractmethod
    async def dispose(self) -> None:
        """Release the model."""


class MediaPipeSelfieCapability(SegmentationCapability):
    """
    MediaPipe selfie segmentation.

    The graph call is blocking, so it runs in a worker thread.
    """

    def __init__(self, model_selection: int = 1):
        """
        Args:
            model_selection: 0 for general model, 1 for landscape (faster)
        """
        self.model_selection = model_selection
        self._segmenter = None
        self._last_timestamp_ms: Optional[float] = None

    async def init(self) -> None:
        try:
            import mediapipe as mp

            self._segmenter = await asyncio.to_thread(
                mp.solutions.selfie_segmentation.SelfieSegmentation,
                model_selection=self.model_selection,
            )
        except Exception as e:
            raise BackendError(
                f"Failed to initialize MediaPipe selfie segmentation: {e}",
                BackendErrorCode.INIT_FAILED,
            ) from e

        self._last_timestamp_ms = None
        logger.info(f"MediaPipe selfie segmentation initialized (model {self.model_selection})")

    async def infer(self, rgb: NDArray[np.uint8], timestamp_ms: float) -> NDArray:
        if self._segmenter is None:
            raise BackendError("Selfie segmentation not initialized")

        if self._last_timestamp_ms is not None and timestamp_ms <= self._last_timestamp_ms:
            raise BackendError(
                f"Input timestamp must be monotonically increasing "
                f"({timestamp_ms:.1f} <= {self._last_timestamp_ms:.1f})",
                BackendErrorCode.TIMESTAMP_ANOMALY,
            )
        self._last_timestamp_ms = timestamp_ms

        try:
            results = await asyncio.to_thread(self._segmenter.process, rgb)
        except BackendError:
            raise
        except Exception as e:
            raise BackendError(str(e), classify_error(e)) from e

        if results.segmentation_mask is None:
            raise BackendError("No segmentation mask returned")
        return results.segmentation_mask

    async def dispose(self) -> None:
        if self._segmenter is not None:
            self._segmenter.close()
            self._segmenter = None
        self._last_timestamp_ms = None


# ============================================================
# ENGINE-FACING BACKENDS
# ============================================================

class SegmentationBackend(ABC):
    """Produces a RAW mask at the source frame's size."""

    kind: BackendKind

    async def initialize(self) -> None:
        pass

    @abstractmethod
    async def infer(self, frame: Frame, timestamp_ms: float) -> Mask:
        """Segment a frame."""

    async def dispose(self) -> None:
        pass


class HeuristicBackend(SegmentationBackend):
    """Color classifier behind the backend interface."""

    kind = BackendKind.HEURISTIC

    def __init__(self, classifier: ColorMaskClassifier):
        self.classifier = classifier

    async def infer(self, frame: Frame, timestamp_ms: float) -> Mask:
        return self.classifier.classify(frame)


class ModelBackend(SegmentationBackend):
    """
    Model capability behind the backend interface.

    Frames are shrunk so their longest side fits `max_dimension`
    before inference; the mask is scaled back to the frame size and
    thresholded into a binary opacity mask.
    """

    kind = BackendKind.MODEL

    def __init__(
        self,
        capability: SegmentationCapability,
        threshold: float = 0.5,
        max_dimension: int = 640,
    ):
        self.capability = capability
        self.threshold = threshold
        self.max_dimension = max_dimension

    async def initialize(self) -> None:
        await self.capability.init()

    async def dispose(self) -> None:
        await self.capability.dispose()

    async def infer(self, frame: Frame, timestamp_ms: float) -> Mask:
        rgb = self._fit(np.ascontiguousarray(frame.rgb))
        raw = await self.capability.infer(rgb, timestamp_ms)

        confidence = self._to_confidence(raw, rgb.shape[:2])
        if confidence.shape != (frame.height, frame.width):
            confidence = cv2.resize(
                confidence, (frame.width, frame.height),
                interpolation=cv2.INTER_LINEAR,
            )

        values = np.where(confidence > self.threshold, 255, 0).astype(np.uint8)
        return Mask(values=values, kind=MaskKind.RAW)

    def _fit(self, rgb: NDArray[np.uint8]) -> NDArray[np.uint8]:
        h, w = rgb.shape[:2]
        longest = max(h, w)
        if longest <= self.max_dimension:
            return rgb
        scale = self.max_dimension / longest
        size = (max(1, int(round(w * scale))), max(1, int(round(h * scale))))
        return cv2.resize(rgb, size, interpolation=cv2.INTER_AREA)

    @staticmethod
    def _to_confidence(raw: NDArray, shape) -> NDArray[np.float32]:
        """Normalize any supported mask encoding to float confidence."""
        if raw is None:
            raise BackendError("Backend returned no mask")
        mask = np.asarray(raw)
        if mask.ndim == 3 and mask.shape[2] == 1:
            mask = mask[:, :, 0]
        if mask.ndim != 2 or mask.size == 0:
            raise BackendError(f"Backend returned invalid mask shape {mask.shape}")
        if mask.shape != tuple(shape):
            raise BackendError(
                f"Backend mask {mask.shape} does not match input {tuple(shape)}"
            )

        if np.issubdtype(mask.dtype, np.floating):
            return np.nan_to_num(mask.astype(np.float32), nan=0.0)
        if mask.max(initial=0) <= 1:
            # Category mask: 1 = person, 0 = background
            return mask.astype(np.float32)
        return mask.astype(np.float32) / 255.0

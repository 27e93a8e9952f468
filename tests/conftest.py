"""
Test Configuration
==================

Pytest fixtures and test doubles for the subject overlay engine.
"""

import asyncio
from typing import List, Optional, Tuple

import numpy as np
import pytest

from subject_overlay.capture.video_capture import FrameSource
from subject_overlay.core.config import OverlayConfig
from subject_overlay.core.contracts import Frame, PlacementRect
from subject_overlay.core.errors import BackendError, BackendErrorCode
from subject_overlay.render.surface import OutputSurface
from subject_overlay.segmentation.backends import SegmentationCapability


SKIN_RGB = (220, 170, 150)
BLUE_RGB = (0, 0, 255)


def uniform_frame(width: int, height: int, rgb=SKIN_RGB) -> Frame:
    pixels = np.empty((height, width, 3), dtype=np.uint8)
    pixels[:] = rgb
    return Frame.from_rgb(pixels)


class FakeCapability(SegmentationCapability):
    """
    Scripted model capability.

    init_failures: number of leading init() calls that raise
    infer_errors: queue consumed one per infer(); None means succeed
    gate: if set, infer() waits on it before answering
    """

    def __init__(
        self,
        init_failures: int = 0,
        infer_errors: Optional[list] = None,
        mask_value: float = 1.0,
        gate: Optional[asyncio.Event] = None,
    ):
        self.init_failures = init_failures
        self.infer_errors = list(infer_errors or [])
        self.mask_value = mask_value
        self.gate = gate

        self.init_calls = 0
        self.infer_calls = 0
        self.dispose_calls = 0
        self.timestamps: List[float] = []
        self.input_shapes: List[Tuple[int, ...]] = []

    async def init(self) -> None:
        self.init_calls += 1
        if self.init_calls <= self.init_failures:
            raise BackendError("model asset missing", BackendErrorCode.INIT_FAILED)

    async def infer(self, rgb, timestamp_ms):
        self.infer_calls += 1
        self.timestamps.append(timestamp_ms)
        self.input_shapes.append(rgb.shape)

        if self.gate is not None:
            await self.gate.wait()

        if self.infer_errors:
            error = self.infer_errors.pop(0)
            if error is not None:
                raise error

        return np.full(rgb.shape[:2], self.mask_value, dtype=np.float32)

    async def dispose(self) -> None:
        self.dispose_calls += 1


class StaticSource(FrameSource):
    """Hands out the same frame (or None) on every read."""

    def __init__(self, frame: Optional[Frame]):
        self.frame = frame
        self.reads = 0

    def read_frame(self) -> Optional[Frame]:
        self.reads += 1
        return self.frame


class RecordingSurface(OutputSurface):
    """Surface that records calls instead of drawing."""

    def __init__(self, width: int = 960, height: int = 540):
        self.width = width
        self.height = height
        self.calls: List[tuple] = []
        self.draws: List[Tuple[Frame, PlacementRect, float]] = []

    @property
    def size(self):
        return (self.width, self.height)

    def clear(self) -> None:
        self.calls.append(("clear",))

    def draw(self, frame, rect, opacity=1.0) -> None:
        self.calls.append(("draw",))
        self.draws.append((frame, rect, opacity))


class StepClock:
    """Monotonic clock advancing a fixed step per read."""

    def __init__(self, step: float = 1 / 30):
        self.now = 0.0
        self.step = step

    def __call__(self) -> float:
        self.now += self.step
        return self.now


class SleepRecorder:
    """Awaitable sleep replacement that returns immediately."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class StatusLog(list):
    """Status sink collecting messages."""

    def __call__(self, message: str) -> None:
        self.append(message)


@pytest.fixture
def config():
    return OverlayConfig()


@pytest.fixture
def skin_frame():
    """640x360 frame of a single skin-tone color."""
    return uniform_frame(640, 360, SKIN_RGB)


@pytest.fixture
def blue_frame():
    return uniform_frame(640, 360, BLUE_RGB)


@pytest.fixture
def status_log():
    return StatusLog()


@pytest.fixture
def sleeper():
    return SleepRecorder()

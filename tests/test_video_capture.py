"""Tests for the OpenCV video source that need no camera."""

import asyncio
import time

import numpy as np
import pytest

from subject_overlay.capture import video_capture
from subject_overlay.capture.video_capture import VideoCapture
from subject_overlay.core.config import OverlayConfig
from subject_overlay.pipeline.compositor import CompositingPipeline
from subject_overlay.pipeline.scheduler import FrameScheduler
from subject_overlay.render.surface import OverlaySurface
from subject_overlay.segmentation.engine import SegmentationEngine


READ_DELAY = 0.033


class SlowCamera:
    """cv2.VideoCapture stand-in whose read() takes a camera frame period."""

    def __init__(self, source):
        self.source = source
        self.reads = 0
        self.released = False

    def isOpened(self):
        return True

    def set(self, prop, value):
        return True

    def get(self, prop):
        return 0.0

    def read(self):
        time.sleep(READ_DELAY)
        self.reads += 1
        bgr = np.zeros((48, 64, 3), dtype=np.uint8)
        bgr[:] = (150, 170, 220)
        return True, bgr

    def release(self):
        self.released = True


@pytest.fixture
def slow_camera(monkeypatch):
    monkeypatch.setattr(video_capture.cv2, "VideoCapture", SlowCamera)


def wait_for(predicate, timeout=2.0):
    deadline = time.perf_counter() + timeout
    while time.perf_counter() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return False


def test_not_started_returns_no_frame():
    capture = VideoCapture(0)
    assert capture.read_frame() is None
    assert not capture.is_running


def test_missing_file_fails_to_start(tmp_path):
    capture = VideoCapture(str(tmp_path / "missing.mp4"), loop=True)
    assert capture.start() is False
    assert capture.read_frame() is None


def test_reader_thread_delivers_frames(slow_camera):
    capture = VideoCapture(0)
    assert capture.start()
    try:
        assert wait_for(lambda: capture.frame_count >= 3)
        frame = capture.read_frame()
    finally:
        capture.stop()

    assert frame is not None
    assert (frame.width, frame.height) == (64, 48)
    assert tuple(frame.pixels[0, 0]) == (220, 170, 150, 255)
    assert capture.actual_fps > 0
    assert capture.read_frame() is None


def test_read_frame_does_not_wait_for_the_camera(slow_camera):
    capture = VideoCapture(0)
    capture.start()
    try:
        wait_for(lambda: capture.frame_count >= 1)
        start = time.perf_counter()
        for _ in range(10):
            capture.read_frame()
        elapsed = time.perf_counter() - start
    finally:
        capture.stop()

    assert elapsed < READ_DELAY


def test_slow_camera_does_not_stall_the_event_loop(slow_camera):
    """A heartbeat task keeps its cadence while the scheduler ticks."""
    camera = VideoCapture(0)
    engine = SegmentationEngine(None, OverlayConfig())
    pipeline = CompositingPipeline(camera, OverlaySurface(320, 180), engine)
    scheduler = FrameScheduler(pipeline, fps=30)

    async def scenario():
        gaps = []

        async def heartbeat():
            last = time.perf_counter()
            while True:
                await asyncio.sleep(0.005)
                now = time.perf_counter()
                gaps.append(now - last)
                last = now

        scheduler.start()
        beat = asyncio.get_running_loop().create_task(heartbeat())
        await asyncio.sleep(0.4)
        scheduler.stop()
        await scheduler.drain()
        beat.cancel()
        return gaps

    camera.start()
    try:
        wait_for(lambda: camera.frame_count >= 1)
        gaps = asyncio.run(scenario())
    finally:
        camera.stop()

    assert pipeline.drawn_ticks >= 1
    assert max(gaps) < 0.05

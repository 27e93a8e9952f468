"""
Video Capture.

Handles:
- Webcam acquisition (the live subject)
- Video file playback (the background stream)
- BGR -> RGBA Frame conversion
- Background reader thread, so callers never block on I/O
"""

from __future__ import annotations

import threading
import time
from abc import ABC, abstractmethod
from typing import Optional, Tuple, Union
import cv2
from loguru import logger

from subject_overlay.core.contracts import Frame


DEFAULT_FILE_FPS = 30.0
READ_RETRY_DELAY = 0.005


class FrameSource(ABC):
    """Anything that can hand over its current frame on demand."""

    @abstractmethod
    def read_frame(self) -> Optional[Frame]:
        """Current frame, or None if nothing is available. Must not block."""


class VideoCapture(FrameSource):
    """
    OpenCV video source.

    `source` is a camera index or a video file path. File sources can
    loop so a background clip keeps playing.

    Guarantees:
    - RGBA Frame output
    - Thread-safe access to the latest frame
    - read_frame() returns immediately; a daemon thread does the reading
    """

    def __init__(
        self,
        source: Union[int, str] = 0,
        width: Optional[int] = None,
        height: Optional[int] = None,
        fps: Optional[int] = None,
        loop: bool = False,
    ):
        """
        Initialize video capture.

        Args:
            source: Camera device index or video file path
            width: Requested capture width (cameras only)
            height: Requested capture height (cameras only)
            fps: Requested frames per second (cameras only)
            loop: Rewind file sources when they end
        """
        self.source = source
        self.width = width
        self.height = height
        self.fps = fps
        self.loop = loop

        # State
        self._capture: Optional[cv2.VideoCapture] = None
        self._is_running = False
        self._lock = threading.Lock()
        self._reader_thread: Optional[threading.Thread] = None
        self._file_interval: float = 0.0

        # Latest frame
        self._latest_frame: Optional[Frame] = None
        self._frame_count: int = 0

        # Performance tracking
        self._frame_times: list[float] = []
        self._actual_fps: float = 0.0

    def start(self) -> bool:
        """
        Start video capture and the reader thread.

        Returns:
            True if started successfully
        """
        if self._is_running:
            return True

        try:
            self._capture = cv2.VideoCapture(self.source)

            if not self._capture.isOpened():
                logger.error(f"Failed to open video source {self.source}")
                return False

            if isinstance(self.source, int):
                if self.width:
                    self._capture.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
                if self.height:
                    self._capture.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)
                if self.fps:
                    self._capture.set(cv2.CAP_PROP_FPS, self.fps)

            actual_width, actual_height = self.frame_size
            actual_fps = self._capture.get(cv2.CAP_PROP_FPS)
            logger.info(
                f"Video source {self.source} started: "
                f"{actual_width}x{actual_height} @ {actual_fps}fps"
            )

            # Files are paced to their own rate; cameras block on read()
            if not isinstance(self.source, int):
                self._file_interval = 1.0 / (actual_fps if actual_fps > 0 else DEFAULT_FILE_FPS)

            self._is_running = True
            self._reader_thread = threading.Thread(target=self._capture_loop, daemon=True)
            self._reader_thread.start()
            return True

        except Exception as e:
            logger.error(f"Failed to start video source {self.source}: {e}")
            return False

    def stop(self):
        """Stop the reader thread and release the source."""
        self._is_running = False

        if self._reader_thread is not None:
            self._reader_thread.join(timeout=2.0)
            self._reader_thread = None

        if self._capture is not None:
            self._capture.release()
            self._capture = None

        with self._lock:
            self._latest_frame = None

        logger.info(f"Video source {self.source} stopped")

    def read_frame(self) -> Optional[Frame]:
        """
        Latest frame delivered by the reader thread. Never blocks on I/O.

        Returns:
            RGBA Frame, or None when nothing has arrived yet
        """
        if not self._is_running:
            return None
        return self.get_latest_frame()

    def get_latest_frame(self) -> Optional[Frame]:
        """Most recently read frame (Frames are immutable, no copy needed)."""
        with self._lock:
            return self._latest_frame

    def _capture_loop(self):
        """Reader thread: pull frames until stop()."""
        while self._is_running:
            start_time = time.perf_counter()

            try:
                bgr = self._read_bgr()
            except Exception as e:
                logger.error(f"Video source {self.source} read failed: {e}")
                time.sleep(READ_RETRY_DELAY)
                continue

            if bgr is None:
                if not isinstance(self.source, int) and not self.loop:
                    logger.info(f"Video source {self.source} reached the end")
                    return
                time.sleep(READ_RETRY_DELAY)
                continue

            frame = Frame(cv2.cvtColor(bgr, cv2.COLOR_BGR2RGBA))

            with self._lock:
                self._frame_count += 1
                self._latest_frame = frame

                self._frame_times.append(start_time)
                if len(self._frame_times) > 30:
                    self._frame_times.pop(0)
                self._update_fps()

            if self._file_interval:
                remaining = self._file_interval - (time.perf_counter() - start_time)
                if remaining > 0:
                    time.sleep(remaining)

    def _read_bgr(self):
        capture = self._capture
        if capture is None:
            return None

        ret, bgr = capture.read()
        if (not ret or bgr is None) and self.loop and not isinstance(self.source, int):
            capture.set(cv2.CAP_PROP_POS_FRAMES, 0)
            ret, bgr = capture.read()

        if not ret or bgr is None:
            return None
        return bgr

    def _update_fps(self):
        """Calculate actual FPS from frame times."""
        if len(self._frame_times) < 2:
            return

        duration = self._frame_times[-1] - self._frame_times[0]
        if duration > 0:
            self._actual_fps = (len(self._frame_times) - 1) / duration

    @property
    def is_running(self) -> bool:
        return self._is_running

    @property
    def frame_count(self) -> int:
        with self._lock:
            return self._frame_count

    @property
    def actual_fps(self) -> float:
        with self._lock:
            return self._actual_fps

    @property
    def frame_size(self) -> Tuple[int, int]:
        """Get actual frame size (width, height)."""
        if self._capture is not None:
            return (
                int(self._capture.get(cv2.CAP_PROP_FRAME_WIDTH)),
                int(self._capture.get(cv2.CAP_PROP_FRAME_HEIGHT)),
            )
        return (self.width or 0, self.height or 0)

"""
Segmentation Engine.

Owns the model backend and the color fallback, and decides per frame
which one answers. segment() never fails from the caller's point of
view: every backend error is absorbed here and the frame is answered
by the color classifier instead. The only error that escapes is
EngineFailedError, raised when the fallback itself breaks.

Recovery policy:
- handshake failures are retried with a fixed backoff, then the model
  is abandoned for the session
- generic inference failures fall back per frame and demote after
  `max_consecutive_errors` in a row
- timestamp anomalies fall back per frame and force one backend reset
  after `max_timestamp_anomalies` in a row
- resource exhaustion shrinks the model input for the rest of the session
"""

from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable, Optional
from loguru import logger

from subject_overlay.core.config import OverlayConfig
from subject_overlay.core.contracts import (
    BackendKind,
    EngineState,
    EngineStats,
    Frame,
    SegmentationResult,
)
from subject_overlay.core.errors import BackendErrorCode, EngineFailedError, classify_error
from subject_overlay.core.status import StatusSink, notify
from .backends import (
    HeuristicBackend,
    ModelBackend,
    SegmentationBackend,
    SegmentationCapability,
)
from .color_classifier import ColorMaskClassifier
from .engine_state import EngineStateMachine, EngineThresholds, FailureAction
from .mask_refiner import MaskRefiner


class SegmentationEngine:
    """
    Resilient person segmentation.

    Guarantees:
    - Always returns a usable SegmentationResult
    - Never calls the model again once demoted
    - Backend counters are private to the engine
    """

    def __init__(
        self,
        capability: Optional[SegmentationCapability] = None,
        config: Optional[OverlayConfig] = None,
        status_sink: Optional[StatusSink] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize segmentation engine.

        Args:
            capability: Model capability; None runs heuristic-only
            config: Session configuration
            status_sink: Receives human-readable status strings
            clock: Seconds source for backend timestamps
            sleep: Awaitable used for the handshake backoff
        """
        self.config = config or OverlayConfig()
        self._status_sink = status_sink
        self._clock = clock
        self._sleep = sleep

        self._machine = EngineStateMachine(EngineThresholds.from_config(self.config))
        self._refiner = MaskRefiner(blur_radius=self.config.mask_blur_radius)
        self._heuristic = HeuristicBackend(
            ColorMaskClassifier(
                thresholds=self.config.skin,
                preserve_color=self.config.preserve_subject_color,
            )
        )
        self._model: Optional[ModelBackend] = None
        if capability is not None:
            self._model = ModelBackend(
                capability,
                threshold=self.config.model_threshold,
                max_dimension=self.config.max_processed_dimension,
            )

        self._max_dimension = self.config.max_processed_dimension
        self._stats = EngineStats()

    # ============================================================
    # Public API
    # ============================================================

    async def initialize(self) -> EngineState:
        """
        Run the model handshake if it has not happened yet.

        Returns:
            State after the handshake (READY or DEGRADED)
        """
        if self._machine.state is not EngineState.UNINITIALIZED:
            return self._machine.state

        if self._model is None:
            self._machine.mark_unavailable()
            logger.warning("No model backend configured, using color segmentation")
            notify(self._status_sink, "degraded: no model backend configured")
            return self._machine.state

        self._machine.begin_loading()
        notify(self._status_sink, "initializing")
        await self._handshake()
        return self._machine.state

    async def segment(self, frame: Frame) -> SegmentationResult:
        """
        Segment the subject out of a frame.

        Args:
            frame: Source frame (already mirrored by the caller if needed)

        Returns:
            SegmentationResult from the model or the color fallback

        Raises:
            EngineFailedError: the color fallback itself failed
        """
        if self._machine.state is EngineState.FAILED:
            raise EngineFailedError("Segmentation engine is in FAILED state")

        if self._machine.state is EngineState.UNINITIALIZED:
            await self.initialize()

        if self._machine.reset_pending:
            await self._reset_model()

        if self.active_backend.kind is BackendKind.MODEL:
            result = await self._segment_with_model(frame)
            if result is not None:
                return result

        return await self._segment_with_heuristic(frame)

    async def close(self) -> None:
        """
        Release the model backend.

        The model is retired for good; later segment() calls are
        answered by the color fallback.
        """
        self._machine.shut_down()
        await self._dispose_model()
        logger.info("Segmentation engine closed")

    @property
    def active_backend(self) -> SegmentationBackend:
        """Backend the current state routes frames to."""
        if self._machine.uses_model and self._model is not None:
            return self._model
        return self._heuristic

    @property
    def state(self) -> EngineState:
        return self._machine.state

    @property
    def machine(self) -> EngineStateMachine:
        return self._machine

    @property
    def max_processed_dimension(self) -> int:
        """Longest side fed to the model; only ever shrinks."""
        return self._max_dimension

    @property
    def stats(self) -> EngineStats:
        return self._stats

    # ============================================================
    # Model path
    # ============================================================

    async def _handshake(self) -> None:
        """Try to bring the model up, retrying with a fixed backoff."""
        while True:
            try:
                await self._model.initialize()
            except Exception as e:
                logger.warning(
                    f"Model backend init failed "
                    f"(attempt {self._machine.init_failures + 1}): {e}"
                )
                await self._dispose_model()
                if not self._machine.record_init_failure():
                    logger.error(
                        f"Model backend unavailable after {self._machine.init_failures} "
                        f"attempts, switching to color segmentation for this session"
                    )
                    notify(self._status_sink, f"degraded: model backend unavailable ({e})")
                    return
                await self._sleep(self.config.init_backoff_seconds)
                continue

            self._machine.record_init_success()
            logger.info("Model backend ready")
            notify(self._status_sink, "ready")
            return

    async def _segment_with_model(self, frame: Frame) -> Optional[SegmentationResult]:
        start_time = time.perf_counter()
        timestamp_ms = self._clock() * 1000.0

        try:
            raw = await self._model.infer(frame, timestamp_ms)
        except Exception as e:
            await self._handle_backend_failure(e)
            return None

        self._machine.record_success()
        mask = self._refiner.soften(raw)
        self._stats.model_frames += 1

        return SegmentationResult.build(
            mask,
            frame,
            BackendKind.MODEL,
            inference_time_ms=(time.perf_counter() - start_time) * 1000,
        )

    async def _handle_backend_failure(self, error: Exception) -> None:
        code = classify_error(error)
        self._stats.backend_failures += 1
        logger.warning(f"Model backend failed ({code.value}): {error}")

        if code is BackendErrorCode.RESOURCE_EXHAUSTED:
            self._shrink_input()
        if code is BackendErrorCode.TIMESTAMP_ANOMALY:
            self._stats.timestamp_anomalies += 1

        action = self._machine.record_failure(code)

        if action is FailureAction.DEMOTE:
            logger.error(
                f"Model backend failed {self._machine.consecutive_errors} times in a row, "
                f"switching to color segmentation for this session"
            )
            notify(self._status_sink, f"degraded: model backend failing ({error})")
            await self._dispose_model()
        elif action is FailureAction.RESET:
            logger.warning(
                f"{self._machine.timestamp_anomalies} timestamp anomalies, "
                f"model backend will be reset"
            )

    async def _reset_model(self) -> None:
        self._stats.resets += 1
        self._machine.begin_reset()
        notify(self._status_sink, "resetting model backend")
        await self._dispose_model()
        await self._handshake()

    async def _dispose_model(self) -> None:
        if self._model is None:
            return
        try:
            await self._model.dispose()
        except Exception as e:
            logger.warning(f"Model backend dispose failed: {e}")

    def _shrink_input(self) -> None:
        shrunk = max(
            self.config.min_processed_dimension,
            int(self._max_dimension * self.config.downscale_factor),
        )
        if shrunk >= self._max_dimension:
            logger.warning(
                f"Resource exhaustion at minimum input size {self._max_dimension}px"
            )
            return

        logger.warning(
            f"Resource exhaustion, reducing model input {self._max_dimension}px -> {shrunk}px"
        )
        self._max_dimension = shrunk
        self._stats.downscales += 1
        if self._model is not None:
            self._model.max_dimension = shrunk

    # ============================================================
    # Fallback path
    # ============================================================

    async def _segment_with_heuristic(self, frame: Frame) -> SegmentationResult:
        start_time = time.perf_counter()
        try:
            raw = await self._heuristic.infer(frame, self._clock() * 1000.0)
            mask = self._refiner.refine(raw)
        except Exception as e:
            self._machine.fail()
            logger.critical(f"Color segmentation failed: {e}")
            notify(self._status_sink, f"failed: color segmentation error ({e})")
            raise EngineFailedError(f"Color segmentation failed: {e}") from e

        self._stats.heuristic_frames += 1
        return SegmentationResult.build(
            mask,
            frame,
            BackendKind.HEURISTIC,
            inference_time_ms=(time.perf_counter() - start_time) * 1000,
        )

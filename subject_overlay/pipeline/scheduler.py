"""
Frame Scheduler.

Drives CompositingPipeline ticks at a fixed cadence on the running
asyncio loop.

Handles:
- Fixed-rate slots (default 30/s)
- Overlap guard: a slot is skipped while the previous tick is running
- Stop semantics: late results from a stopped run never draw
- Per-tick error isolation
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Optional
from loguru import logger

from subject_overlay.core.contracts import TickResult
from subject_overlay.core.errors import EngineFailedError
from subject_overlay.core.status import StatusSink, notify
from .compositor import CompositingPipeline


@dataclass
class SchedulerStats:
    """Counters for one scheduler instance."""
    started: int = 0
    skipped: int = 0
    failed: int = 0
    drawn: int = 0


class FrameScheduler:
    """
    Fixed-cadence tick driver.

    Every start() opens a new generation; a tick only draws while its
    generation is still the current one. stop() does not wait for an
    in-flight tick, it just makes that tick stale; drain() waits for it.
    """

    def __init__(
        self,
        pipeline: CompositingPipeline,
        fps: Optional[float] = None,
        status_sink: Optional[StatusSink] = None,
    ):
        """
        Initialize frame scheduler.

        Args:
            pipeline: Pipeline to tick
            fps: Ticks per second (defaults to the pipeline config)
            status_sink: Receives "processing error: ..." and "stopped"
        """
        self.pipeline = pipeline
        self.fps = fps or pipeline.config.target_fps
        if self.fps <= 0:
            raise ValueError(f"fps must be positive, got {self.fps}")
        self._interval = 1.0 / self.fps
        self._status_sink = status_sink

        self._generation = 0
        self._running = False
        self._loop_task: Optional[asyncio.Task] = None
        self._tick_task: Optional[asyncio.Task] = None
        self._fatal: Optional[EngineFailedError] = None

        self.last_result: Optional[TickResult] = None
        self.stats = SchedulerStats()

    def start(self) -> asyncio.Task:
        """
        Start ticking. Must be called from a running event loop.

        Returns:
            The cadence loop task
        """
        if self._running and self._loop_task is not None:
            return self._loop_task

        self._running = True
        self._fatal = None
        self._generation += 1
        self._loop_task = asyncio.get_running_loop().create_task(self._cadence_loop())
        logger.info(f"Frame scheduler started at {self.fps:g} fps")
        return self._loop_task

    def stop(self):
        """Stop ticking; an in-flight tick finishes but does not draw."""
        if not self._running:
            return
        self._halt()
        logger.info(
            f"Frame scheduler stopped "
            f"(started={self.stats.started}, skipped={self.stats.skipped}, "
            f"failed={self.stats.failed})"
        )
        notify(self._status_sink, "stopped")

    async def run(self) -> None:
        """
        Tick in the foreground until stop() is called.

        Raises:
            EngineFailedError: segmentation broke beyond recovery
        """
        task = self.start()
        try:
            await task
        except asyncio.CancelledError:
            if self._running:
                # Cancelled from outside rather than through stop()
                self.stop()
                raise

        if self._fatal is not None:
            raise self._fatal

    async def drain(self) -> None:
        """
        Wait for the in-flight tick, if any, to finish.

        Call after stop() and before closing the engine the tick uses.
        The tick's own errors are already handled inside it.
        """
        task = self.in_flight
        if task is None:
            return
        await asyncio.wait({task})
        logger.debug("Frame scheduler drained")

    @property
    def in_flight(self) -> Optional[asyncio.Task]:
        """The tick task still running, or None."""
        if self._tick_task is None or self._tick_task.done():
            return None
        return self._tick_task

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def generation(self) -> int:
        return self._generation

    # ============================================================
    # Internals
    # ============================================================

    def _halt(self):
        self._running = False
        self._generation += 1
        if self._loop_task is not None:
            self._loop_task.cancel()
            self._loop_task = None

    async def _cadence_loop(self):
        loop = asyncio.get_running_loop()
        next_slot = loop.time()

        while True:
            self._on_slot()

            next_slot += self._interval
            delay = next_slot - loop.time()
            if delay < 0:
                # Fell behind; realign instead of bursting
                next_slot = loop.time()
                delay = 0.0
            await asyncio.sleep(delay)

    def _on_slot(self):
        if self._tick_task is not None and not self._tick_task.done():
            self.stats.skipped += 1
            return

        self.stats.started += 1
        self._tick_task = asyncio.get_running_loop().create_task(
            self._guarded_tick(self._generation)
        )

    async def _guarded_tick(self, generation: int):
        def is_current() -> bool:
            return generation == self._generation

        try:
            result = await self.pipeline.tick(is_current)
        except EngineFailedError as e:
            self.stats.failed += 1
            logger.critical(f"Segmentation engine failed, halting scheduler: {e}")
            if is_current():
                self._fatal = e
                self._halt()
            return
        except Exception as e:
            self.stats.failed += 1
            if not is_current():
                logger.debug(f"Tick from a stopped run failed: {e}")
                return
            logger.error(f"Tick failed: {e}")
            notify(self._status_sink, f"processing error: {e}")
            return

        self.last_result = result
        if result.drawn:
            self.stats.drawn += 1

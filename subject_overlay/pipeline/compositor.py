"""
Compositing Pipeline.

Executes one overlay tick in strict order:

1. Check the output surface has area
2. Acquire the camera frame
3. Mirror it
4. Segment the subject (model or color fallback)
5. Compute the placement rectangle
6. Clear the previous overlay
7. Alpha-composite the subject into the rectangle
"""

from __future__ import annotations

import time
from typing import Callable, List, Optional
from loguru import logger

from subject_overlay.capture.video_capture import FrameSource
from subject_overlay.core.config import OverlayConfig
from subject_overlay.core.contracts import TickOutcome, TickResult
from subject_overlay.render.surface import OutputSurface
from subject_overlay.segmentation.engine import SegmentationEngine
from .placement import compute_placement


# Log subject coverage every N drawn ticks
COVERAGE_LOG_INTERVAL = 30
# Below this subject coverage the subject is considered barely visible
LOW_COVERAGE_RATIO = 0.01


class CompositingPipeline:
    """
    Per-tick capture -> segment -> composite.

    Guarantees:
    - Pipeline order is NEVER reordered
    - Degenerate input skips the tick without touching engine counters
    - A stale tick (stopped while segmenting) never draws
    """

    def __init__(
        self,
        source: FrameSource,
        surface: OutputSurface,
        engine: SegmentationEngine,
        config: Optional[OverlayConfig] = None,
    ):
        """
        Initialize compositing pipeline.

        Args:
            source: Live camera source
            surface: Overlay surface drawn into every tick
            engine: Segmentation engine
            config: Session configuration (defaults to the engine's)
        """
        self.source = source
        self.surface = surface
        self.engine = engine
        self.config = config or engine.config

        self._drawn_ticks = 0
        self._low_coverage = False
        self._tick_latencies: List[float] = []

    async def tick(self, is_current: Callable[[], bool] = lambda: True) -> TickResult:
        """
        Run one compositing tick.

        Args:
            is_current: Returns False once the tick's result must be
                discarded (the scheduler was stopped meanwhile)

        Returns:
            TickResult describing what happened
        """
        tick_start = time.perf_counter()

        # STEP 1: surface must have area
        surface_width, surface_height = self.surface.size
        if surface_width <= 0 or surface_height <= 0:
            logger.debug(f"Output surface is {surface_width}x{surface_height}, skipping tick")
            return TickResult(outcome=TickOutcome.SKIPPED_EMPTY_SURFACE)

        # STEP 2: acquire
        frame = self.source.read_frame()
        if frame is None:
            return TickResult(outcome=TickOutcome.SKIPPED_NO_FRAME)

        min_dim = self.config.min_frame_dimension
        if frame.width < min_dim or frame.height < min_dim:
            logger.debug(f"Frame {frame.width}x{frame.height} below minimum {min_dim}px, skipping tick")
            return TickResult(outcome=TickOutcome.SKIPPED_SMALL_FRAME)

        # STEP 3: mirror
        mirrored = frame.mirrored()

        # STEP 4: segment
        result = await self.engine.segment(mirrored)

        if not is_current():
            logger.debug("Discarding segmentation result from a stopped run")
            return TickResult(outcome=TickOutcome.DISCARDED_STALE, backend=result.backend)

        # The surface may have been resized while segmentation was pending
        surface_width, surface_height = self.surface.size
        if surface_width <= 0 or surface_height <= 0:
            return TickResult(outcome=TickOutcome.SKIPPED_EMPTY_SURFACE, backend=result.backend)

        # STEP 5: placement
        placement = compute_placement(
            surface_width,
            surface_height,
            result.subject.width,
            result.subject.height,
            scale=self.config.placement_scale,
            anchor=self.config.anchor,
            margin_x=self.config.margin_x,
            margin_y=self.config.margin_y,
        )

        # STEPS 6-7: clear and draw
        self.surface.clear()
        self.surface.draw(result.subject, placement, opacity=self.config.overlay_opacity)

        latency_ms = (time.perf_counter() - tick_start) * 1000
        self._tick_latencies.append(latency_ms)
        if len(self._tick_latencies) > 100:
            self._tick_latencies.pop(0)

        coverage = result.mask.coverage
        self._drawn_ticks += 1
        if self._drawn_ticks % COVERAGE_LOG_INTERVAL == 0:
            logger.debug(
                f"Tick {self._drawn_ticks}: {result.backend.value} backend, "
                f"coverage {coverage:.2%}, latency {latency_ms:.1f}ms, "
                f"placement {placement.to_pixels()}"
            )
        low = coverage < LOW_COVERAGE_RATIO
        if low and not self._low_coverage:
            logger.warning(f"Subject barely detected ({coverage:.2%} of frame)")
        self._low_coverage = low

        return TickResult(
            outcome=TickOutcome.DRAWN,
            placement=placement,
            backend=result.backend,
            latency_ms=latency_ms,
            coverage=coverage,
        )

    @property
    def drawn_ticks(self) -> int:
        return self._drawn_ticks

    @property
    def average_latency_ms(self) -> float:
        """Get average tick latency."""
        if not self._tick_latencies:
            return 0.0
        return sum(self._tick_latencies) / len(self._tick_latencies)

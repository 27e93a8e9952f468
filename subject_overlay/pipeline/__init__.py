"""
Per-tick compositing and its scheduler.
"""

from .placement import compute_placement
from .compositor import CompositingPipeline
from .scheduler import FrameScheduler, SchedulerStats

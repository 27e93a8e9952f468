"""
Core types shared by every stage of the overlay pipeline.

Pipeline execution order (NEVER REORDER):
1. Acquire the camera frame
2. Mirror it
3. Segment (model backend, color fallback)
4. Refine the mask
5. Compute the placement rectangle
6. Composite onto the output surface
"""

from .contracts import (
    Anchor,
    BackendKind,
    EngineState,
    Frame,
    Mask,
    MaskKind,
    PlacementRect,
    SegmentationResult,
    TickOutcome,
    TickResult,
)
from .config import OverlayConfig, SkinToneThresholds, load_config
from .errors import BackendError, BackendErrorCode, EngineFailedError

"""
Person segmentation.

Responsibilities:
- Model-based segmentation with a guaranteed color fallback
- Mask refinement (hole fill, noise removal, soft edges)
- Backend resilience (retry, demotion, reset, adaptive input size)
"""

from .color_classifier import ColorMaskClassifier
from .mask_refiner import MaskRefiner
from .backends import (
    HeuristicBackend,
    MediaPipeSelfieCapability,
    ModelBackend,
    SegmentationBackend,
    SegmentationCapability,
)
from .engine_state import EngineStateMachine, EngineThresholds, FailureAction
from .engine import SegmentationEngine

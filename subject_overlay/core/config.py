"""
Configuration for the subject overlay engine.

Settings are fixed for a session once the engine is built. They can
come from defaults, a YAML file (see config/settings.yaml) or a
quality preset, in increasing order of precedence.

To add a new preset:
1. Add an entry to PRESETS with the fields it overrides
2. Pass its name to load_config() or --preset on the command line
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional, Tuple
import yaml
from loguru import logger

from .contracts import Anchor


# === QUALITY PRESETS ===
# Each preset trades mask quality for speed
PRESETS: Dict[str, Dict[str, Any]] = {
    "QUALITY": {
        "max_processed_dimension": 640,   # Longest side fed to the model
        "mask_blur_radius": 5,            # Edge softening
    },
    "BALANCED": {
        "max_processed_dimension": 320,
        "mask_blur_radius": 4,
    },
    "FAST": {
        "max_processed_dimension": 256,
        "mask_blur_radius": 3,
    },
}


@dataclass(frozen=True)
class SkinToneThresholds:
    """HSV bounds for the color fallback. All bounds are inclusive."""
    hue_ranges: Tuple[Tuple[float, float], ...] = ((0.0, 50.0), (340.0, 360.0))
    saturation: Tuple[float, float] = (0.1, 0.8)
    value: Tuple[float, float] = (0.2, 0.95)

    def __post_init__(self):
        for low, high in self.hue_ranges:
            if not 0.0 <= low <= high <= 360.0:
                raise ValueError(f"Invalid hue range ({low}, {high})")
        for name in ("saturation", "value"):
            low, high = getattr(self, name)
            if not 0.0 <= low <= high <= 1.0:
                raise ValueError(f"Invalid {name} range ({low}, {high})")


@dataclass(frozen=True)
class OverlayConfig:
    """
    Session parameters for segmentation, refinement and placement.

    Attributes:
        mask_blur_radius: Gaussian radius of the first blur pass (0 = no blur)
        skin: Color fallback thresholds
        preserve_subject_color: Keep original RGB in classifier masks
        model_threshold: Confidence above which a model pixel is subject
        model_selection: MediaPipe selfie model (0 = general, 1 = landscape)
        max_consecutive_errors: Backend failures in a row before demotion
        max_timestamp_anomalies: Timestamp errors in a row before a backend reset
        max_init_retries: Handshake retries after the first attempt
        init_backoff_seconds: Fixed delay between handshake attempts
        max_processed_dimension: Longest frame side sent to the model
        min_processed_dimension: Floor for adaptive downscaling
        downscale_factor: Shrink applied on resource exhaustion
        placement_scale: Subject height as a fraction of surface height
        anchor: Surface corner the subject is pinned to
        margin_x: Horizontal gap from the anchored edge (pixels)
        margin_y: Vertical gap from the anchored edge (pixels)
        overlay_opacity: Opacity of the whole subject layer
        target_fps: Scheduler cadence
        min_frame_dimension: Frames smaller than this on either side are skipped
    """
    # Refinement
    mask_blur_radius: float = 5.0
    skin: SkinToneThresholds = field(default_factory=SkinToneThresholds)
    preserve_subject_color: bool = True

    # Model backend
    model_threshold: float = 0.5
    model_selection: int = 1

    # Resilience
    max_consecutive_errors: int = 3
    max_timestamp_anomalies: int = 2
    max_init_retries: int = 3
    init_backoff_seconds: float = 1.0

    # Adaptive input size
    max_processed_dimension: int = 640
    min_processed_dimension: int = 160
    downscale_factor: float = 0.75

    # Placement
    placement_scale: float = 0.4
    anchor: Anchor = Anchor.BOTTOM_RIGHT
    margin_x: float = 20.0
    margin_y: float = 10.0
    overlay_opacity: float = 1.0

    # Scheduling
    target_fps: float = 30.0
    min_frame_dimension: int = 3

    def __post_init__(self):
        if self.mask_blur_radius < 0:
            raise ValueError("mask_blur_radius must be >= 0")
        if not 0.0 <= self.model_threshold <= 1.0:
            raise ValueError("model_threshold must be within [0, 1]")
        if self.max_consecutive_errors < 1:
            raise ValueError("max_consecutive_errors must be >= 1")
        if self.max_timestamp_anomalies < 1:
            raise ValueError("max_timestamp_anomalies must be >= 1")
        if self.max_init_retries < 0:
            raise ValueError("max_init_retries must be >= 0")
        if self.init_backoff_seconds < 0:
            raise ValueError("init_backoff_seconds must be >= 0")
        if self.min_processed_dimension < 1:
            raise ValueError("min_processed_dimension must be >= 1")
        if self.max_processed_dimension < self.min_processed_dimension:
            raise ValueError("max_processed_dimension must be >= min_processed_dimension")
        if not 0.0 < self.downscale_factor < 1.0:
            raise ValueError("downscale_factor must be within (0, 1)")
        if not 0.0 < self.placement_scale <= 1.0:
            raise ValueError("placement_scale must be within (0, 1]")
        if not 0.0 <= self.overlay_opacity <= 1.0:
            raise ValueError("overlay_opacity must be within [0, 1]")
        if self.target_fps <= 0:
            raise ValueError("target_fps must be > 0")
        if self.min_frame_dimension < 1:
            raise ValueError("min_frame_dimension must be >= 1")

    @property
    def tick_interval_seconds(self) -> float:
        return 1.0 / self.target_fps

    @classmethod
    def from_preset(cls, preset: str, **overrides: Any) -> OverlayConfig:
        if preset not in PRESETS:
            raise ValueError(f"Unknown preset '{preset}', expected one of {list(PRESETS)}")
        values = dict(PRESETS[preset])
        values.update(overrides)
        return cls(**values)

    @classmethod
    def from_dict(cls, data: Dict[str, Any], base: Optional[OverlayConfig] = None) -> OverlayConfig:
        """
        Build a config from a (possibly nested) mapping.

        Section headers such as `refinement:` or `placement:` are only
        for readability; their keys are merged into one flat namespace.
        Unknown keys are ignored with a warning.
        """
        flat = _flatten_sections(data or {})
        known = {f.name for f in fields(cls)}

        updates: Dict[str, Any] = {}
        for key, value in flat.items():
            if key not in known:
                logger.warning(f"Ignoring unknown config key: {key}")
                continue
            updates[key] = value

        if "skin" in updates and isinstance(updates["skin"], dict):
            updates["skin"] = _skin_from_dict(updates["skin"])
        if "anchor" in updates and not isinstance(updates["anchor"], Anchor):
            updates["anchor"] = Anchor(str(updates["anchor"]).lower())

        return replace(base or cls(), **updates)


def _flatten_sections(data: Dict[str, Any]) -> Dict[str, Any]:
    known = {f.name for f in fields(OverlayConfig)}
    flat: Dict[str, Any] = {}
    for key, value in data.items():
        if key not in known and isinstance(value, dict):
            flat.update(_flatten_sections(value))
        else:
            flat[key] = value
    return flat


def _skin_from_dict(data: Dict[str, Any]) -> SkinToneThresholds:
    defaults = SkinToneThresholds()
    hue_ranges = data.get("hue_ranges", defaults.hue_ranges)
    return SkinToneThresholds(
        hue_ranges=tuple((float(low), float(high)) for low, high in hue_ranges),
        saturation=tuple(float(v) for v in data.get("saturation", defaults.saturation)),
        value=tuple(float(v) for v in data.get("value", defaults.value)),
    )


def load_config(
    config_path: Optional[str] = None,
    preset: Optional[str] = None,
) -> OverlayConfig:
    """
    Load configuration.

    Args:
        config_path: YAML file. If None, config/settings.yaml next to the
            package is tried.
        preset: Quality preset applied on top of the file values

    Returns:
        OverlayConfig
    """
    path: Optional[Path] = Path(config_path) if config_path else None
    if path is None:
        default_path = Path(__file__).resolve().parent.parent.parent / "config" / "settings.yaml"
        if default_path.exists():
            path = default_path

    if path is None or not path.exists():
        if config_path:
            logger.warning(f"Config file not found: {config_path}, using defaults")
        return _apply_preset(OverlayConfig(), preset)

    logger.info(f"Loading config from: {path}")
    with open(path) as f:
        data = yaml.safe_load(f) or {}

    return _apply_preset(OverlayConfig.from_dict(data), preset)


def _apply_preset(config: OverlayConfig, preset: Optional[str]) -> OverlayConfig:
    if not preset:
        return config
    if preset not in PRESETS:
        raise ValueError(f"Unknown preset '{preset}', expected one of {list(PRESETS)}")
    logger.info(f"Applying preset {preset}")
    return replace(config, **PRESETS[preset])

"""
Subject Overlay

Live person segmentation and picture-in-picture compositing. The
person is cut out of a camera feed by a segmentation model, falling
back to skin-tone color segmentation whenever the model is missing or
misbehaving, and drawn over a background stream.

Top Priorities (strict order):
1. A subject is always drawn (the color fallback never goes away)
2. Bounded recovery (retry, demote, reset; never loop forever)
3. Steady cadence (a slow tick skips slots instead of piling up)
"""

__version__ = "0.1.0"

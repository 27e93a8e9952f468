"""
Subject placement on the output surface.
"""

from __future__ import annotations

from subject_overlay.core.contracts import Anchor, PlacementRect


def compute_placement(
    surface_width: float,
    surface_height: float,
    subject_width: float,
    subject_height: float,
    scale: float = 0.4,
    anchor: Anchor = Anchor.BOTTOM_RIGHT,
    margin_x: float = 20.0,
    margin_y: float = 10.0,
) -> PlacementRect:
    """
    Compute where the subject is drawn.

    Height is a fixed fraction of the surface height; width follows
    the subject's aspect ratio. The rectangle is pinned to `anchor`
    with the given margins (ignored for CENTER).

    Example:
        960x540 surface, 300x400 subject, defaults
        -> PlacementRect(x=778, y=314, width=162, height=216)
    """
    if subject_width <= 0 or subject_height <= 0:
        raise ValueError(f"Subject must have positive size, got {subject_width}x{subject_height}")

    height = surface_height * scale
    width = height * (subject_width / subject_height)

    if anchor is Anchor.CENTER:
        return PlacementRect(
            x=(surface_width - width) / 2,
            y=(surface_height - height) / 2,
            width=width,
            height=height,
        )

    if anchor in (Anchor.BOTTOM_RIGHT, Anchor.TOP_RIGHT):
        x = surface_width - width - margin_x
    else:
        x = margin_x

    if anchor in (Anchor.BOTTOM_RIGHT, Anchor.BOTTOM_LEFT):
        y = surface_height - height - margin_y
    else:
        y = margin_y

    return PlacementRect(x=x, y=y, width=width, height=height)

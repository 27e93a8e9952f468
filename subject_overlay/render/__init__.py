"""
Rendering Module.

Responsibilities:
- Transparent overlay surface the subject is drawn onto
- Final composition over the background stream
"""

from .surface import OutputSurface, OverlaySurface, compose_over_background

"""
Video Capture Module.

Responsibilities:
- Live camera acquisition for the subject
- Background video playback
- Frame conversion to RGBA
"""

from .video_capture import FrameSource, VideoCapture

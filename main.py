#!/usr/bin/env python3
"""
Subject Overlay

Main entry point: cuts the person out of the live webcam feed and
composites them, picture-in-picture style, over a background video.

Usage:
    python main.py [--config CONFIG_PATH] [--camera INDEX] [--background VIDEO]

Keyboard Controls:
    Q     - Quit
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Optional

import cv2
import numpy as np
from loguru import logger

from subject_overlay.capture import VideoCapture
from subject_overlay.core.config import PRESETS, OverlayConfig, load_config
from subject_overlay.core.contracts import Frame
from subject_overlay.core.status import log_status
from subject_overlay.pipeline import CompositingPipeline, FrameScheduler
from subject_overlay.render import OverlaySurface, compose_over_background
from subject_overlay.segmentation import MediaPipeSelfieCapability, SegmentationEngine


# ============================================================
# LOGGING CONFIGURATION
# ============================================================

def setup_logging(log_level: str = "INFO", log_file: Optional[str] = None):
    """Configure logging."""
    logger.remove()  # Remove default handler

    # Console output with colors
    logger.add(
        sys.stderr,
        level=log_level,
        format="<green>{time:HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | <cyan>{module}</cyan>:<cyan>{line}</cyan> | <level>{message}</level>",
        colorize=True,
    )

    # File output
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_file,
            level="DEBUG",
            format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {module}:{line} | {message}",
            rotation="10 MB",
            retention="7 days",
        )


# ============================================================
# MAIN APPLICATION
# ============================================================

class SubjectOverlayApp:
    """Main application class."""

    def __init__(
        self,
        config: OverlayConfig,
        camera: int = 0,
        background: Optional[str] = None,
        width: int = 960,
        height: int = 540,
        use_model: bool = True,
        window_name: str = "Subject Overlay",
    ):
        self.config = config
        self.window_name = window_name

        self.camera = VideoCapture(camera, width=1280, height=720, fps=int(config.target_fps))
        self.background = VideoCapture(background, loop=True) if background else None
        self.surface = OverlaySurface(width, height)

        capability = MediaPipeSelfieCapability(config.model_selection) if use_model else None
        self.engine = SegmentationEngine(capability, config, status_sink=log_status)
        self.pipeline = CompositingPipeline(self.camera, self.surface, self.engine, config)
        self.scheduler = FrameScheduler(self.pipeline, status_sink=log_status)

        self._background_frame: Optional[Frame] = None

    async def run(self):
        """Run the display loop until Q is pressed."""
        logger.info("Starting Subject Overlay")
        logger.info("Press Q to quit")

        if not self.camera.start():
            logger.error("Failed to start camera")
            return
        if self.background is not None and not self.background.start():
            logger.warning("Background video unavailable, using a plain backdrop")
            self.background = None

        cv2.namedWindow(self.window_name, cv2.WINDOW_NORMAL)
        await self.engine.initialize()
        self.scheduler.start()

        try:
            while self.scheduler.is_running:
                self._render()

                key = cv2.waitKey(1) & 0xFF
                if key == ord('q'):
                    break

                await asyncio.sleep(self.config.tick_interval_seconds)

        except KeyboardInterrupt:
            logger.info("Interrupted by user")
        finally:
            self.scheduler.stop()
            await self.scheduler.drain()
            await self.engine.close()
            logger.info(f"Camera delivered {self.camera.frame_count} frames at {self.camera.actual_fps:.1f} fps")
            self.camera.stop()
            if self.background is not None:
                self.background.stop()
            cv2.destroyAllWindows()

            stats = self.engine.stats
            logger.info(
                f"Overlay stopped: {stats.model_frames} model frames, "
                f"{stats.heuristic_frames} color frames, {stats.resets} resets, "
                f"average tick {self.pipeline.average_latency_ms:.1f}ms"
            )

    def _render(self):
        """Blend the overlay layer over the current background frame and show it."""
        if self.background is not None:
            frame = self.background.read_frame()
            if frame is not None:
                self._background_frame = frame

        overlay = self.surface.snapshot()
        if self._background_frame is None:
            width, height = overlay.size
            backdrop = np.full((height, width, 3), 40, dtype=np.uint8)
            self._background_frame = Frame.from_rgb(backdrop)

        rgb = compose_over_background(self._background_frame, overlay)
        cv2.imshow(self.window_name, cv2.cvtColor(rgb, cv2.COLOR_RGB2BGR))


# ============================================================
# ENTRY POINT
# ============================================================

def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Live person cut-out composited over a background video",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )

    parser.add_argument(
        "--config", "-c",
        type=str,
        default=None,
        help="Path to configuration file",
    )

    parser.add_argument(
        "--camera", "-d",
        type=int,
        default=0,
        help="Camera device index (default: 0)",
    )

    parser.add_argument(
        "--background", "-b",
        type=str,
        default=None,
        help="Background video file, looped (default: plain backdrop)",
    )

    parser.add_argument(
        "--size",
        type=int,
        nargs=2,
        default=[960, 540],
        metavar=("WIDTH", "HEIGHT"),
        help="Output window size (default: 960 540)",
    )

    parser.add_argument(
        "--preset",
        type=str,
        default=None,
        choices=list(PRESETS),
        help="Quality preset, overrides the config file",
    )

    parser.add_argument(
        "--no-model",
        action="store_true",
        help="Skip the segmentation model and use color segmentation only",
    )

    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )

    parser.add_argument(
        "--log-file",
        type=str,
        default="logs/subject_overlay.log",
        help="Log file path (default: logs/subject_overlay.log)",
    )

    args = parser.parse_args()

    # Setup logging
    setup_logging(args.log_level, args.log_file)

    config = load_config(args.config, preset=args.preset)

    app = SubjectOverlayApp(
        config,
        camera=args.camera,
        background=args.background,
        width=args.size[0],
        height=args.size[1],
        use_model=not args.no_model,
    )
    asyncio.run(app.run())


if __name__ == "__main__":
    main()

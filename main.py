#!/usr/bin/env python3
"""
plusnot - Real-time Background Replacement

Main entry point: opens the camera, segments the person out of every
frame and composites them over a replacement background.

Usage:
    python main.py [--config CONFIG_PATH] [--device DEVICE_INDEX]

Keyboard Controls:
    B     - Capture empty-room background reference
    H     - Capture person-in-frame reference
    G     - Use captured background reference as the backdrop
    X     - Clear background reference
    A     - Auto-calibrate diff threshold (Otsu)
    K     - Evaluate silhouette quality
    M     - Cycle segmentation model
    S     - Toggle segmentation
    V     - Toggle HUD
    D     - Toggle debug thumbnails
    C     - Open camera settings dialog
    Q/ESC - Quit
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Optional

import cv2
from loguru import logger

from plusnot.config import load_config, PipelineConfig
from plusnot.core.contracts import SegmentationModel
from plusnot.pipeline import FramePipeline, UIDispatcher, DisplayTarget


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

MODEL_CYCLE = [
    SegmentationModel.MEDIAPIPE,
    SegmentationModel.MODNET,
    SegmentationModel.SINET,
]


class PlusnotApp:
    """OpenCV window acting as the UI thread for the pipeline."""

    def __init__(self, config: PipelineConfig, window_name: str = "plusnot"):
        self.config = config
        self.window_name = window_name
        self.dispatcher = UIDispatcher()
        self.target = DisplayTarget()
        self.pipeline = FramePipeline(self.dispatcher, config)
        self._status = ""

    def _set_status(self, message: str):
        self._status = message
        logger.info(message)

    def _cycle_model(self):
        current = self.pipeline.active_model
        index = MODEL_CYCLE.index(current) if current in MODEL_CYCLE else -1
        for step in range(1, len(MODEL_CYCLE) + 1):
            candidate = MODEL_CYCLE[(index + step) % len(MODEL_CYCLE)]
            if self.pipeline.set_model(candidate):
                self._set_status(f"Model: {candidate.value}")
                return
        self._set_status("No other model available")

    def handle_key(self, key: int) -> bool:
        """Handle a key press. Returns False when quit was requested."""
        if key in (ord('q'), 27):
            return False

        settings = self.pipeline.settings

        if key == ord('b'):
            self.pipeline.capture_background_reference(self._set_status)
        elif key == ord('h'):
            self.pipeline.capture_human_reference(self._set_status)
        elif key == ord('g'):
            if self.pipeline.set_background_from_reference():
                self._set_status("Background set from reference")
            else:
                self._set_status("Capture a background reference first (B)")
        elif key == ord('x'):
            self.pipeline.clear_reference_background()
            self._set_status("Background reference cleared")
        elif key == ord('a'):
            settings.diff_threshold = self.pipeline.compute_auto_threshold()
            self._set_status(f"Diff threshold: {settings.diff_threshold}")
        elif key == ord('k'):
            score, label = self.pipeline.evaluate_silhouette_quality()
            self._set_status(f"Silhouette quality: {score} ({label})")
        elif key == ord('m'):
            self._cycle_model()
        elif key == ord('s'):
            self.pipeline.segmentation_enabled = not self.pipeline.segmentation_enabled
            self._set_status(f"Segmentation {'on' if self.pipeline.segmentation_enabled else 'off'}")
        elif key == ord('v'):
            self.pipeline.hud_enabled = not self.pipeline.hud_enabled
        elif key == ord('d'):
            settings.debug_enabled = not settings.debug_enabled
        elif key == ord('c'):
            self.pipeline.open_camera_settings()

        return True

    def run(self):
        """Run the main application loop."""
        logger.info("Starting plusnot")
        cv2.namedWindow(self.window_name, cv2.WINDOW_NORMAL)

        error = self.pipeline.start(self.target)
        if error:
            logger.error(error)

        try:
            while True:
                self.dispatcher.process_pending()

                frame = self.target.to_bgr()
                if frame is not None:
                    if self._status:
                        cv2.putText(
                            frame, self._status, (10, frame.shape[0] - 40),
                            cv2.FONT_HERSHEY_SIMPLEX, 0.5, (200, 200, 200), 1
                        )
                    if self.target.fps_text:
                        cv2.setWindowTitle(self.window_name, f"plusnot  {self.target.fps_text}")
                    cv2.imshow(self.window_name, frame)

                key = cv2.waitKey(1) & 0xFF
                if key != 0xFF and not self.handle_key(key):
                    break

        except KeyboardInterrupt:
            logger.info("Interrupted by user")
        finally:
            self.pipeline.dispose()
            # Drain hand-offs posted before shutdown
            self.dispatcher.process_pending()
            cv2.destroyAllWindows()
            logger.info("plusnot stopped")


# ============================================================
# ENTRY POINT
# ============================================================

def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="plusnot - real-time background replacement",
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
        "--device", "-d",
        type=int,
        default=None,
        help="Video device index (default: from config)",
    )

    parser.add_argument("--width", type=int, default=None, help="Capture width")
    parser.add_argument("--height", type=int, default=None, help="Capture height")

    parser.add_argument(
        "--background", "-b",
        type=str,
        default=None,
        help="Replacement background image",
    )

    parser.add_argument(
        "--model", "-m",
        type=str,
        default=None,
        choices=[m.value for m in SegmentationModel],
        help="Segmentation model to try first",
    )

    parser.add_argument("--debug", action="store_true", help="Show debug mask thumbnails")
    parser.add_argument("--no-hud", action="store_true", help="Hide the HUD")

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
        default="logs/plusnot.log",
        help="Log file path (default: logs/plusnot.log)",
    )

    args = parser.parse_args()

    # Setup logging
    setup_logging(args.log_level, args.log_file)

    config = load_config(args.config)
    if args.device is not None:
        config.video_device = args.device
    if args.width:
        config.video_width = args.width
    if args.height:
        config.video_height = args.height
    if args.background:
        config.background_image = args.background
    if args.model:
        preferred = SegmentationModel.from_name(args.model)
        config.model_priority = [preferred] + [m for m in config.model_priority if m != preferred]
    if args.debug:
        config.settings.debug_enabled = True
    if args.no_hud:
        config.hud_enabled = False

    PlusnotApp(config).run()


if __name__ == "__main__":
    main()

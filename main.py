#!/usr/bin/env python3
"""
Monocular Depth Camera

Main entry point for the real-time depth-from-camera pipeline.

Usage:
    python main.py [--config CONFIG_PATH] [--model MODEL_PATH] [--image IMAGE_PATH]

Keyboard Controls:
    E     - Toggle depth extents overlay
    Q     - Quit

Examples:
    python main.py --model models/midas_small.pt
    python main.py --model models/identity.pt --image samples/room.png --extents
"""

from __future__ import annotations

import argparse
import sys
import time
from pathlib import Path
from typing import Optional

import cv2
import numpy as np
from numpy.typing import NDArray
from loguru import logger

from monodepth.capture import FrameSource, ImageFileSource, VideoCapture
from monodepth.config import AppConfig, load_config, validate
from monodepth.core.contracts import DepthExtents, FrameResult
from monodepth.core.errors import ConfigError, ModelLoadError, PipelineStalledError
from monodepth.pipeline import PipelineOrchestrator


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
# OUTPUT RENDERER
# ============================================================

def colorize_depth(
    depth: NDArray[np.float32],
    extents: Optional[DepthExtents] = None,
) -> NDArray[np.uint8]:
    """
    Map a depth plane to a BGR heatmap.

    Values are normalized by `extents` when given, otherwise by the
    plane's own finite range. A flat plane maps to black.
    """
    if extents is not None:
        lo, hi = extents.min, extents.max
    else:
        finite = depth[np.isfinite(depth)]
        lo, hi = (float(finite.min()), float(finite.max())) if finite.size else (0.0, 0.0)

    span = hi - lo
    if span <= 0:
        normalized = np.zeros(depth.shape, dtype=np.uint8)
    else:
        scaled = np.nan_to_num((depth - lo) / span, nan=0.0, posinf=1.0, neginf=0.0)
        normalized = (np.clip(scaled, 0.0, 1.0) * 255).astype(np.uint8)

    return cv2.applyColorMap(normalized, cv2.COLORMAP_INFERNO)


class OutputRenderer:
    """Shows the normalized color frame and the depth heatmap side by side."""

    def __init__(
        self,
        window_name: str = "Monocular Depth",
        display_info: bool = True,
    ):
        self.window_name = window_name
        self.display_info = display_info
        self.show_extents = True

        cv2.namedWindow(self.window_name, cv2.WINDOW_NORMAL)

    def render(self, result: FrameResult, fps: float = 0):
        """Render one tick's outputs with an info overlay."""
        if result.color is None:
            return

        color = cv2.cvtColor(result.color.to_numpy(), cv2.COLOR_RGBA2BGR)

        if result.depth is not None and result.success:
            depth_view = colorize_depth(result.depth.to_numpy(), result.extents)
        else:
            depth_view = np.zeros_like(color)

        if depth_view.shape[:2] != color.shape[:2]:
            depth_view = cv2.resize(depth_view, (color.shape[1], color.shape[0]))

        display_frame = np.hstack([color, depth_view])

        if self.display_info:
            self._draw_info_overlay(display_frame, result, fps)

        cv2.imshow(self.window_name, display_frame)

    def _draw_info_overlay(self, frame: np.ndarray, result: FrameResult, fps: float):
        """Draw information overlay on frame."""
        h, w = frame.shape[:2]

        color = (0, 0, 255) if result.latency_budget_exceeded else (0, 255, 0)

        cv2.putText(
            frame, f"FPS: {fps:.1f}", (10, 20),
            cv2.FONT_HERSHEY_SIMPLEX, 0.5, color, 1
        )
        cv2.putText(
            frame, f"Latency: {result.total_latency_ms:.1f}ms", (10, 40),
            cv2.FONT_HERSHEY_SIMPLEX, 0.5, color, 1
        )

        if self.show_extents and result.extents is not None:
            cv2.putText(
                frame, f"Depth: {result.extents.min:.3f} .. {result.extents.max:.3f}", (10, 60),
                cv2.FONT_HERSHEY_SIMPLEX, 0.5, (255, 255, 0), 1
            )

        if not result.success and result.skip_reason:
            cv2.putText(
                frame, result.skip_reason[:50], (10, h - 30),
                cv2.FONT_HERSHEY_SIMPLEX, 0.4, (0, 165, 255), 1
            )

        cv2.putText(
            frame, "E:Extents  Q:Quit", (10, h - 10),
            cv2.FONT_HERSHEY_SIMPLEX, 0.4, (200, 200, 200), 1
        )

    def close(self):
        """Close the renderer."""
        cv2.destroyAllWindows()


# ============================================================
# MAIN APPLICATION
# ============================================================

class DepthCameraApp:
    """Main application class."""

    def __init__(self, config: AppConfig):
        self.config = config
        self.source = self._create_source(config)
        self.pipeline = PipelineOrchestrator(config.pipeline)
        self.renderer: Optional[OutputRenderer] = None

        self._running = False

    @staticmethod
    def _create_source(config: AppConfig) -> FrameSource:
        capture = config.capture
        if capture.source == "image":
            return ImageFileSource(capture.image_path)
        return VideoCapture(
            device_index=capture.device_index,
            width=capture.width,
            height=capture.height,
            fps=capture.fps,
        )

    def run(self) -> int:
        """
        Run the main application loop.

        Returns:
            Process exit code
        """
        logger.info("Starting Monocular Depth Camera")
        logger.info("Press Q to quit")

        if not self.source.start():
            logger.error("Failed to start frame source")
            return 1

        try:
            self.pipeline.initialize()
        except ModelLoadError as e:
            logger.error(f"Failed to load depth model: {e}")
            self.source.stop()
            return 1

        self.renderer = OutputRenderer()
        self._running = True
        frame_count = 0
        start_time = time.time()
        exit_code = 0

        try:
            while self._running:
                result = self.pipeline.tick_from(self.source)

                frame_count += 1
                elapsed = time.time() - start_time
                fps = frame_count / elapsed if elapsed > 0 else 0

                self.renderer.render(result, fps=fps)

                key = cv2.waitKey(1) & 0xFF
                if key == ord('q'):
                    break
                if key == ord('e'):
                    self.renderer.show_extents = not self.renderer.show_extents

        except KeyboardInterrupt:
            logger.info("Interrupted by user")
        except PipelineStalledError as e:
            logger.error(str(e))
            exit_code = 2
        finally:
            self._running = False
            self.pipeline.dispose()
            self.source.stop()
            self.renderer.close()
            logger.info(f"Stopped after {frame_count} frames (avg {self.pipeline.average_latency_ms:.1f}ms)")

        return exit_code


# ============================================================
# ENTRY POINT
# ============================================================

def apply_overrides(config: AppConfig, args: argparse.Namespace) -> AppConfig:
    """Apply command-line values on top of the file configuration."""
    if args.model is not None:
        config.pipeline.model_path = args.model
    if args.metadata is not None:
        config.pipeline.metadata_path = args.metadata
    if args.image is not None:
        config.capture.source = "image"
        config.capture.image_path = args.image
    if args.camera is not None:
        config.capture.source = "webcam"
        config.capture.device_index = args.camera
    if args.compute_device is not None:
        config.pipeline.device = args.compute_device
    if args.width is not None:
        config.pipeline.desired_width = args.width
    if args.height is not None:
        config.pipeline.desired_height = args.height
    if args.layout is not None:
        config.pipeline.layout_mode = args.layout
    if args.extents:
        config.pipeline.calculate_depth_extents = True
    if args.log_level is not None:
        config.logging.level = args.log_level
    if args.log_file is not None:
        config.logging.file = args.log_file or None

    return validate(config)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Real-time monocular depth from a camera",
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
        "--model", "-m",
        type=str,
        default=None,
        help="TorchScript depth model",
    )
    parser.add_argument(
        "--metadata",
        type=str,
        default=None,
        help="Model metadata YAML (default: <model>.yaml)",
    )
    parser.add_argument(
        "--image", "-i",
        type=str,
        default=None,
        help="Use an image file instead of the webcam",
    )
    parser.add_argument(
        "--camera", "-d",
        type=int,
        default=None,
        help="Webcam device index",
    )
    parser.add_argument(
        "--compute-device",
        type=str,
        default=None,
        help="auto, cuda, mps or cpu",
    )
    parser.add_argument("--width", type=int, default=None, help="Working width")
    parser.add_argument("--height", type=int, default=None, help="Working height")
    parser.add_argument(
        "--layout",
        type=str,
        default=None,
        choices=["auto", "direct", "reshape"],
        help="Output layout override",
    )
    parser.add_argument(
        "--extents",
        action="store_true",
        help="Calculate depth extents every frame",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: from config)",
    )
    parser.add_argument(
        "--log-file",
        type=str,
        default=None,
        help="Log file path, empty to disable (default: from config)",
    )

    return parser


def main(argv=None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    try:
        config = apply_overrides(load_config(args.config), args)
    except ConfigError as e:
        setup_logging()
        logger.error(f"Invalid configuration: {e}")
        return 1

    setup_logging(config.logging.level, config.logging.file)

    app = DepthCameraApp(config)
    return app.run()


if __name__ == "__main__":
    sys.exit(main())

"""
Webcam Video Capture.

Handles:
- Webcam acquisition through OpenCV
- Frame rate tracking
- BGR to RGB conversion
"""

from __future__ import annotations

import time
from typing import List, Optional, Tuple

import numpy as np
from numpy.typing import NDArray
import cv2
from loguru import logger

from monodepth.capture.frame_source import FrameSource


class VideoCapture(FrameSource):
    """
    Live camera frame source.

    Guarantees:
    - RGB format output
    - None (never an exception) when a read fails
    """

    def __init__(
        self,
        device_index: int = 0,
        width: int = 1280,
        height: int = 720,
        fps: int = 30,
        buffer_frames: int = 1,
    ):
        """
        Initialize video capture.

        Args:
            device_index: Camera device index
            width: Requested capture width
            height: Requested capture height
            fps: Requested frames per second
            buffer_frames: Driver-side frame buffer size
        """
        self.device_index = device_index
        self.width = width
        self.height = height
        self.fps = fps
        self.buffer_frames = buffer_frames

        self._capture: Optional[cv2.VideoCapture] = None
        self._is_running = False
        self._frame_count = 0

        self._frame_times: List[float] = []
        self._actual_fps: float = 0.0

    def start(self) -> bool:
        """
        Open the camera.

        Returns:
            True if started successfully
        """
        if self._is_running:
            return True

        self._capture = cv2.VideoCapture(self.device_index)
        if not self._capture.isOpened():
            logger.error(f"Failed to open camera {self.device_index}")
            self._capture.release()
            self._capture = None
            return False

        self._capture.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
        self._capture.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)
        self._capture.set(cv2.CAP_PROP_FPS, self.fps)
        self._capture.set(cv2.CAP_PROP_BUFFERSIZE, self.buffer_frames)

        actual_width, actual_height = self.resolution
        actual_fps = self._capture.get(cv2.CAP_PROP_FPS)
        logger.info(f"Video capture started: {actual_width}x{actual_height} @ {actual_fps}fps")

        self._is_running = True
        return True

    def stop(self) -> None:
        """Release the camera."""
        self._is_running = False

        if self._capture is not None:
            self._capture.release()
            self._capture = None
            logger.info("Video capture stopped")

    def current_frame(self) -> Optional[NDArray[np.uint8]]:
        if not self._is_running or self._capture is None:
            return None

        ret, frame = self._capture.read()
        if not ret or frame is None:
            return None

        self._frame_count += 1
        self._frame_times.append(time.perf_counter())
        if len(self._frame_times) > 30:
            self._frame_times.pop(0)
        self._update_fps()

        return cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)

    def _update_fps(self):
        """Calculate actual FPS from frame times."""
        if len(self._frame_times) < 2:
            return

        duration = self._frame_times[-1] - self._frame_times[0]
        if duration > 0:
            self._actual_fps = (len(self._frame_times) - 1) / duration

    @property
    def is_running(self) -> bool:
        return self._is_running

    @property
    def actual_fps(self) -> float:
        return self._actual_fps

    @property
    def frame_count(self) -> int:
        return self._frame_count

    @property
    def resolution(self) -> Tuple[int, int]:
        if self._capture is not None:
            return (
                int(self._capture.get(cv2.CAP_PROP_FRAME_WIDTH)),
                int(self._capture.get(cv2.CAP_PROP_FRAME_HEIGHT)),
            )
        return (self.width, self.height)

"""
Base class for frame sources.

To add a new frame source:
1. Inherit from FrameSource
2. Implement current_frame() and resolution
3. Override start()/stop() if the source holds a device or file handle

Example implementation:
    class NoiseSource(FrameSource):
        def current_frame(self):
            return np.random.randint(0, 256, (480, 640, 3), dtype=np.uint8)

        @property
        def resolution(self):
            return (640, 480)
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional, Tuple, Union

import numpy as np
from numpy.typing import NDArray
import cv2
from loguru import logger


class FrameSource(ABC):
    """Abstract base class for color frame providers.

    Frames are RGB (H, W, 3) or RGBA (H, W, 4) uint8 arrays owned by the
    source. The pipeline only reads them.
    """

    def start(self) -> bool:
        """Acquire the underlying device or file.

        Returns:
            True if the source is ready to deliver frames
        """
        return True

    def stop(self) -> None:
        """Release the underlying device or file."""

    @abstractmethod
    def current_frame(self) -> Optional[NDArray[np.uint8]]:
        """Get the latest frame.

        Non-blocking. Returns None when no frame is available this tick.
        """

    @property
    @abstractmethod
    def resolution(self) -> Tuple[int, int]:
        """(width, height) of delivered frames, (0, 0) if unknown."""

    def __enter__(self) -> FrameSource:
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()


class StaticFrameSource(FrameSource):
    """Delivers the same frame every tick."""

    def __init__(self, frame: Optional[NDArray[np.uint8]]):
        if frame is not None and (frame.ndim != 3 or frame.shape[2] not in (3, 4)):
            raise ValueError(f"Expected (H, W, 3|4) frame, got {frame.shape}")
        self._frame = frame

    def current_frame(self) -> Optional[NDArray[np.uint8]]:
        return self._frame

    def set_frame(self, frame: Optional[NDArray[np.uint8]]) -> None:
        self._frame = frame

    @property
    def resolution(self) -> Tuple[int, int]:
        if self._frame is None:
            return (0, 0)
        return (self._frame.shape[1], self._frame.shape[0])


class ImageFileSource(FrameSource):
    """Delivers a single image read from disk."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._frame: Optional[NDArray[np.uint8]] = None

    def start(self) -> bool:
        image = cv2.imread(str(self.path), cv2.IMREAD_COLOR)
        if image is None:
            logger.error(f"Failed to read image: {self.path}")
            return False

        self._frame = cv2.cvtColor(image, cv2.COLOR_BGR2RGB)
        logger.info(f"Loaded image {self.path.name}: {self.resolution[0]}x{self.resolution[1]}")
        return True

    def stop(self) -> None:
        self._frame = None

    def current_frame(self) -> Optional[NDArray[np.uint8]]:
        return self._frame

    @property
    def resolution(self) -> Tuple[int, int]:
        if self._frame is None:
            return (0, 0)
        return (self._frame.shape[1], self._frame.shape[0])

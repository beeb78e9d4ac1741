"""
Texture resizer.

Normalizes arbitrary camera frames into one RGBA buffer at the network's
working resolution. The buffer is reused while the target size holds and
reallocated (old one released first) when it changes.
"""

from __future__ import annotations

from typing import Optional, Union

import numpy as np
from numpy.typing import NDArray
import torch
from loguru import logger

from monodepth.core.contracts import BufferFormat
from monodepth.gpu.buffers import GpuBuffer, blit, ensure_buffer


class TextureResizer:
    """
    Bilinear resize of color frames into a cached device buffer.

    Usage:
        resizer = TextureResizer(device)
        resized = resizer.resize(frame, 256, 256)
    """

    def __init__(self, device: Union[str, torch.device] = "cpu"):
        self.device = device
        self._buffer: Optional[GpuBuffer] = None
        self._allocation_count = 0

    def resize(
        self,
        frame: Optional[NDArray[np.uint8]],
        target_width: int,
        target_height: int,
    ) -> Optional[GpuBuffer]:
        """
        Resample `frame` into the cached buffer.

        Args:
            frame: RGB/RGBA uint8 frame, or None when no frame is available
            target_width: Output width in pixels
            target_height: Output height in pixels

        Returns:
            Buffer at exactly (target_width, target_height). When `frame` is
            None the previous buffer is returned untouched (may be None).
        """
        if frame is None:
            return self._buffer

        return blit(frame, self.reserve(target_width, target_height))

    def reserve(self, target_width: int, target_height: int) -> GpuBuffer:
        """Make sure the cached buffer exists at the target size."""
        if self._buffer is None or not self._buffer.matches(
            target_width, target_height, BufferFormat.COLOR_RGBA8
        ):
            self._buffer = ensure_buffer(
                self._buffer,
                target_width,
                target_height,
                BufferFormat.COLOR_RGBA8,
                self.device,
            )
            self._allocation_count += 1
            logger.debug(f"Resize target allocated: {target_width}x{target_height}")

        return self._buffer

    def release(self) -> None:
        if self._buffer is not None:
            self._buffer.release()
            self._buffer = None

    @property
    def buffer(self) -> Optional[GpuBuffer]:
        return self._buffer

    @property
    def allocation_count(self) -> int:
        """Number of buffer allocations made so far."""
        return self._allocation_count

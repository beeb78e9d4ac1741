"""
Conversion between device buffers and network tensors.

Forward:  RGBA8 buffer -> float32 input tensor in [0, 1]
Backward: raw network output -> DEPTH_F32 buffer

Both tensor wrappers are scoped: use them in a `with` block so they are
dropped at the end of the tick on every path, including early returns.
"""

from __future__ import annotations

from typing import Optional, Tuple, Union

import torch
from loguru import logger

from monodepth.core.contracts import BufferFormat, ChannelOrder, LayoutMode
from monodepth.core.errors import TensorLayoutError
from monodepth.gpu.buffers import GpuBuffer, blit


class _ScopedTensor:
    """A tensor reference that is dropped on dispose()."""

    def __init__(self, tensor: torch.Tensor):
        self._tensor: Optional[torch.Tensor] = tensor

    @property
    def tensor(self) -> torch.Tensor:
        if self._tensor is None:
            raise RuntimeError(f"{type(self).__name__} has been disposed")
        return self._tensor

    @property
    def shape(self) -> Tuple[int, ...]:
        return tuple(self.tensor.shape)

    @property
    def is_disposed(self) -> bool:
        return self._tensor is None

    def dispose(self) -> None:
        self._tensor = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.dispose()


class InputTensor(_ScopedTensor):
    """Network input built from a resized color frame."""


class OutputTensor(_ScopedTensor):
    """Raw network output."""


class TensorBridge:
    """
    Converts between buffers and tensors for one model's channel order.

    The channel order is fixed when a model is attached; it is never
    inferred from a frame.
    """

    def __init__(self, channel_order: ChannelOrder = ChannelOrder.NHWC):
        self.channel_order = channel_order

    def to_tensor(
        self,
        frame: GpuBuffer,
        channels: int = 3,
        order: Optional[ChannelOrder] = None,
    ) -> InputTensor:
        """
        Build a network input from a color buffer.

        Args:
            frame: COLOR_RGBA8 buffer
            channels: Leading channels to keep (alpha is dropped for 3)
            order: Overrides the bridge's channel order

        Returns:
            InputTensor shaped (1, H, W, C) for NHWC or (1, C, H, W) for NCHW
        """
        if frame.format is not BufferFormat.COLOR_RGBA8:
            raise TensorLayoutError(f"Expected a color buffer, got {frame.format.value}")
        if not 1 <= channels <= 4:
            raise TensorLayoutError(f"Unsupported channel count: {channels}")

        order = order or self.channel_order

        data = frame.tensor[..., :channels].float().div_(255.0).unsqueeze(0)
        if order is ChannelOrder.NCHW:
            data = data.permute(0, 3, 1, 2)

        return InputTensor(data.contiguous())

    def to_depth_buffer(
        self,
        output: Union[OutputTensor, torch.Tensor],
        layout: LayoutMode,
        target_width: int,
        target_height: int,
        depth_buffer: GpuBuffer,
        order: Optional[ChannelOrder] = None,
    ) -> GpuBuffer:
        """
        Copy channel 0 of a network output into a depth buffer.

        RESHAPE reinterprets the flat output as (1, height, width, 1) in
        row-major order; its element count must equal width * height.
        DIRECT takes channel 0 of the output as shaped. A plane whose size
        differs from the buffer is resampled into it.

        Raises:
            TensorLayoutError: output cannot be read under `layout`
        """
        if depth_buffer.format is not BufferFormat.DEPTH_F32:
            raise TensorLayoutError(f"Expected a depth buffer, got {depth_buffer.format.value}")

        data = output.tensor if isinstance(output, OutputTensor) else output

        if layout is LayoutMode.RESHAPE:
            plane = self._reshape_plane(data, target_width, target_height)
        else:
            plane = self._direct_plane(data, order or self.channel_order)

        if plane.shape[0] != depth_buffer.height or plane.shape[1] != depth_buffer.width:
            logger.debug(
                f"Resampling depth plane {plane.shape[1]}x{plane.shape[0]} -> "
                f"{depth_buffer.width}x{depth_buffer.height}"
            )

        return blit(plane.detach(), depth_buffer)

    @staticmethod
    def _reshape_plane(data: torch.Tensor, width: int, height: int) -> torch.Tensor:
        expected = width * height
        if data.numel() != expected:
            raise TensorLayoutError(
                f"Cannot reshape output of {data.numel()} elements "
                f"{tuple(data.shape)} to (1, {height}, {width}, 1)"
            )
        return data.reshape(1, height, width, 1)[0, :, :, 0]

    @staticmethod
    def _direct_plane(data: torch.Tensor, order: ChannelOrder) -> torch.Tensor:
        if data.ndim == 4:
            if order is ChannelOrder.NCHW:
                plane = data[0, 0]
            else:
                plane = data[0, :, :, 0]
        elif data.ndim == 3:
            plane = data[0]
        elif data.ndim == 2:
            plane = data
        else:
            raise TensorLayoutError(f"Output of shape {tuple(data.shape)} has no depth plane")

        if plane.numel() == 0:
            raise TensorLayoutError(f"Output of shape {tuple(data.shape)} is empty")
        return plane

"""
Device-resident buffers for frame processing.

Wraps torch tensors with an explicit allocate/release lifecycle so
pipeline stages can reuse one buffer across frames and release it
exactly once on resize or teardown.
"""

from __future__ import annotations

from typing import Optional, Tuple, Union

import numpy as np
from numpy.typing import NDArray
import torch
import torch.nn.functional as F
from loguru import logger

from monodepth.core.contracts import BufferFormat


BlitSource = Union[NDArray, torch.Tensor, "GpuBuffer"]


def select_device(preference: str = "auto") -> torch.device:
    """
    Resolve the compute device.

    Args:
        preference: "auto", or any torch device string ("cuda:0", "cpu", ...)

    Returns:
        torch.device (CUDA > MPS > CPU when "auto")
    """
    if preference != "auto":
        return torch.device(preference)

    if torch.cuda.is_available():
        logger.info(f"Using CUDA ({torch.cuda.get_device_name(0)})")
        return torch.device("cuda")
    if hasattr(torch.backends, "mps") and torch.backends.mps.is_available():
        logger.info("Using MPS (Apple Metal GPU)")
        return torch.device("mps")

    logger.info("Using CPU (no GPU detected)")
    return torch.device("cpu")


class GpuBuffer:
    """
    A fixed-size image buffer living on a torch device.

    COLOR_RGBA8 buffers hold an (H, W, 4) uint8 tensor, DEPTH_F32 buffers
    an (H, W) float32 tensor. A released buffer can no longer be read.

    Usage:
        buf = GpuBuffer.allocate(256, 256, BufferFormat.COLOR_RGBA8)
        blit(frame_rgb, buf)
        ...
        buf.release()
    """

    def __init__(
        self,
        tensor: torch.Tensor,
        width: int,
        height: int,
        fmt: BufferFormat,
    ):
        self._tensor: Optional[torch.Tensor] = tensor
        self._width = width
        self._height = height
        self._format = fmt
        self._device = tensor.device

    @classmethod
    def allocate(
        cls,
        width: int,
        height: int,
        fmt: BufferFormat,
        device: Union[str, torch.device] = "cpu",
    ) -> GpuBuffer:
        """Allocate a zero-filled buffer."""
        if width <= 0 or height <= 0:
            raise ValueError(f"Buffer dimensions must be positive, got {width}x{height}")

        if fmt is BufferFormat.COLOR_RGBA8:
            tensor = torch.zeros((height, width, 4), dtype=torch.uint8, device=device)
        else:
            tensor = torch.zeros((height, width), dtype=torch.float32, device=device)

        return cls(tensor, width, height, fmt)

    def release(self) -> None:
        """Drop the device tensor. Safe to call more than once."""
        if self._tensor is None:
            return
        self._tensor = None

    @property
    def tensor(self) -> torch.Tensor:
        if self._tensor is None:
            raise RuntimeError(f"{self!r} has been released")
        return self._tensor

    @property
    def is_released(self) -> bool:
        return self._tensor is None

    @property
    def width(self) -> int:
        return self._width

    @property
    def height(self) -> int:
        return self._height

    @property
    def size(self) -> Tuple[int, int]:
        """(width, height)"""
        return (self._width, self._height)

    @property
    def format(self) -> BufferFormat:
        return self._format

    @property
    def device(self) -> torch.device:
        return self._device

    def matches(self, width: int, height: int, fmt: BufferFormat) -> bool:
        return (
            not self.is_released
            and self._width == width
            and self._height == height
            and self._format is fmt
        )

    def to_numpy(self) -> NDArray:
        """Copy the contents to host memory."""
        return self.tensor.detach().cpu().numpy().copy()

    def __repr__(self) -> str:
        state = "released" if self.is_released else str(self._device)
        return f"GpuBuffer({self._width}x{self._height}, {self._format.value}, {state})"


def ensure_buffer(
    existing: Optional[GpuBuffer],
    width: int,
    height: int,
    fmt: BufferFormat,
    device: Union[str, torch.device] = "cpu",
) -> GpuBuffer:
    """
    Return `existing` if it already matches, otherwise release it and
    allocate a replacement. The old buffer is always released before the
    new one is allocated.
    """
    if existing is not None and existing.matches(width, height, fmt):
        return existing

    if existing is not None:
        logger.debug(f"Reallocating {existing!r} -> {width}x{height}")
        existing.release()

    return GpuBuffer.allocate(width, height, fmt, device)


def _as_tensor(src: BlitSource, device: torch.device) -> torch.Tensor:
    if isinstance(src, GpuBuffer):
        return src.tensor.to(device)
    if isinstance(src, torch.Tensor):
        return src.to(device)
    if isinstance(src, np.ndarray):
        return torch.from_numpy(np.ascontiguousarray(src)).to(device)
    raise TypeError(f"Cannot blit from {type(src).__name__}")


def _resample(image_hwc: torch.Tensor, height: int, width: int) -> torch.Tensor:
    """Bilinear resample of an (H, W, C) float tensor."""
    if image_hwc.shape[0] == height and image_hwc.shape[1] == width:
        return image_hwc
    nchw = image_hwc.permute(2, 0, 1).unsqueeze(0)
    out = F.interpolate(nchw, size=(height, width), mode="bilinear", align_corners=False)
    return out.squeeze(0).permute(1, 2, 0)


@torch.no_grad()
def blit(src: BlitSource, dst: GpuBuffer) -> GpuBuffer:
    """
    Resample `src` into `dst`, overwriting its contents.

    Color destinations accept (H, W), (H, W, 3) or (H, W, 4) uint8 sources;
    a missing alpha channel is filled with 255. Depth destinations accept
    (H, W) or (H, W, 1) numeric sources.

    Returns:
        dst
    """
    t = _as_tensor(src, dst.device)

    if dst.format is BufferFormat.COLOR_RGBA8:
        if t.dtype != torch.uint8:
            raise ValueError(f"Color sources must be uint8, got {t.dtype}")
        if t.ndim == 2:
            t = t.unsqueeze(-1).expand(-1, -1, 3)
        if t.ndim != 3 or t.shape[2] not in (3, 4):
            raise ValueError(f"Unsupported color source shape {tuple(t.shape)}")

        resized = _resample(t.float(), dst.height, dst.width)
        resized = resized.round_().clamp_(0.0, 255.0).to(torch.uint8)

        target = dst.tensor
        target[..., :3].copy_(resized[..., :3])
        if resized.shape[2] == 4:
            target[..., 3].copy_(resized[..., 3])
        else:
            target[..., 3].fill_(255)
        return dst

    if t.ndim == 3 and t.shape[2] == 1:
        t = t[..., 0]
    if t.ndim != 2:
        raise ValueError(f"Unsupported depth source shape {tuple(t.shape)}")

    resized = _resample(t.float().unsqueeze(-1), dst.height, dst.width)
    dst.tensor.copy_(resized[..., 0])
    return dst

"""
Depth network loading and execution.

Supports:
- In-memory torch modules with declared shapes
- TorchScript files with a YAML metadata sidecar
- Legacy 8-D (Barracuda-style) shape declarations
- Load-time resolution of output layout and channel order
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Sequence, Tuple, Type, TypeVar, Union

import torch
import torch.nn as nn
import yaml
from loguru import logger

from monodepth.core.contracts import ChannelOrder, LayoutMode
from monodepth.core.errors import (
    InferenceError,
    ModelLoadError,
    ModelMissing,
    ResourceReleaseError,
)
from monodepth.gpu.buffers import select_device
from monodepth.transforms.tensor_bridge import InputTensor, OutputTensor


E = TypeVar("E", LayoutMode, ChannelOrder)

_CHANNEL_COUNTS = (1, 3, 4)


# ============================================================
# MODEL ASSETS
# ============================================================

@dataclass
class ModelAsset:
    """
    A network plus its declared tensor shapes.

    Either `module` (in memory) or `path` (TorchScript file) is set.
    `layout` and `channel_order` are optional overrides; when None they
    are resolved from the shapes at load time.
    """
    input_shape: Tuple[int, ...]
    output_shape: Optional[Tuple[int, ...]] = None
    module: Optional[nn.Module] = None
    path: Optional[Path] = None
    layout: Optional[LayoutMode] = None
    channel_order: Optional[ChannelOrder] = None
    name: str = "model"

    @classmethod
    def from_path(
        cls,
        path: Union[str, Path],
        metadata_path: Optional[Union[str, Path]] = None,
    ) -> ModelAsset:
        """
        Describe a TorchScript model on disk.

        The metadata sidecar defaults to the model path with a `.yaml`
        suffix and holds `input_shape` plus optional `output_shape`,
        `layout`, `channel_order` and `name`.

        Raises:
            ModelLoadError: missing file or malformed metadata
        """
        path = Path(path)
        meta_path = Path(metadata_path) if metadata_path else path.with_suffix(".yaml")

        if not path.is_file():
            raise ModelLoadError(f"Model file not found: {path}")
        if not meta_path.is_file():
            raise ModelLoadError(f"Model metadata not found: {meta_path}")

        try:
            with open(meta_path, "r") as f:
                meta = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ModelLoadError(f"Malformed model metadata {meta_path}: {e}") from e

        if not isinstance(meta, dict):
            raise ModelLoadError(f"Model metadata must be a mapping: {meta_path}")

        output_shape = meta.get("output_shape")

        return cls(
            input_shape=_parse_shape(meta.get("input_shape"), "input_shape"),
            output_shape=_parse_shape(output_shape, "output_shape") if output_shape is not None else None,
            path=path,
            layout=_parse_enum(LayoutMode, meta.get("layout"), "layout"),
            channel_order=_parse_enum(ChannelOrder, meta.get("channel_order"), "channel_order"),
            name=str(meta.get("name", path.stem)),
        )


def _parse_shape(value: Any, key: str) -> Tuple[int, ...]:
    if not isinstance(value, (list, tuple)) or not value:
        raise ModelLoadError(f"'{key}' must be a non-empty list of integers, got {value!r}")
    try:
        return tuple(int(v) for v in value)
    except (TypeError, ValueError) as e:
        raise ModelLoadError(f"'{key}' must contain integers, got {value!r}") from e


def _parse_enum(enum_cls: Type[E], value: Any, key: str) -> Optional[E]:
    if value is None:
        return None
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).lower())
    except ValueError as e:
        choices = ", ".join(m.value for m in enum_cls)
        raise ModelLoadError(f"'{key}' must be one of [{choices}], got {value!r}") from e


# ============================================================
# LAYOUT RESOLUTION
# ============================================================

@dataclass(frozen=True)
class ResolvedLayout:
    """Static tensor layout of a loaded model."""
    layout: LayoutMode
    channel_order: ChannelOrder
    width: int
    height: int
    channels: int


def resolve_layout(
    input_shape: Sequence[int],
    output_shape: Optional[Sequence[int]] = None,
    layout: Optional[LayoutMode] = None,
    channel_order: Optional[ChannelOrder] = None,
) -> ResolvedLayout:
    """
    Derive input dimensions, output layout and channel order from
    declared shapes.

    Rank 8 (legacy 8-D): height/width at slots 5/6, channels last,
    RESHAPE by default.
    Rank 4: height/width at slots 1/2 (NHWC) or 2/3 (NCHW); DIRECT unless
    the declared output shape is not rank 4.

    Explicit `layout` / `channel_order` always win.

    Raises:
        ModelLoadError: unsupported rank or non-positive dimensions
    """
    shape = tuple(input_shape)

    if len(shape) == 8:
        order = channel_order or ChannelOrder.NHWC
        height, width, channels = shape[5], shape[6], shape[7]
        resolved_layout = layout or LayoutMode.RESHAPE

    elif len(shape) == 4:
        order = channel_order or _infer_channel_order(shape)
        if order is ChannelOrder.NCHW:
            channels, height, width = shape[1], shape[2], shape[3]
        else:
            height, width, channels = shape[1], shape[2], shape[3]

        if layout is not None:
            resolved_layout = layout
        elif output_shape is None:
            logger.warning("No output shape declared; assuming DIRECT layout")
            resolved_layout = LayoutMode.DIRECT
        elif len(output_shape) != 4:
            resolved_layout = LayoutMode.RESHAPE
        else:
            resolved_layout = LayoutMode.DIRECT

    else:
        raise ModelLoadError(f"Unsupported input rank {len(shape)} for shape {shape}")

    if width <= 0 or height <= 0:
        raise ModelLoadError(f"Input shape {shape} has non-positive spatial dimensions")
    if channels not in _CHANNEL_COUNTS:
        raise ModelLoadError(f"Input shape {shape} has unsupported channel count {channels}")

    return ResolvedLayout(resolved_layout, order, width, height, channels)


def _infer_channel_order(shape: Tuple[int, ...]) -> ChannelOrder:
    channels_last = shape[3] in _CHANNEL_COUNTS
    channels_first = shape[1] in _CHANNEL_COUNTS

    if channels_first and not channels_last:
        return ChannelOrder.NCHW
    if channels_last and not channels_first:
        return ChannelOrder.NHWC

    logger.warning(f"Ambiguous channel order for input shape {shape}; assuming NHWC")
    return ChannelOrder.NHWC


# ============================================================
# ENGINE
# ============================================================

@dataclass
class NetworkHandle:
    """A loaded network. Disposed exactly once by InferenceEngine.dispose()."""
    module: Optional[nn.Module]
    device: torch.device
    name: str
    input_shape: Tuple[int, ...]
    output_shape: Optional[Tuple[int, ...]]
    layout: LayoutMode
    channel_order: ChannelOrder
    input_width: int
    input_height: int
    input_channels: int
    disposed: bool = False


class InferenceEngine:
    """
    Loads depth networks and runs their forward pass.

    Guarantees:
    - Execution is synchronous; outputs are ready when execute() returns
    - Layout is fixed per handle at load time
    - dispose() never raises
    """

    def __init__(self, device: Union[str, torch.device] = "auto"):
        """
        Initialize inference engine.

        Args:
            device: "auto" (CUDA > MPS > CPU) or a torch device
        """
        self.device = device if isinstance(device, torch.device) else select_device(device)

    def load(
        self,
        asset: ModelAsset,
        layout: Optional[LayoutMode] = None,
        channel_order: Optional[ChannelOrder] = None,
    ) -> NetworkHandle:
        """
        Load a network onto the engine's device.

        An in-memory `asset.module` is moved to the device in place and
        switched to eval mode; it is not copied.

        Args:
            asset: Model description
            layout: Overrides both the asset's and the auto-detected layout
            channel_order: Overrides the asset's and the inferred channel order

        Returns:
            NetworkHandle ready for execute()

        Raises:
            ModelLoadError: asset cannot be loaded or has an unsupported shape
        """
        resolved = resolve_layout(
            asset.input_shape,
            asset.output_shape,
            layout=layout or asset.layout,
            channel_order=channel_order or asset.channel_order,
        )

        module = self._load_module(asset)

        handle = NetworkHandle(
            module=module,
            device=self.device,
            name=asset.name,
            input_shape=tuple(asset.input_shape),
            output_shape=tuple(asset.output_shape) if asset.output_shape is not None else None,
            layout=resolved.layout,
            channel_order=resolved.channel_order,
            input_width=resolved.width,
            input_height=resolved.height,
            input_channels=resolved.channels,
        )

        logger.info(
            f"Loaded network '{handle.name}' on {self.device}: "
            f"{handle.input_width}x{handle.input_height}x{handle.input_channels}, "
            f"{handle.layout.value}, {handle.channel_order.value}"
        )
        return handle

    def _load_module(self, asset: ModelAsset) -> nn.Module:
        if asset.module is not None:
            if not isinstance(asset.module, nn.Module):
                raise ModelLoadError(
                    f"Model '{asset.name}' is a {type(asset.module).__name__}, not a torch module"
                )
            module = asset.module.to(self.device)

        elif asset.path is not None:
            if not Path(asset.path).is_file():
                raise ModelLoadError(f"Model file not found: {asset.path}")
            try:
                module = torch.jit.load(str(asset.path), map_location=self.device)
            except Exception as e:
                raise ModelLoadError(f"Failed to load TorchScript model {asset.path}: {e}") from e

        else:
            raise ModelLoadError(f"Model '{asset.name}' has neither a module nor a path")

        module.eval()
        return module

    def execute(
        self,
        handle: Optional[NetworkHandle],
        input_tensor: Union[InputTensor, torch.Tensor],
    ) -> OutputTensor:
        """
        Run one forward pass.

        Raises:
            ModelMissing: handle is None or disposed
            InferenceError: the forward pass raised
        """
        if handle is None or handle.disposed or handle.module is None:
            raise ModelMissing("No network loaded")

        data = input_tensor.tensor if isinstance(input_tensor, InputTensor) else input_tensor

        try:
            with torch.inference_mode():
                result = _first_tensor(handle.module(data.to(handle.device)))
            _synchronize(handle.device)
        except Exception as e:
            raise InferenceError(f"Forward pass failed for '{handle.name}': {e}") from e

        return OutputTensor(result)

    def warmup(self, handle: NetworkHandle, iterations: int = 3) -> float:
        """
        Run forward passes on a zero input.

        Returns:
            Average warmup pass time in milliseconds
        """
        if handle.channel_order is ChannelOrder.NCHW:
            shape = (1, handle.input_channels, handle.input_height, handle.input_width)
        else:
            shape = (1, handle.input_height, handle.input_width, handle.input_channels)

        dummy = torch.zeros(shape, dtype=torch.float32, device=handle.device)

        start = time.perf_counter()
        for _ in range(iterations):
            with self.execute(handle, dummy):
                pass
        elapsed_ms = (time.perf_counter() - start) * 1000 / max(iterations, 1)

        logger.info(f"Warmup complete for '{handle.name}': {elapsed_ms:.1f}ms/pass")
        return elapsed_ms

    def dispose(self, handle: Optional[NetworkHandle]) -> None:
        """Release a network. None and already-disposed handles are no-ops."""
        if handle is None or handle.disposed:
            return

        try:
            self._release(handle)
        except ResourceReleaseError as e:
            logger.warning(f"Network '{handle.name}' released with errors: {e}")
        finally:
            handle.module = None
            handle.disposed = True

        logger.info(f"Network '{handle.name}' disposed")

    @staticmethod
    def _release(handle: NetworkHandle) -> None:
        handle.module = None
        if handle.device.type != "cuda":
            return
        try:
            torch.cuda.empty_cache()
        except RuntimeError as e:
            raise ResourceReleaseError(f"Failed to free cached device memory: {e}") from e


def _first_tensor(result: Any) -> torch.Tensor:
    """Models may return a tensor, a sequence or a mapping of tensors."""
    if isinstance(result, torch.Tensor):
        return result
    if isinstance(result, (tuple, list)) and result:
        return _first_tensor(result[0])
    if isinstance(result, dict) and result:
        return _first_tensor(next(iter(result.values())))
    raise TypeError(f"Model returned {type(result).__name__}, expected a tensor")


def _synchronize(device: torch.device) -> None:
    """Block until queued kernels finish so stage timings are real."""
    if device.type == "cuda":
        torch.cuda.synchronize(device)
    elif device.type == "mps":
        torch.mps.synchronize()

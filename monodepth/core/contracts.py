"""
Core data contracts for the depth pipeline.

All components must adhere to these contracts for:
- Explicit buffer and tensor layouts
- Deterministic per-frame behavior
- Observable pipeline state
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, auto
from typing import TYPE_CHECKING, Dict, Optional, Protocol, runtime_checkable

if TYPE_CHECKING:
    from monodepth.gpu.buffers import GpuBuffer


# ============================================================
# ENUMERATIONS
# ============================================================

class BufferFormat(Enum):
    """Pixel formats a device buffer can hold."""
    COLOR_RGBA8 = "color_rgba8"  # H x W x 4 uint8
    DEPTH_F32 = "depth_f32"      # H x W float32

    @property
    def channels(self) -> int:
        return 4 if self is BufferFormat.COLOR_RGBA8 else 1


class LayoutMode(Enum):
    """
    How a model's output tensor encodes rows/cols/channels.

    DIRECT: output is already shaped (batch, rows, cols, channels).
    RESHAPE: output must be reinterpreted as (1, rows, cols, 1) first.
    """
    DIRECT = "direct"
    RESHAPE = "reshape"


class ChannelOrder(Enum):
    """Ordering of a model's 4-D tensors."""
    NHWC = "nhwc"
    NCHW = "nchw"


class PipelinePhase(Enum):
    """Lifecycle phase of the orchestrator."""
    UNINITIALIZED = auto()
    READY = auto()
    RUNNING = auto()
    DISPOSED = auto()


# ============================================================
# COLLABORATORS
# ============================================================

@runtime_checkable
class MeshReceiver(Protocol):
    """Mesh-generation collaborator fed once per successful tick."""

    def on_color_received(self, frame: "GpuBuffer") -> None:
        ...


# ============================================================
# RESULT TYPES
# ============================================================

@dataclass(frozen=True)
class DepthExtents:
    """Minimum and maximum depth observed in one frame's raw output."""
    min: float
    max: float

    @property
    def span(self) -> float:
        return self.max - self.min

    def as_tuple(self) -> tuple:
        return (self.min, self.max)


@dataclass
class FrameResult:
    """
    Output of a single pipeline tick.

    On a skipped tick `success` is False, `skip_reason` says why, and
    only the outputs produced before the skip are populated.

    `aspect_ratio` is height / width of the raw source frame, not of the
    resized color buffer, whose ratio is fixed by the working resolution.
    """
    frame_id: int

    # Outputs
    color: Optional["GpuBuffer"] = None
    depth: Optional["GpuBuffer"] = None
    aspect_ratio: Optional[float] = None
    extents: Optional[DepthExtents] = None

    # Performance
    total_latency_ms: float = 0.0
    stage_latencies_ms: Dict[str, float] = field(default_factory=dict)
    latency_budget_exceeded: bool = False

    # If the tick was skipped
    success: bool = True
    skip_reason: Optional[str] = None


@dataclass
class PipelineState:
    """
    Observable state of the orchestrator.

    Used for:
    - Health checks from the host loop
    - Debugging skipped frames
    """
    phase: PipelinePhase = PipelinePhase.UNINITIALIZED

    # Counters
    frames_processed: int = 0
    frames_skipped: int = 0

    # Performance
    last_tick_latency_ms: float = 0.0

    # Failure tracking
    consecutive_failures: int = 0
    last_failure_reason: Optional[str] = None

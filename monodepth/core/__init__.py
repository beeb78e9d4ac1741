"""
Core contracts for the depth pipeline.

Everything that crosses a component boundary is declared here:
enums for buffer formats and tensor layouts, the per-tick result,
the pipeline state record, and the error taxonomy.
"""

from .contracts import (
    BufferFormat,
    LayoutMode,
    ChannelOrder,
    PipelinePhase,
    DepthExtents,
    FrameResult,
    PipelineState,
    MeshReceiver,
)
from .errors import (
    MonodepthError,
    ModelLoadError,
    FrameUnavailable,
    InvalidFrame,
    ModelMissing,
    TensorLayoutError,
    InferenceError,
    ResourceReleaseError,
    PipelineStateError,
    PipelineStalledError,
    ConfigError,
)

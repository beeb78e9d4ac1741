"""
Error taxonomy for the depth pipeline.

Load-time failures propagate to the caller of initialization.
Per-tick failures (FrameUnavailable, InvalidFrame, ModelMissing,
TensorLayoutError, InferenceError) are contained by the orchestrator:
the tick is skipped, the failure is logged, and the next tick retries.
"""


class MonodepthError(Exception):
    """Base class for all pipeline errors."""


class ModelLoadError(MonodepthError):
    """Model asset is missing, malformed or incompatible."""


class FrameUnavailable(MonodepthError):
    """No source frame this tick."""


class InvalidFrame(MonodepthError):
    """Source frame has an unusable dtype, shape or size."""


class ModelMissing(MonodepthError):
    """No network is loaded; inference is skipped."""


class TensorLayoutError(MonodepthError):
    """A tensor does not have the shape its layout requires."""


class InferenceError(MonodepthError):
    """The forward pass raised."""


class ResourceReleaseError(MonodepthError):
    """A device resource could not be released cleanly."""


class PipelineStateError(MonodepthError):
    """Operation is not valid in the orchestrator's current phase."""


class PipelineStalledError(MonodepthError):
    """Too many consecutive skipped ticks."""

    def __init__(self, consecutive_failures: int, last_reason: str):
        self.consecutive_failures = consecutive_failures
        self.last_reason = last_reason
        super().__init__(
            f"Pipeline stalled after {consecutive_failures} consecutive "
            f"skipped ticks (last: {last_reason})"
        )


class ConfigError(MonodepthError):
    """Invalid configuration value."""

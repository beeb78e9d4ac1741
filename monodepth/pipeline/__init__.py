"""
Pipeline Module.

Responsibilities:
- Per-frame orchestration of resize, inference and notification
- Typed event channels
- Stage timing
"""

from .orchestrator import PipelineOrchestrator, PipelineConfig, RECOVERABLE_ERRORS
from .events import EventChannel, PipelineEvents
from .profiler import TickProfiler

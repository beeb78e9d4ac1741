"""
Depth Estimation Module.

Responsibilities:
- Loading depth networks and resolving their tensor layout
- Synchronous forward passes
- Depth range statistics
"""

from .inference_engine import (
    InferenceEngine,
    ModelAsset,
    NetworkHandle,
    ResolvedLayout,
    resolve_layout,
)
from .depth_stats import DepthStatsExtractor

"""
Device Buffer Module.

Responsibilities:
- Compute device selection
- Fixed-size device buffers with explicit release
- Resampling blits between frames and buffers
"""

from .buffers import GpuBuffer, blit, ensure_buffer, select_device

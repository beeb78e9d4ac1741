"""
Typed notification channels.

One channel per notification kind, so a listener registered for depth
buffers can never receive an aspect ratio.
"""

from __future__ import annotations

from typing import Callable, Generic, List, TypeVar

from loguru import logger

from monodepth.core.contracts import DepthExtents
from monodepth.gpu.buffers import GpuBuffer


T = TypeVar("T")

Listener = Callable[[T], None]


class EventChannel(Generic[T]):
    """
    Ordered list of listeners for one event kind.

    A listener that raises is logged and skipped; the remaining listeners
    still run and the pipeline never sees the exception.
    """

    def __init__(self, name: str):
        self.name = name
        self._listeners: List[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """
        Register a listener.

        Returns:
            Callable that unsubscribes the listener
        """
        self._listeners.append(listener)
        return lambda: self.unsubscribe(listener)

    def unsubscribe(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def emit(self, payload: T) -> None:
        for listener in list(self._listeners):
            try:
                listener(payload)
            except Exception as e:
                logger.opt(exception=e).error(f"Listener on '{self.name}' raised: {e}")

    def clear(self) -> None:
        self._listeners.clear()

    def __len__(self) -> int:
        return len(self._listeners)


class PipelineEvents:
    """The orchestrator's outgoing notifications."""

    def __init__(self):
        self.color_ready: EventChannel[GpuBuffer] = EventChannel("color_ready")
        self.depth_solved: EventChannel[GpuBuffer] = EventChannel("depth_solved")
        self.image_resized: EventChannel[float] = EventChannel("image_resized")
        self.depth_extents: EventChannel[DepthExtents] = EventChannel("depth_extents")

    def clear(self) -> None:
        for channel in (self.color_ready, self.depth_solved, self.image_resized, self.depth_extents):
            channel.clear()

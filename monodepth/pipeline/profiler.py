"""
Per-stage tick timing.
"""

from __future__ import annotations

import time
from collections import deque
from typing import Deque, Dict, Iterable, Optional

from loguru import logger


STAGES = ("resize", "convert", "infer", "convert_back", "stats", "total")


class TickProfiler:
    """Rolling per-stage latency averages, logged at a fixed interval."""

    def __init__(self, window_size: int = 60, stages: Iterable[str] = STAGES):
        self.window_size = window_size
        self.timings: Dict[str, Deque[float]] = {
            stage: deque(maxlen=window_size) for stage in stages
        }
        self.last_log = time.time()
        self.tick_count = 0

    def record(self, stage: str, duration_ms: float) -> None:
        if stage not in self.timings:
            self.timings[stage] = deque(maxlen=self.window_size)
        self.timings[stage].append(duration_ms)

    def averages(self) -> Dict[str, float]:
        return {
            stage: (sum(times) / len(times) if times else 0.0)
            for stage, times in self.timings.items()
        }

    def log_if_ready(self, interval: float = 2.0, now: Optional[float] = None) -> bool:
        """
        Count a tick and log averages once `interval` seconds have passed.

        Returns:
            True if a line was logged
        """
        self.tick_count += 1
        now = time.time() if now is None else now
        elapsed = now - self.last_log
        if elapsed < interval:
            return False

        avgs = self.averages()
        fps = self.tick_count / elapsed if elapsed > 0 else 0.0
        summary = " | ".join(f"{stage}:{ms:.1f}ms" for stage, ms in avgs.items())
        logger.info(f"[PIPELINE] {summary} | {fps:.1f}fps")

        stage_avgs = {k: v for k, v in avgs.items() if k != "total"}
        if stage_avgs:
            bottleneck, ms = max(stage_avgs.items(), key=lambda x: x[1])
            if ms > 5:
                logger.debug(f"[BOTTLENECK] {bottleneck}: {ms:.1f}ms")

        self.last_log = now
        self.tick_count = 0
        return True

    def reset(self) -> None:
        for times in self.timings.values():
            times.clear()
        self.tick_count = 0
        self.last_log = time.time()

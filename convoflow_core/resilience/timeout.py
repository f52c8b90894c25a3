"""Bounded-time execution for enhanced module calls."""

import asyncio
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Deque, Dict, Optional, TypeVar

import structlog

from ..core.errors import EnhancedModuleTimeout


logger = structlog.get_logger()

T = TypeVar("T")


@dataclass
class TimeoutStats:
    """Statistics for one timed operation."""
    total_operations: int = 0
    timed_out_operations: int = 0
    avg_elapsed_time: float = 0.0
    p95_elapsed_time: float = 0.0


class TimeoutManager:
    """
    Runs awaitables under a deadline and keeps per-operation timings.

    Usage:
        manager = TimeoutManager(default_timeout=2.0)
        result = await manager.execute(module.before_step(...), "enhanced_capture")
    """

    def __init__(self, default_timeout: float = 5.0, window_size: int = 100):
        self.default_timeout = default_timeout
        self.window_size = window_size
        self._elapsed: Dict[str, Deque[float]] = {}
        self._stats: Dict[str, TimeoutStats] = {}

    async def execute(
        self,
        awaitable: Awaitable[T],
        operation: str,
        timeout: Optional[float] = None,
    ) -> T:
        """
        Await with a timeout.

        Raises:
            EnhancedModuleTimeout: If the deadline passes
        """
        timeout = self.default_timeout if timeout is None else timeout
        start = time.monotonic()

        try:
            result = await asyncio.wait_for(awaitable, timeout=timeout)
        except asyncio.TimeoutError:
            elapsed = time.monotonic() - start
            self._record(operation, elapsed, timed_out=True)
            logger.warning(
                "operation_timed_out",
                operation=operation,
                timeout=timeout,
                elapsed=round(elapsed, 3),
            )
            raise EnhancedModuleTimeout(operation, timeout, elapsed)

        self._record(operation, time.monotonic() - start, timed_out=False)
        return result

    def _record(self, operation: str, elapsed: float, timed_out: bool) -> None:
        if operation not in self._elapsed:
            self._elapsed[operation] = deque(maxlen=self.window_size)
            self._stats[operation] = TimeoutStats()

        samples = self._elapsed[operation]
        samples.append(elapsed)

        stats = self._stats[operation]
        stats.total_operations += 1
        if timed_out:
            stats.timed_out_operations += 1
        ordered = sorted(samples)
        stats.avg_elapsed_time = sum(ordered) / len(ordered)
        stats.p95_elapsed_time = ordered[min(len(ordered) - 1, int(len(ordered) * 0.95))]

    def get_stats(self, operation: Optional[str] = None) -> Dict[str, Any]:
        if operation:
            stats = self._stats.get(operation)
            return stats.__dict__.copy() if stats else {}
        return {name: stats.__dict__.copy() for name, stats in self._stats.items()}

"""
Timing statistics for store operations.

One monitor is created by the runtime and handed to the store adapter, which
records every operation under a ``<collection>.<operation>`` name. Operations
slower than the threshold are logged as warnings.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict

from rolekeeper.util.logger import get_logger

logger = get_logger("database_perf_mon")


@dataclass(slots=True)
class OperationStats:
    count: int = 0
    failures: int = 0
    total_time: float = 0.0
    min_time: float = float("inf")
    max_time: float = 0.0

    @property
    def avg_time(self) -> float:
        return self.total_time / self.count if self.count else 0.0


class DatabasePerformanceMonitor:
    """Per-operation count, failure count and min/avg/max duration."""

    def __init__(self, slow_query_threshold_ms: float = 100.0):
        self._stats: Dict[str, OperationStats] = {}
        self._slow_query_threshold = slow_query_threshold_ms / 1000.0

    def track(self, operation: str, duration: float, *, ok: bool = True) -> None:
        """
        Record one execution.

        Args:
            operation: Name of the operation, e.g. ``scheduled_roles.find``
            duration: Execution time in seconds
            ok: False when the operation raised
        """
        stats = self._stats.setdefault(operation, OperationStats())
        stats.count += 1
        stats.total_time += duration
        stats.min_time = min(stats.min_time, duration)
        stats.max_time = max(stats.max_time, duration)
        if not ok:
            stats.failures += 1

        if duration > self._slow_query_threshold:
            logger.warning("[PERFORMANCE] Slow operation: %s took %.2fms", operation, duration * 1000)

    def get_statistics(self) -> Dict[str, Dict[str, float]]:
        return {
            name: {
                "count": stats.count,
                "failures": stats.failures,
                "total_time": stats.total_time,
                "avg_time": stats.avg_time,
                "min_time": stats.min_time if stats.count else 0.0,
                "max_time": stats.max_time,
            }
            for name, stats in self._stats.items()
        }

    def reset(self) -> None:
        self._stats.clear()
        logger.info("[PERFORMANCE] Statistics reset")

    def get_summary(self) -> str:
        """Human-readable multi-line summary, sorted by operation name."""
        if not self._stats:
            return "No operations tracked yet"

        lines = ["Store Performance Summary:", "=" * 50]
        for name, stats in sorted(self._stats.items()):
            lines.append(
                f"{name}:\n"
                f"  Count: {stats.count} (failed: {stats.failures})\n"
                f"  Avg: {stats.avg_time * 1000:.2f}ms\n"
                f"  Max: {stats.max_time * 1000:.2f}ms"
            )
        return "\n".join(lines)

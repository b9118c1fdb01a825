"""Lightweight in-process metrics for studylib.

Two kinds of series, both keyed by a name:
- timings: store operations and API requests (count, average, worst case)
- outcome counters: cache lookups (hits / misses) and real-time deliveries
  (delivered / dropped because the user was offline or the socket failed)

Exposed to admins at ``GET /metrics``.
"""

from __future__ import annotations

import logging
import time
from collections import Counter, defaultdict
from contextlib import contextmanager
from dataclasses import dataclass
from functools import wraps
from threading import Lock
from typing import Any, Callable, TypeVar

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])

SLOW_OPERATION_MS = 100

# Outcome names per counter group, in the order they are reported.
OUTCOMES = {
    "cache": ("hits", "misses"),
    "deliveries": ("delivered", "dropped"),
}


@dataclass
class TimingStats:
    count: int = 0
    total_ms: float = 0.0
    max_ms: float = 0.0

    def record(self, duration_ms: float) -> None:
        self.count += 1
        self.total_ms += duration_ms
        self.max_ms = max(self.max_ms, duration_ms)

    def to_dict(self) -> dict:
        avg = self.total_ms / self.count if self.count else 0.0
        return {"count": self.count, "avg_ms": round(avg, 2), "max_ms": round(self.max_ms, 2)}


class Metrics:
    """Process-wide metrics collector. Safe to call from worker threads."""

    def __init__(self) -> None:
        self._lock = Lock()
        self.reset()

    def reset(self) -> None:
        with self._lock:
            self._timings: dict[str, dict[str, TimingStats]] = {
                "db_operations": defaultdict(TimingStats),
                "requests": defaultdict(TimingStats),
            }
            self._counters: dict[str, dict[str, Counter]] = {
                group: defaultdict(Counter) for group in OUTCOMES
            }
            self._start_time = time.time()

    def _time(self, series: str, name: str, duration_ms: float) -> None:
        with self._lock:
            self._timings[series][name].record(duration_ms)

    def _count(self, group: str, name: str, outcome: str) -> None:
        with self._lock:
            self._counters[group][name][outcome] += 1

    def record_db_operation(self, operation: str, duration_ms: float) -> None:
        self._time("db_operations", operation, duration_ms)

    def record_request(self, endpoint: str, duration_ms: float) -> None:
        self._time("requests", endpoint, duration_ms)

    def record_cache_hit(self, cache_name: str) -> None:
        self._count("cache", cache_name, "hits")

    def record_cache_miss(self, cache_name: str) -> None:
        self._count("cache", cache_name, "misses")

    def record_delivery(self, event: str, delivered: bool) -> None:
        self._count("deliveries", event, "delivered" if delivered else "dropped")

    def to_dict(self) -> dict:
        with self._lock:
            data: dict[str, Any] = {"uptime_seconds": round(time.time() - self._start_time, 1)}
            for series, stats in self._timings.items():
                data[series] = {name: s.to_dict() for name, s in stats.items()}
            for group, counters in self._counters.items():
                data[group] = {
                    name: {outcome: counts[outcome] for outcome in OUTCOMES[group]}
                    for name, counts in counters.items()
                }
            return data


metrics = Metrics()


def _finish(operation: str, start: float) -> None:
    duration_ms = (time.perf_counter() - start) * 1000
    metrics.record_db_operation(operation, duration_ms)
    if duration_ms > SLOW_OPERATION_MS:
        logger.warning(f"Slow DB operation: {operation} took {duration_ms:.1f}ms")


@contextmanager
def timed_db_operation(operation: str):
    """Time the enclosed store call.

    Usage:
        with timed_db_operation("mark_read"):
            cursor = conn.execute(...)
    """
    start = time.perf_counter()
    try:
        yield
    finally:
        _finish(operation, start)


def timed_operation(operation_name: str) -> Callable[[F], F]:
    """Decorator form of ``timed_db_operation``."""

    def decorator(func: F) -> F:
        @wraps(func)
        def wrapper(*args, **kwargs):
            start = time.perf_counter()
            try:
                return func(*args, **kwargs)
            finally:
                _finish(operation_name, start)

        return wrapper  # type: ignore

    return decorator

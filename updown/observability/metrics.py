"""In-process counters, gauges and cycle timings for the trading engine.

Exposed through the engine status and the dashboard ``/api/metrics`` route.
"""

from __future__ import annotations

import time
from collections import defaultdict, deque
from contextlib import contextmanager
from threading import Lock
from typing import Any, Iterator

_TIMING_WINDOW = 500


def _timing_stats(values: deque[float]) -> dict[str, float]:
    if not values:
        return {"count": 0, "avg": 0.0, "max": 0.0, "last": 0.0}
    return {
        "count": len(values),
        "avg": round(sum(values) / len(values), 4),
        "max": round(max(values), 4),
        "last": round(values[-1], 4),
    }


class MetricsCollector:
    """Thread-safe; the dashboard reads while the engine thread writes."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._counters: dict[str, float] = defaultdict(float)
        self._gauges: dict[str, float] = {}
        self._timings: dict[str, deque[float]] = defaultdict(
            lambda: deque(maxlen=_TIMING_WINDOW)
        )

    def incr(self, name: str, value: float = 1.0) -> None:
        with self._lock:
            self._counters[name] += value

    def gauge(self, name: str, value: float) -> None:
        with self._lock:
            self._gauges[name] = value

    def timing(self, name: str, seconds: float) -> None:
        with self._lock:
            self._timings[name].append(seconds)

    @contextmanager
    def timed(self, name: str) -> Iterator[None]:
        start = time.monotonic()
        try:
            yield
        finally:
            self.timing(name, time.monotonic() - start)

    def counter(self, name: str) -> float:
        with self._lock:
            return self._counters.get(name, 0.0)

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "counters": dict(self._counters),
                "gauges": dict(self._gauges),
                "timings": {k: _timing_stats(v) for k, v in self._timings.items()},
            }

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._timings.clear()


# Global singleton
metrics = MetricsCollector()

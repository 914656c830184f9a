"""Thread-safe counters and timers for render observability.

One instance is created per application and injected into the components
that report to it, so tests can assert on isolated instances.
"""

import threading
import time
from collections import defaultdict
from contextlib import contextmanager
from typing import Iterator


class RenderMetrics:
    """Counters (cache hits/writes, renders per engine, clip outcomes) and timers."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: dict[str, int] = defaultdict(int)
        self._timers: dict[str, list[float]] = defaultdict(list)

    def incr(self, name: str, amount: int = 1) -> None:
        with self._lock:
            self._counters[name] += amount

    def get(self, name: str) -> int:
        with self._lock:
            return self._counters.get(name, 0)

    def record_duration(self, name: str, seconds: float) -> None:
        with self._lock:
            self._timers[name].append(seconds)

    @contextmanager
    def timer(self, name: str) -> Iterator[None]:
        start = time.perf_counter()
        try:
            yield
        finally:
            self.record_duration(name, time.perf_counter() - start)

    def snapshot(self) -> dict:
        """Copy of all counters plus count/total/max for each timer."""
        with self._lock:
            timers = {
                name: {
                    "count": len(values),
                    "total_s": round(sum(values), 3),
                    "max_s": round(max(values), 3) if values else 0.0,
                }
                for name, values in self._timers.items()
            }
            return {"counters": dict(self._counters), "timers": timers}

    # Named shortcuts used across the engine
    def cache_hit(self) -> None:
        self.incr("cache_hits")

    def cache_miss(self) -> None:
        self.incr("cache_misses")

    def cache_write(self) -> None:
        self.incr("cache_writes")

    def cache_write_failure(self) -> None:
        self.incr("cache_write_failures")

    @property
    def cache_counts(self) -> dict[str, int]:
        with self._lock:
            return {
                "hits": self._counters.get("cache_hits", 0),
                "misses": self._counters.get("cache_misses", 0),
                "writes": self._counters.get("cache_writes", 0),
                "write_failures": self._counters.get("cache_write_failures", 0),
            }

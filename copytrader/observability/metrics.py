"""In-process metrics for the copy-trader.

Counters, gauges and bounded histograms live in memory and are dumped as
a JSON-serialisable snapshot (included in the engine status).

Counters carry optional tags; each tag combination is kept as its own
series (``orders.failed{error_kind=timeout,venue=clob}``) and
``counter(name)`` sums every series of a name.

Counters in use:
  - cycles.completed
  - trades.detected (side) / trades.skipped
  - orders.paper / orders.submitted (kind) / orders.failed (venue, error_kind)
  - stop_loss.triggered (path) / positions.settled
"""

from __future__ import annotations

import math
from collections import defaultdict, deque
from threading import Lock
from typing import Any

# Most recent samples kept per histogram
_HISTOGRAM_WINDOW = 1_000


def _percentile(sorted_data: list[float], pct: float) -> float:
    if not sorted_data:
        return 0.0
    k = (len(sorted_data) - 1) * (pct / 100.0)
    lo = math.floor(k)
    hi = math.ceil(k)
    if lo == hi:
        return sorted_data[int(k)]
    return sorted_data[lo] * (hi - k) + sorted_data[hi] * (k - lo)


def series_key(name: str, tags: dict[str, Any]) -> str:
    if not tags:
        return name
    labels = ",".join(f"{k}={tags[k]}" for k in sorted(tags))
    return f"{name}{{{labels}}}"


class MetricsCollector:
    """Thread-safe in-process metrics collector."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._counters: dict[str, float] = defaultdict(float)
        self._gauges: dict[str, float] = {}
        self._histograms: dict[str, deque[float]] = defaultdict(
            lambda: deque(maxlen=_HISTOGRAM_WINDOW)
        )

    def incr(self, name: str, value: float = 1.0, **tags: Any) -> None:
        with self._lock:
            self._counters[series_key(name, tags)] += value

    def gauge(self, name: str, value: float, **tags: Any) -> None:
        with self._lock:
            self._gauges[series_key(name, tags)] = value

    def histogram(self, name: str, value: float) -> None:
        with self._lock:
            self._histograms[name].append(value)

    def counter(self, name: str, **tags: Any) -> float:
        """One series when tags are given, else the sum over all series."""
        with self._lock:
            if tags:
                return self._counters.get(series_key(name, tags), 0.0)
            prefix = name + "{"
            return sum(
                v for k, v in self._counters.items() if k == name or k.startswith(prefix)
            )

    def snapshot(self) -> dict[str, Any]:
        """Counters, gauges and p50/p95/max histogram summaries."""
        with self._lock:
            hist: dict[str, dict[str, float]] = {}
            for name, values in self._histograms.items():
                s = sorted(values)
                hist[name] = {
                    "count": len(s),
                    "avg": sum(s) / len(s) if s else 0.0,
                    "p50": _percentile(s, 50),
                    "p95": _percentile(s, 95),
                    "max": s[-1] if s else 0.0,
                }
            return {
                "counters": dict(self._counters),
                "gauges": dict(self._gauges),
                "histograms": hist,
            }

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._histograms.clear()


# Global singleton
metrics = MetricsCollector()

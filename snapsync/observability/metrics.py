"""
Metrics: Engine Counters, Gauges and Flush Latency

Components record what they do (cache hits, dispatched changes, isolated
callback failures, flush batches, poll ticks) into one process-wide
collector. Nothing is exported from here; a host application reads
``snapshot()`` and ships the numbers wherever it likes.

The cache janitor runs on a worker thread, so every series guards its
values with a lock.
"""

from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from typing import Any, Iterator, Optional, Sequence

LabelKey = tuple[tuple[str, str], ...]


def _label_dict(key: LabelKey) -> dict[str, str]:
    return dict(key)


# =============================================================================
# SERIES
# =============================================================================
class _Series:
    """A named metric holding one value per label combination."""

    __slots__ = ("name", "label_names", "_values", "_lock")

    def __init__(self, name: str, label_names: Sequence[str] = ()) -> None:
        self.name = name
        self.label_names = tuple(label_names)
        self._values: dict[LabelKey, Any] = {}
        self._lock = threading.Lock()

    def _key(self, labels: dict[str, Any]) -> LabelKey:
        return tuple((n, str(labels.get(n, ""))) for n in sorted(self.label_names))

    def get(self, **labels: str) -> float:
        with self._lock:
            return self._values.get(self._key(labels), 0.0)

    def collect(self) -> Iterator[tuple[dict[str, str], Any]]:
        with self._lock:
            items = list(self._values.items())
        return iter([(_label_dict(k), v) for k, v in items])

    def reset(self) -> None:
        with self._lock:
            self._values.clear()


class Counter(_Series):
    """
    Monotonic count, e.g.

        dispatched = Counter("realtime_changes_dispatched_total", ["table"])
        dispatched.inc(table="stories")
    """

    __slots__ = ()

    def inc(self, value: float = 1.0, **labels: str) -> None:
        if value < 0:
            raise ValueError(f"{self.name}: counters cannot decrease")
        key = self._key(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + value

    def total(self) -> float:
        with self._lock:
            return sum(self._values.values())


class Gauge(_Series):
    __slots__ = ()

    def set(self, value: float, **labels: str) -> None:
        key = self._key(labels)
        with self._lock:
            self._values[key] = value

    def inc(self, value: float = 1.0, **labels: str) -> None:
        key = self._key(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + value

    def dec(self, value: float = 1.0, **labels: str) -> None:
        self.inc(-value, **labels)


class _Distribution:
    __slots__ = ("bucket_counts", "total", "count")

    def __init__(self, size: int) -> None:
        self.bucket_counts = [0] * size
        self.total = 0.0
        self.count = 0


class Histogram(_Series):
    """
    Cumulative-bucket distribution, mostly of flush latency:

        with flush_seconds.time(throttler="stories"):
            await fetch_batch()
    """

    __slots__ = ("bounds",)

    DEFAULT_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0)

    def __init__(
        self,
        name: str,
        label_names: Sequence[str] = (),
        buckets: Optional[Sequence[float]] = None,
    ) -> None:
        super().__init__(name, label_names)
        bounds = sorted(set(buckets or self.DEFAULT_BUCKETS) | {float("inf")})
        self.bounds = tuple(bounds)

    def observe(self, value: float, **labels: str) -> None:
        key = self._key(labels)
        with self._lock:
            dist = self._values.get(key)
            if dist is None:
                dist = self._values[key] = _Distribution(len(self.bounds))
            for i, bound in enumerate(self.bounds):
                if value <= bound:
                    dist.bucket_counts[i] += 1
            dist.total += value
            dist.count += 1

    @contextmanager
    def time(self, **labels: str) -> Iterator[None]:
        started = time.perf_counter()
        try:
            yield
        finally:
            self.observe(time.perf_counter() - started, **labels)

    def count(self, **labels: str) -> int:
        with self._lock:
            dist = self._values.get(self._key(labels))
            return dist.count if dist is not None else 0

    def collect(self) -> Iterator[dict[str, Any]]:  # type: ignore[override]
        with self._lock:
            rows = [
                {
                    "labels": _label_dict(key),
                    "buckets": list(zip(self.bounds, dist.bucket_counts)),
                    "sum": dist.total,
                    "count": dist.count,
                }
                for key, dist in self._values.items()
            ]
        return iter(rows)


# =============================================================================
# COLLECTOR
# =============================================================================
class MetricsCollector:
    """
    Get-or-create registry of series, keyed by name.

    ``inc`` is the shorthand components use; it is a no-op while the
    collector is disabled. Series fetched directly are always live.
    """

    __slots__ = ("_series", "_lock", "_enabled")

    _instance: Optional[MetricsCollector] = None

    def __init__(self, enabled: bool = True) -> None:
        self._series: dict[tuple[type, str], _Series] = {}
        self._lock = threading.Lock()
        self._enabled = enabled

    @classmethod
    def get_instance(cls) -> MetricsCollector:
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @property
    def enabled(self) -> bool:
        return self._enabled

    def set_enabled(self, enabled: bool) -> None:
        self._enabled = enabled

    def _get(self, kind: type, name: str, *args: Any) -> Any:
        with self._lock:
            series = self._series.get((kind, name))
            if series is None:
                series = self._series[(kind, name)] = kind(name, *args)
            return series

    def counter(self, name: str, label_names: Sequence[str] = ()) -> Counter:
        return self._get(Counter, name, label_names)

    def gauge(self, name: str, label_names: Sequence[str] = ()) -> Gauge:
        return self._get(Gauge, name, label_names)

    def histogram(
        self,
        name: str,
        label_names: Sequence[str] = (),
        buckets: Optional[Sequence[float]] = None,
    ) -> Histogram:
        return self._get(Histogram, name, label_names, buckets)

    def inc(self, name: str, value: float = 1.0, **labels: str) -> None:
        if self._enabled:
            self.counter(name, tuple(labels)).inc(value, **labels)

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            series = list(self._series.values())
        out: dict[str, dict[str, list[Any]]] = {"counters": {}, "gauges": {}, "histograms": {}}
        for s in series:
            section = (
                "histograms" if isinstance(s, Histogram)
                else "gauges" if isinstance(s, Gauge)
                else "counters"
            )
            out[section][s.name] = list(s.collect())
        return out

    def reset(self) -> None:
        """Zero every series; tests call this between cases."""
        with self._lock:
            series = list(self._series.values())
        for s in series:
            s.reset()


class SyncMetrics:
    """Series names shared by the engine's components."""

    CACHE_HITS = "cache_hits_total"
    CACHE_MISSES = "cache_misses_total"
    CACHE_EXPIRATIONS = "cache_expirations_total"
    CACHE_SWEEPS = "cache_sweeps_total"

    REALTIME_CHANGES = "realtime_changes_dispatched_total"
    REALTIME_CALLBACK_ERRORS = "realtime_callback_errors_total"
    REALTIME_SUBSCRIPTIONS = "realtime_subscriptions"
    REALTIME_DISCONNECTS = "realtime_disconnects_total"

    RECONCILE_FLUSHES = "reconcile_flushes_total"
    RECONCILE_FLUSH_ERRORS = "reconcile_flush_errors_total"
    RECONCILE_FLUSH_SECONDS = "reconcile_flush_seconds"

    MUTATIONS_STARTED = "optimistic_mutations_started_total"
    MUTATIONS_CONFIRMED = "optimistic_mutations_confirmed_total"
    MUTATIONS_FAILED = "optimistic_mutations_failed_total"

    POLL_TICKS = "poll_ticks_total"
    POLL_ERRORS = "poll_errors_total"

    REGISTRY_FETCHES = "registry_fetches_total"
    LISTENER_ERRORS = "listener_errors_total"


def get_metrics() -> MetricsCollector:
    return MetricsCollector.get_instance()

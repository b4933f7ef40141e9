"""
Metrics Collector: Prometheus-Compatible Counters and Histograms

Records per-operation latency and outcome for the storage facade, plus the
lock-cache hit/miss signal. Exported in Prometheus text format.

All metric types are thread-safe; the storage facade may be shared by
several event loops in one process.
"""

from __future__ import annotations

import asyncio
import threading
import time
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Iterator, Optional, Sequence


@dataclass(frozen=True)
class MetricLabels:
    """Immutable label set for metric dimensions."""
    labels: tuple[tuple[str, str], ...]

    @classmethod
    def from_dict(cls, d: dict[str, str]) -> MetricLabels:
        return cls(labels=tuple(sorted(d.items())))

    def to_dict(self) -> dict[str, str]:
        return dict(self.labels)


class Counter:
    """
    Monotonically increasing counter metric.

    Usage:
        hits = Counter("certstorage_lockcache_total", ["hit"])
        hits.inc(hit="true")
    """

    __slots__ = ("_name", "_help", "_label_names", "_values", "_lock")

    def __init__(
        self,
        name: str,
        label_names: Sequence[str] = (),
        help_text: str = "",
    ) -> None:
        self._name = name
        self._help = help_text
        self._label_names = tuple(label_names)
        self._values: dict[MetricLabels, float] = defaultdict(float)
        self._lock = threading.Lock()

    def inc(self, value: float = 1.0, **labels: str) -> None:
        """Increment counter."""
        if value < 0:
            raise ValueError("counter can only increase")
        key = self._make_key(labels)
        with self._lock:
            self._values[key] += value

    def get(self, **labels: str) -> float:
        """Get current value."""
        key = self._make_key(labels)
        with self._lock:
            return self._values.get(key, 0.0)

    def _make_key(self, labels: dict[str, str]) -> MetricLabels:
        filtered = {k: labels.get(k, "") for k in self._label_names}
        return MetricLabels.from_dict(filtered)

    def collect(self) -> Iterator[tuple[dict[str, str], float]]:
        """Iterate all label combinations."""
        with self._lock:
            items = list(self._values.items())
        for key, value in items:
            yield (key.to_dict(), value)

    @property
    def name(self) -> str:
        return self._name

    @property
    def help_text(self) -> str:
        return self._help


class Histogram:
    """
    Histogram with configurable buckets.

    Usage:
        latency = Histogram("certstorage_operation_seconds", ["operation", "outcome"])
        latency.observe(0.012, operation="load", outcome="ok")
    """

    __slots__ = (
        "_name", "_help", "_label_names", "_buckets",
        "_bucket_counts", "_sums", "_counts", "_lock",
    )

    DEFAULT_BUCKETS = (
        0.001, 0.005, 0.01, 0.025, 0.05, 0.1,
        0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, float("inf"),
    )

    def __init__(
        self,
        name: str,
        label_names: Sequence[str] = (),
        help_text: str = "",
        buckets: Optional[Sequence[float]] = None,
    ) -> None:
        self._name = name
        self._help = help_text
        self._label_names = tuple(label_names)
        self._buckets = tuple(sorted(buckets or self.DEFAULT_BUCKETS))

        # Ensure +Inf bucket
        if self._buckets[-1] != float("inf"):
            self._buckets = self._buckets + (float("inf"),)

        self._bucket_counts: dict[MetricLabels, list[int]] = {}
        self._sums: dict[MetricLabels, float] = defaultdict(float)
        self._counts: dict[MetricLabels, int] = defaultdict(int)
        self._lock = threading.Lock()

    def observe(self, value: float, **labels: str) -> None:
        """Record observation."""
        key = self._make_key(labels)

        with self._lock:
            if key not in self._bucket_counts:
                self._bucket_counts[key] = [0] * len(self._buckets)

            # Cumulative buckets
            for i, bound in enumerate(self._buckets):
                if value <= bound:
                    self._bucket_counts[key][i] += 1

            self._sums[key] += value
            self._counts[key] += 1

    def time(self, **labels: str) -> HistogramTimer:
        """Context manager for timing a block."""
        return HistogramTimer(self, labels)

    def count(self, **labels: str) -> int:
        key = self._make_key(labels)
        with self._lock:
            return self._counts.get(key, 0)

    def _make_key(self, labels: dict[str, str]) -> MetricLabels:
        filtered = {k: labels.get(k, "") for k in self._label_names}
        return MetricLabels.from_dict(filtered)

    def collect(self) -> Iterator[dict[str, Any]]:
        """Collect all histogram data."""
        with self._lock:
            snapshot = [
                {
                    "labels": key.to_dict(),
                    "buckets": list(zip(self._buckets, counts)),
                    "sum": self._sums.get(key, 0.0),
                    "count": self._counts.get(key, 0),
                }
                for key, counts in self._bucket_counts.items()
            ]
        yield from snapshot

    @property
    def name(self) -> str:
        return self._name

    @property
    def help_text(self) -> str:
        return self._help


class HistogramTimer:
    """
    Times a block and records it with labels that may be completed inside
    the block (for example the outcome of the operation).
    """

    __slots__ = ("_histogram", "_labels", "_start")

    def __init__(self, histogram: Histogram, labels: dict[str, str]) -> None:
        self._histogram = histogram
        self._labels = dict(labels)
        self._start = 0.0

    def label(self, **labels: str) -> None:
        self._labels.update(labels)

    def __enter__(self) -> HistogramTimer:
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type: Any, *args: Any) -> None:
        if exc_type is not None:
            self._labels.setdefault("outcome", "cancelled" if _is_cancel(exc_type) else "exception")
        elapsed = time.perf_counter() - self._start
        self._histogram.observe(elapsed, **self._labels)


def _is_cancel(exc_type: Any) -> bool:
    return isinstance(exc_type, type) and issubclass(exc_type, asyncio.CancelledError)


class MetricsCollector:
    """
    Registry for all metrics.

    Usage:
        collector = MetricsCollector()
        hits = collector.counter("certstorage_lockcache_total", ["hit"])
        output = collector.export_prometheus()
    """

    __slots__ = ("_counters", "_histograms", "_lock")

    _instance: Optional[MetricsCollector] = None
    _instance_lock = threading.Lock()

    def __init__(self) -> None:
        self._counters: dict[str, Counter] = {}
        self._histograms: dict[str, Histogram] = {}
        self._lock = threading.Lock()

    @classmethod
    def get_instance(cls) -> MetricsCollector:
        """Process-wide collector used when none is injected."""
        with cls._instance_lock:
            if cls._instance is None:
                cls._instance = cls()
            return cls._instance

    def counter(
        self,
        name: str,
        label_names: Sequence[str] = (),
        help_text: str = "",
    ) -> Counter:
        """Get or create counter."""
        with self._lock:
            if name not in self._counters:
                self._counters[name] = Counter(name, label_names, help_text)
            return self._counters[name]

    def histogram(
        self,
        name: str,
        label_names: Sequence[str] = (),
        help_text: str = "",
        buckets: Optional[Sequence[float]] = None,
    ) -> Histogram:
        """Get or create histogram."""
        with self._lock:
            if name not in self._histograms:
                self._histograms[name] = Histogram(name, label_names, help_text, buckets)
            return self._histograms[name]

    def export_prometheus(self) -> str:
        """Export all metrics in Prometheus text format."""
        lines: list[str] = []

        with self._lock:
            counters = list(self._counters.items())
            histograms = list(self._histograms.items())

        for name, counter in counters:
            if counter.help_text:
                lines.append(f"# HELP {name} {counter.help_text}")
            lines.append(f"# TYPE {name} counter")
            for labels, value in counter.collect():
                lines.append(f"{name}{self._format_labels(labels)} {value}")

        for name, histogram in histograms:
            if histogram.help_text:
                lines.append(f"# HELP {name} {histogram.help_text}")
            lines.append(f"# TYPE {name} histogram")
            for data in histogram.collect():
                labels = data["labels"]
                for bound, count in data["buckets"]:
                    bound_str = "+Inf" if bound == float("inf") else str(bound)
                    bucket_labels = {**labels, "le": bound_str}
                    lines.append(f"{name}_bucket{self._format_labels(bucket_labels)} {count}")
                label_str = self._format_labels(labels)
                lines.append(f'{name}_sum{label_str} {data["sum"]}')
                lines.append(f'{name}_count{label_str} {data["count"]}')

        return "\n".join(lines)

    def _format_labels(self, labels: dict[str, str]) -> str:
        """Format labels as Prometheus label string."""
        if not labels:
            return ""
        pairs = [f'{k}="{v}"' for k, v in sorted(labels.items())]
        return "{" + ",".join(pairs) + "}"

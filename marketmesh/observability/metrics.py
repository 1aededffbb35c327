"""
Mesh Metrics: Labelled Counters and Latency Histograms

Tracks the signals that matter for a partitioned store:
- partition connect attempts and their outcome
- identity probe outcomes per partition (hit / miss / error / timeout)
- relationship operation latency
- migrations reaching DONE or FAILED

Exported in the Prometheus text format.
"""

from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from typing import Iterator, Optional, Sequence

LabelKey = tuple[str, ...]

# Partition calls are bounded by timeouts of a few seconds at most
LATENCY_BUCKETS = (0.0005, 0.001, 0.0025, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5)


class _Metric:
    __slots__ = ("name", "help_text", "label_names", "_lock")

    kind = "untyped"

    def __init__(self, name: str, label_names: Sequence[str], help_text: str) -> None:
        self.name = name
        self.help_text = help_text
        self.label_names = tuple(label_names)
        self._lock = threading.Lock()

    def _key(self, labels: dict[str, str]) -> LabelKey:
        unknown = set(labels) - set(self.label_names)
        if unknown:
            raise ValueError(f"{self.name}: unknown labels {sorted(unknown)}")
        return tuple(str(labels.get(name, "")) for name in self.label_names)

    def _render_labels(self, key: LabelKey, *extra: tuple[str, str]) -> str:
        pairs = [*extra, *zip(self.label_names, key)]
        if not pairs:
            return ""
        return "{" + ",".join(f'{k}="{v}"' for k, v in pairs) + "}"

    def header(self) -> list[str]:
        lines = [f"# HELP {self.name} {self.help_text}"] if self.help_text else []
        lines.append(f"# TYPE {self.name} {self.kind}")
        return lines


class Counter(_Metric):
    """
    Monotonically increasing counter.

    Usage:
        probes = Counter("identity_probes_total", ["partition", "outcome"])
        probes.inc(partition="provider", outcome="hit")
    """

    __slots__ = ("_values",)

    kind = "counter"

    def __init__(self, name: str, label_names: Sequence[str] = (), help_text: str = "") -> None:
        super().__init__(name, label_names, help_text)
        self._values: dict[LabelKey, float] = {}

    def inc(self, amount: float = 1.0, **labels: str) -> None:
        if amount < 0:
            raise ValueError("counters only go up")
        key = self._key(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + amount

    def get(self, **labels: str) -> float:
        key = self._key(labels)
        with self._lock:
            return self._values.get(key, 0.0)

    def render(self) -> list[str]:
        with self._lock:
            values = sorted(self._values.items())
        return self.header() + [f"{self.name}{self._render_labels(key)} {value}" for key, value in values]


class Histogram(_Metric):
    """
    Latency histogram, in seconds.

    Usage:
        latency = Histogram("relationship_op_seconds", ["operation"])
        with latency.time(operation="append_message"):
            ...
    """

    __slots__ = ("buckets", "_series")

    kind = "histogram"

    def __init__(
        self,
        name: str,
        label_names: Sequence[str] = (),
        help_text: str = "",
        buckets: Optional[Sequence[float]] = None,
    ) -> None:
        super().__init__(name, label_names, help_text)
        self.buckets = tuple(sorted(buckets or LATENCY_BUCKETS))
        # key -> [per-bucket counts..., +Inf count, sum]
        self._series: dict[LabelKey, list[float]] = {}

    def observe(self, seconds: float, **labels: str) -> None:
        key = self._key(labels)
        with self._lock:
            series = self._series.setdefault(key, [0] * (len(self.buckets) + 1) + [0.0])
            for i, bound in enumerate(self.buckets):
                if seconds <= bound:
                    series[i] += 1
            series[-2] += 1
            series[-1] += seconds

    @contextmanager
    def time(self, **labels: str) -> Iterator[None]:
        """Observe the wall time of the block, even when it raises."""
        start = time.perf_counter()
        try:
            yield
        finally:
            self.observe(time.perf_counter() - start, **labels)

    def count(self, **labels: str) -> int:
        key = self._key(labels)
        with self._lock:
            series = self._series.get(key)
            return int(series[-2]) if series else 0

    def render(self) -> list[str]:
        with self._lock:
            snapshot = sorted((key, list(series)) for key, series in self._series.items())
        lines = self.header()
        for key, series in snapshot:
            for bound, hits in zip(self.buckets, series):
                lines.append(f"{self.name}_bucket{self._render_labels(key, ('le', str(bound)))} {hits}")
            lines.append(f"{self.name}_bucket{self._render_labels(key, ('le', '+Inf'))} {series[-2]}")
            lines.append(f"{self.name}_sum{self._render_labels(key)} {series[-1]}")
            lines.append(f"{self.name}_count{self._render_labels(key)} {series[-2]}")
        return lines


class MetricsCollector:
    """
    Registry of named metrics for one mesh instance.

    Usage:
        collector = MetricsCollector()
        probes = collector.counter("identity_probes_total", ["partition"])
        output = collector.export_prometheus()
    """

    __slots__ = ("_metrics", "_lock")

    def __init__(self) -> None:
        self._metrics: dict[str, _Metric] = {}
        self._lock = threading.Lock()

    def _register(self, metric: _Metric) -> _Metric:
        with self._lock:
            existing = self._metrics.setdefault(metric.name, metric)
        if type(existing) is not type(metric) or existing.label_names != metric.label_names:
            raise ValueError(f"metric {metric.name} already registered with another shape")
        return existing

    def counter(self, name: str, label_names: Sequence[str] = (), help_text: str = "") -> Counter:
        return self._register(Counter(name, label_names, help_text))

    def histogram(
        self,
        name: str,
        label_names: Sequence[str] = (),
        help_text: str = "",
        buckets: Optional[Sequence[float]] = None,
    ) -> Histogram:
        return self._register(Histogram(name, label_names, help_text, buckets))

    def export_prometheus(self) -> str:
        """Export all metrics in Prometheus text format."""
        with self._lock:
            metrics = list(self._metrics.values())
        lines: list[str] = []
        for metric in metrics:
            lines.extend(metric.render())
        return "\n".join(lines) + "\n"


# =============================================================================
# MESH METRICS
# =============================================================================
class MeshMetrics:
    """Named metric handles shared by the mesh components."""

    __slots__ = (
        "collector",
        "partition_connects",
        "identity_probes",
        "relationship_latency",
        "migrations",
    )

    def __init__(self, collector: Optional[MetricsCollector] = None) -> None:
        self.collector = collector or MetricsCollector()
        self.partition_connects = self.collector.counter(
            "marketmesh_partition_connects_total",
            ["partition", "outcome"],
            "Partition connection attempts",
        )
        self.identity_probes = self.collector.counter(
            "marketmesh_identity_probes_total",
            ["partition", "outcome"],
            "Identity probe outcomes",
        )
        self.relationship_latency = self.collector.histogram(
            "marketmesh_relationship_op_seconds",
            ["operation"],
            "Relationship store operation latency",
        )
        self.migrations = self.collector.counter(
            "marketmesh_migrations_total",
            ["state"],
            "Migrations reaching a terminal state",
        )

"""In-process metrics with Prometheus text export.

The engine records what operators need to diagnose throttling: call
outcomes and latency per service, the concurrency ceiling over time,
every adjustment with its reason, pool wait, dedup savings and circuit
state. Export is pull-based (``MetricsRegistry.export_prometheus``); no
exporter process is started.

Metric types:
- Counter: Monotonically increasing value
- Gauge: Value that can go up or down
- Histogram: Distribution of values

Example:
    >>> registry = MetricsRegistry()
    >>> metrics = EngineMetrics(registry)
    >>> metrics.record_call("s3", "success", 0.12)
    >>> metrics.calls.labels(service="s3", outcome="success").value
    1.0
"""

from __future__ import annotations

import math
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class Labels:
    """Immutable, sorted label set."""

    pairs: tuple[tuple[str, str], ...] = ()

    @classmethod
    def from_dict(cls, d: dict[str, Any] | None) -> Labels:
        if not d:
            return cls(())
        return cls(tuple(sorted((k, str(v)) for k, v in d.items())))

    def to_dict(self) -> dict[str, str]:
        return dict(self.pairs)

    def render(self, extra: dict[str, str] | None = None) -> str:
        items = list(self.pairs) + list((extra or {}).items())
        if not items:
            return ""
        return "{" + ",".join(f'{k}="{v}"' for k, v in items) + "}"


class Metric(ABC):
    """Base class for metrics."""

    kind = "untyped"

    def __init__(self, name: str, description: str = "", labels: list[str] | None = None):
        self.name = name
        self.description = description
        self.label_names = tuple(labels or ())
        self._lock = threading.Lock()

    def _labels(self, kwargs: dict[str, Any]) -> Labels:
        unknown = set(kwargs) - set(self.label_names)
        if unknown:
            raise ValueError(f"{self.name}: unknown labels {sorted(unknown)}")
        return Labels.from_dict(kwargs)

    @abstractmethod
    def collect(self) -> list[dict[str, Any]]:
        """Collect metric values for export."""
        ...


class Counter(Metric):
    """A monotonically increasing counter."""

    kind = "counter"

    def __init__(self, name: str, description: str = "", labels: list[str] | None = None):
        super().__init__(name, description, labels)
        self._values: dict[Labels, float] = {}

    def labels(self, **kwargs: Any) -> CounterChild:
        return CounterChild(self, self._labels(kwargs))

    def inc(self, value: float = 1.0) -> None:
        self.labels().inc(value)

    def collect(self) -> list[dict[str, Any]]:
        with self._lock:
            return [
                {"name": self.name, "type": self.kind, "labels": labels, "value": value}
                for labels, value in self._values.items()
            ]


class CounterChild:
    """Counter with fixed labels."""

    def __init__(self, counter: Counter, labels: Labels):
        self._counter = counter
        self._labels = labels

    def inc(self, value: float = 1.0) -> None:
        if value < 0:
            raise ValueError("Counter can only increase")
        with self._counter._lock:
            values = self._counter._values
            values[self._labels] = values.get(self._labels, 0.0) + value

    @property
    def value(self) -> float:
        with self._counter._lock:
            return self._counter._values.get(self._labels, 0.0)


class Gauge(Metric):
    """A value that can go up or down."""

    kind = "gauge"

    def __init__(self, name: str, description: str = "", labels: list[str] | None = None):
        super().__init__(name, description, labels)
        self._values: dict[Labels, float] = {}

    def labels(self, **kwargs: Any) -> GaugeChild:
        return GaugeChild(self, self._labels(kwargs))

    def set(self, value: float) -> None:
        self.labels().set(value)

    def collect(self) -> list[dict[str, Any]]:
        with self._lock:
            return [
                {"name": self.name, "type": self.kind, "labels": labels, "value": value}
                for labels, value in self._values.items()
            ]


class GaugeChild:
    """Gauge with fixed labels."""

    def __init__(self, gauge: Gauge, labels: Labels):
        self._gauge = gauge
        self._labels = labels

    def set(self, value: float) -> None:
        with self._gauge._lock:
            self._gauge._values[self._labels] = float(value)

    def inc(self, value: float = 1.0) -> None:
        with self._gauge._lock:
            values = self._gauge._values
            values[self._labels] = values.get(self._labels, 0.0) + value

    def dec(self, value: float = 1.0) -> None:
        self.inc(-value)

    @property
    def value(self) -> float:
        with self._gauge._lock:
            return self._gauge._values.get(self._labels, 0.0)


class Histogram(Metric):
    """A distribution of values with cumulative buckets."""

    kind = "histogram"

    DEFAULT_BUCKETS = (
        0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, math.inf,
    )

    def __init__(
        self,
        name: str,
        description: str = "",
        labels: list[str] | None = None,
        buckets: tuple[float, ...] | None = None,
    ):
        super().__init__(name, description, labels)
        buckets = tuple(sorted(buckets or self.DEFAULT_BUCKETS))
        if buckets[-1] != math.inf:
            buckets = buckets + (math.inf,)
        self.buckets = buckets
        self._data: dict[Labels, dict[str, Any]] = {}

    def labels(self, **kwargs: Any) -> HistogramChild:
        return HistogramChild(self, self._labels(kwargs))

    def observe(self, value: float) -> None:
        self.labels().observe(value)

    def _empty(self) -> dict[str, Any]:
        return {"buckets": dict.fromkeys(self.buckets, 0), "sum": 0.0, "count": 0}

    def collect(self) -> list[dict[str, Any]]:
        with self._lock:
            return [
                {
                    "name": self.name,
                    "type": self.kind,
                    "labels": labels,
                    "buckets": dict(data["buckets"]),
                    "sum": data["sum"],
                    "count": data["count"],
                }
                for labels, data in self._data.items()
            ]


class HistogramChild:
    """Histogram with fixed labels."""

    def __init__(self, histogram: Histogram, labels: Labels):
        self._histogram = histogram
        self._labels = labels

    def observe(self, value: float) -> None:
        h = self._histogram
        with h._lock:
            data = h._data.setdefault(self._labels, h._empty())
            data["sum"] += value
            data["count"] += 1
            for bucket in h.buckets:
                if value <= bucket:
                    data["buckets"][bucket] += 1

    @property
    def count(self) -> int:
        with self._histogram._lock:
            return self._histogram._data.get(self._labels, {"count": 0})["count"]

    @property
    def sum(self) -> float:
        with self._histogram._lock:
            return self._histogram._data.get(self._labels, {"sum": 0.0})["sum"]


def _format_value(value: float) -> str:
    if value == math.inf:
        return "+Inf"
    if float(value).is_integer():
        return str(int(value))
    return repr(float(value))


class MetricsRegistry:
    """Registry of all metrics for collection and export."""

    def __init__(self) -> None:
        self._metrics: dict[str, Metric] = {}
        self._lock = threading.Lock()

    def _get_or_create(self, cls: type[Metric], name: str, *args: Any) -> Any:
        with self._lock:
            existing = self._metrics.get(name)
            if existing is None:
                existing = self._metrics[name] = cls(name, *args)
            elif not isinstance(existing, cls):
                raise ValueError(f"metric {name!r} already registered as {existing.kind}")
            return existing

    def counter(self, name: str, description: str = "", labels: list[str] | None = None) -> Counter:
        return self._get_or_create(Counter, name, description, labels)

    def gauge(self, name: str, description: str = "", labels: list[str] | None = None) -> Gauge:
        return self._get_or_create(Gauge, name, description, labels)

    def histogram(
        self,
        name: str,
        description: str = "",
        labels: list[str] | None = None,
        buckets: tuple[float, ...] | None = None,
    ) -> Histogram:
        return self._get_or_create(Histogram, name, description, labels, buckets)

    def metrics(self) -> list[Metric]:
        with self._lock:
            return list(self._metrics.values())

    def collect(self) -> list[dict[str, Any]]:
        results: list[dict[str, Any]] = []
        for metric in self.metrics():
            results.extend(metric.collect())
        return results

    def export_prometheus(self) -> str:
        """Export metrics in Prometheus text exposition format."""
        lines: list[str] = []
        for metric in self.metrics():
            samples = metric.collect()
            if not samples:
                continue
            if metric.description:
                lines.append(f"# HELP {metric.name} {metric.description}")
            lines.append(f"# TYPE {metric.name} {metric.kind}")
            for data in samples:
                labels: Labels = data["labels"]
                if metric.kind == "histogram":
                    for bucket, count in data["buckets"].items():
                        le = labels.render({"le": _format_value(bucket)})
                        lines.append(f"{metric.name}_bucket{le} {count}")
                    lines.append(f"{metric.name}_sum{labels.render()} {_format_value(data['sum'])}")
                    lines.append(f"{metric.name}_count{labels.render()} {data['count']}")
                else:
                    lines.append(f"{metric.name}{labels.render()} {_format_value(data['value'])}")
        return "\n".join(lines) + ("\n" if lines else "")


_default_registry = MetricsRegistry()


def get_metrics_registry() -> MetricsRegistry:
    """Get the default metrics registry."""
    return _default_registry


_CIRCUIT_STATE_VALUES = {"closed": 0, "half_open": 1, "open": 2}


class EngineMetrics:
    """Pre-defined metrics for the execution engine."""

    def __init__(self, registry: MetricsRegistry | None = None):
        reg = registry or _default_registry
        self.registry = reg

        self.calls = reg.counter(
            "engine_calls_total",
            "Remote calls by service and tagged outcome",
            ["service", "outcome"],
        )
        self.call_latency = reg.histogram(
            "engine_call_latency_seconds",
            "Remote call latency in seconds",
            ["service"],
        )
        self.concurrency_limit = reg.gauge(
            "engine_concurrency_limit",
            "Current concurrency ceiling",
            ["service"],
        )
        self.adjustments = reg.counter(
            "engine_adjustments_total",
            "Concurrency adjustments by reason",
            ["service", "reason"],
        )
        self.pool_wait = reg.histogram(
            "engine_pool_acquire_wait_seconds",
            "Time spent waiting for a pool connection",
            ["service"],
            buckets=(0.001, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 30.0, math.inf),
        )
        self.duplicates = reg.counter(
            "engine_duplicates_total",
            "Requests answered by another request in the same batch",
            ["strategy"],
        )
        self.cache_hits = reg.counter(
            "engine_cache_hits_total",
            "Unique requests answered from the result cache",
        )
        self.circuit_state = reg.gauge(
            "engine_circuit_state",
            "Circuit breaker state (0=closed, 1=half_open, 2=open)",
            ["service"],
        )

    def record_call(self, service: str, outcome: str, latency: float | None = None) -> None:
        self.calls.labels(service=service, outcome=outcome).inc()
        if latency is not None:
            self.call_latency.labels(service=service).observe(latency)

    def record_adjustment(self, service: str, reason: str, to_concurrency: int) -> None:
        self.adjustments.labels(service=service, reason=reason).inc()
        self.concurrency_limit.labels(service=service).set(to_concurrency)

    def record_plan(self, strategy: str, duplicates: int, cache_hits: int) -> None:
        if duplicates:
            self.duplicates.labels(strategy=strategy).inc(duplicates)
        if cache_hits:
            self.cache_hits.inc(cache_hits)

    def record_pool_wait(self, service: str, seconds: float) -> None:
        self.pool_wait.labels(service=service).observe(seconds)

    def set_concurrency(self, service: str, value: int) -> None:
        self.concurrency_limit.labels(service=service).set(value)

    def set_circuit_state(self, service: str, state: str) -> None:
        self.circuit_state.labels(service=service).set(_CIRCUIT_STATE_VALUES.get(state, -1))


__all__ = [
    "Labels",
    "Metric",
    "Counter",
    "Gauge",
    "Histogram",
    "MetricsRegistry",
    "get_metrics_registry",
    "EngineMetrics",
]

"""Metrics for the execution engine."""

from .metrics import (
    Counter,
    EngineMetrics,
    Gauge,
    Histogram,
    MetricsRegistry,
    get_metrics_registry,
)

__all__ = [
    "Counter",
    "EngineMetrics",
    "Gauge",
    "Histogram",
    "MetricsRegistry",
    "get_metrics_registry",
]

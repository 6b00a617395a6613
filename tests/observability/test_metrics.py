"""Tests for in-process metrics and Prometheus export."""

import math

import pytest

from adaptive_engine.observability.metrics import (
    Counter,
    EngineMetrics,
    Gauge,
    Histogram,
    MetricsRegistry,
)


# ── Primitives ───────────────────────────────────────────────────────────


class TestCounter:
    def test_inc_with_labels(self):
        c = Counter("calls", labels=["service"])
        c.labels(service="s3").inc()
        c.labels(service="s3").inc(2)
        assert c.labels(service="s3").value == 3.0
        assert c.labels(service="ec2").value == 0.0

    def test_cannot_decrease(self):
        with pytest.raises(ValueError):
            Counter("calls").inc(-1)

    def test_unknown_label_rejected(self):
        with pytest.raises(ValueError):
            Counter("calls", labels=["service"]).labels(region="us-east-1")


class TestGauge:
    def test_set_inc_dec(self):
        g = Gauge("limit", labels=["service"])
        child = g.labels(service="ec2")
        child.set(10)
        child.inc(2)
        child.dec()
        assert child.value == 11.0


class TestHistogram:
    def test_buckets_are_cumulative(self):
        h = Histogram("latency", buckets=(0.1, 1.0))
        for v in (0.05, 0.5, 5.0):
            h.observe(v)
        (sample,) = h.collect()
        assert sample["buckets"] == {0.1: 1, 1.0: 2, math.inf: 3}
        assert sample["count"] == 3
        assert sample["sum"] == pytest.approx(5.55)


# ── Registry ─────────────────────────────────────────────────────────────


class TestMetricsRegistry:
    def test_get_or_create_returns_same_metric(self):
        reg = MetricsRegistry()
        assert reg.counter("x") is reg.counter("x")

    def test_type_clash_rejected(self):
        reg = MetricsRegistry()
        reg.counter("x")
        with pytest.raises(ValueError):
            reg.gauge("x")

    def test_prometheus_export(self):
        reg = MetricsRegistry()
        reg.counter("engine_calls_total", "Calls", ["service"]).labels(service="s3").inc()
        reg.histogram("lat", "Latency", buckets=(1.0,)).observe(0.5)
        text = reg.export_prometheus()
        assert "# HELP engine_calls_total Calls" in text
        assert "# TYPE engine_calls_total counter" in text
        assert 'engine_calls_total{service="s3"} 1' in text
        assert 'lat_bucket{le="+Inf"} 1' in text
        assert "lat_count 1" in text

    def test_empty_export(self):
        assert MetricsRegistry().export_prometheus() == ""


# ── EngineMetrics ────────────────────────────────────────────────────────


class TestEngineMetrics:
    def test_record_call(self, metrics):
        metrics.record_call("s3", "success", 0.12)
        metrics.record_call("s3", "throttled")
        assert metrics.calls.labels(service="s3", outcome="success").value == 1.0
        assert metrics.calls.labels(service="s3", outcome="throttled").value == 1.0
        assert metrics.call_latency.labels(service="s3").count == 1

    def test_record_adjustment_sets_gauge(self, metrics):
        metrics.record_adjustment("ec2", "error_threshold_exceeded", 7)
        assert metrics.adjustments.labels(service="ec2", reason="error_threshold_exceeded").value == 1.0
        assert metrics.concurrency_limit.labels(service="ec2").value == 7.0

    def test_record_plan_skips_zero(self, metrics):
        metrics.record_plan("semantic", 0, 0)
        metrics.record_plan("semantic", 9, 2)
        assert metrics.duplicates.labels(strategy="semantic").value == 9.0
        assert metrics.cache_hits.labels().value == 2.0

    def test_circuit_state_gauge(self, metrics):
        metrics.set_circuit_state("iam", "open")
        assert metrics.circuit_state.labels(service="iam").value == 2.0
        metrics.set_circuit_state("iam", "closed")
        assert metrics.circuit_state.labels(service="iam").value == 0.0

    def test_shares_registry(self):
        reg = MetricsRegistry()
        a, b = EngineMetrics(reg), EngineMetrics(reg)
        a.record_pool_wait("s3", 0.01)
        assert b.pool_wait.labels(service="s3").count == 1

"""End-to-end tests for batch execution."""

from __future__ import annotations

import asyncio
from collections import Counter

import pytest

from adaptive_engine.core.errors import (
    CallTimeoutError,
    CircuitOpenError,
    ConfigError,
    OutcomeKind,
    PoolTimeoutError,
    ThrottledError,
    ValidationError,
)
from adaptive_engine.execution.circuit_breaker import CircuitBreakerConfig, CircuitState
from adaptive_engine.execution.controller import ConcurrencyConfig
from adaptive_engine.execution.dedup import DeduplicationEngine
from adaptive_engine.execution.models import AdjustmentReason, Request
from adaptive_engine.execution.orchestrator import BatchConfig, ExecutionOrchestrator, execute_batch
from adaptive_engine.execution.pool import PoolConfig
from adaptive_engine.execution.registry import ServiceStateRegistry


def describe(instance_id: str, service: str = "ec2") -> Request:
    return Request(service, "describe_instances", {"instance_ids": [instance_id]})


class FakeBackend:
    """Records calls and in-flight depth; fails the ids it is told to."""

    def __init__(self, *, delay: float = 0.0, failures: dict[str, Exception] | None = None):
        self.delay = delay
        self.failures = failures or {}
        self.calls: Counter[str] = Counter()
        self.in_flight = 0
        self.peak = 0

    async def __call__(self, request: Request):
        instance_id = request.params["instance_ids"][0]
        self.calls[instance_id] += 1
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
            if instance_id in self.failures:
                raise self.failures[instance_id]
            return {"InstanceId": instance_id, "State": "running"}
        finally:
            self.in_flight -= 1


def test_batch_config_validation():
    with pytest.raises(ConfigError):
        BatchConfig(call_timeout=0)
    with pytest.raises(ConfigError):
        BatchConfig(micro_batch_size=0)
    assert BatchConfig(strategy="exact").strategy.value == "exact"


# ── Happy path ───────────────────────────────────────────────────────────


class TestExecuteBatch:
    @pytest.mark.asyncio
    async def test_fifty_requests_with_shared_group(self, registry, metrics):
        backend = FakeBackend()
        requests = [describe("shared" if i % 5 == 0 else f"i-{i}") for i in range(50)]
        orchestrator = ExecutionOrchestrator(backend, registry=registry, metrics=metrics)

        result = await orchestrator.execute_batch(requests)

        perf = result.performance_metrics
        assert perf.requests_processed == 50
        assert perf.duplicates_found == 9
        assert perf.unique_requests == 41
        assert perf.executed_calls == 41
        assert perf.succeeded == 50
        assert backend.calls["shared"] == 1
        assert sum(backend.calls.values()) == 41

        assert [r.index for r in result.results] == list(range(50))
        shared = [result.results[i] for i in range(0, 50, 5)]
        assert all(r.value == {"InstanceId": "shared", "State": "running"} for r in shared)
        assert [r.was_deduplicated for r in shared] == [False] + [True] * 9
        assert result.results[7].value["InstanceId"] == "i-7"

        assert set(result.final_concurrency) == {"ec2"}
        assert 1 <= result.final_concurrency["ec2"] <= 15
        assert result.to_dict()["batch_id"] == result.batch_id

    @pytest.mark.asyncio
    async def test_empty_batch(self, registry, metrics):
        result = await ExecutionOrchestrator(FakeBackend(), registry=registry, metrics=metrics).execute_batch([])
        assert result.results == ()
        assert result.final_concurrency == {}
        assert result.performance_metrics.dedup_efficiency == 0.0

    @pytest.mark.asyncio
    async def test_dispatch_never_exceeds_ceiling(self, clock, metrics):
        registry = ServiceStateRegistry(
            concurrency_config=ConcurrencyConfig(min_concurrency=3, max_concurrency=3), clock=clock
        )
        backend = FakeBackend(delay=0.01)
        await ExecutionOrchestrator(backend, registry=registry, metrics=metrics).execute_batch(
            [describe(f"i-{i}") for i in range(12)]
        )
        assert backend.peak == 3

    @pytest.mark.asyncio
    async def test_services_tracked_separately(self, registry, metrics):
        result = await ExecutionOrchestrator(FakeBackend(), registry=registry, metrics=metrics).execute_batch(
            [describe("a"), describe("a", service="s3")]
        )
        assert result.performance_metrics.duplicates_found == 0
        assert set(result.final_concurrency) == {"ec2", "s3"}

    @pytest.mark.asyncio
    async def test_module_helper(self, registry, metrics):
        result = await execute_batch([describe("x"), describe("x")], FakeBackend(), registry=registry, metrics=metrics)
        assert result.performance_metrics.executed_calls == 1


# ── Failures ─────────────────────────────────────────────────────────────


class TestFailures:
    @pytest.mark.asyncio
    async def test_failure_only_affects_its_group(self, registry, metrics):
        backend = FakeBackend(failures={"i-bad": ThrottledError("Rate exceeded")})
        requests = [describe("i-bad"), describe("i-1"), describe("i-bad"), describe("i-2")]

        result = await ExecutionOrchestrator(backend, registry=registry, metrics=metrics).execute_batch(requests)

        assert [r.ok for r in result.results] == [False, True, False, True]
        bad = result.results[2]
        assert isinstance(bad.error, ThrottledError)
        assert bad.outcome is OutcomeKind.THROTTLED
        assert bad.error.context.request_index == 0
        assert bad.error.context.service == "ec2"
        assert result.performance_metrics.failed == 2
        assert metrics.calls.labels(service="ec2", outcome="throttled").value == 1.0

    @pytest.mark.asyncio
    async def test_foreign_exceptions_are_wrapped(self, registry, metrics):
        backend = FakeBackend(failures={"i-1": ConnectionResetError("peer reset")})
        result = await ExecutionOrchestrator(backend, registry=registry, metrics=metrics).execute_batch(
            [describe("i-1")]
        )
        (slot,) = result.results
        assert slot.outcome is OutcomeKind.TRANSIENT
        assert isinstance(slot.error.cause, ConnectionResetError)

    @pytest.mark.asyncio
    async def test_call_timeout(self, registry, metrics):
        backend = FakeBackend(delay=1.0)
        result = await ExecutionOrchestrator(backend, registry=registry, metrics=metrics).execute_batch(
            [describe("slow")], BatchConfig(call_timeout=0.05)
        )
        (slot,) = result.results
        assert isinstance(slot.error, CallTimeoutError)
        assert slot.outcome is OutcomeKind.TIMEOUT

    @pytest.mark.asyncio
    async def test_invalid_request_dispatches_nothing(self, registry, metrics):
        backend = FakeBackend()
        with pytest.raises(ValidationError):
            await ExecutionOrchestrator(backend, registry=registry, metrics=metrics).execute_batch(
                [describe("i-1"), Request("", "describe_instances")]
            )
        assert not backend.calls

    @pytest.mark.asyncio
    async def test_pool_timeout_rejects(self, registry, metrics):
        entry = registry.configure("ec2", pool_config=PoolConfig(max_connections=1, min_connections=0))
        held = await entry.pool.acquire()
        backend = FakeBackend()

        result = await ExecutionOrchestrator(backend, registry=registry, metrics=metrics).execute_batch(
            [describe("i-1"), describe("i-2")], BatchConfig(acquire_timeout=0.05)
        )

        assert all(isinstance(r.error, PoolTimeoutError) for r in result.results)
        assert all(r.outcome is OutcomeKind.REJECTED for r in result.results)
        assert result.performance_metrics.rejected == 2
        assert not backend.calls
        await entry.pool.release(held.connection_id)


# ── Circuit breaker ──────────────────────────────────────────────────────


class TestCircuit:
    @pytest.fixture
    def registry(self, clock) -> ServiceStateRegistry:
        return ServiceStateRegistry(
            circuit=CircuitBreakerConfig(failure_threshold=1, recovery_timeout=30.0), clock=clock
        )

    @staticmethod
    def trip(registry: ServiceStateRegistry) -> None:
        entry = registry.get("ec2")
        entry.commit(entry.controller.record_outcome(entry.state, OutcomeKind.TRANSIENT))

    @pytest.mark.asyncio
    async def test_open_circuit_rejects_without_calling(self, registry, metrics):
        self.trip(registry)
        backend = FakeBackend()

        result = await ExecutionOrchestrator(backend, registry=registry, metrics=metrics).execute_batch(
            [describe("i-1"), describe("i-2"), describe("i-1")]
        )

        assert not backend.calls
        assert all(isinstance(r.error, CircuitOpenError) for r in result.results)
        assert all(r.outcome is OutcomeKind.REJECTED for r in result.results)
        assert result.results[0].error.retry_after == 30.0
        assert result.performance_metrics.executed_calls == 0
        assert metrics.calls.labels(service="ec2", outcome="rejected").value == 2.0

    @pytest.mark.asyncio
    async def test_half_open_admits_one_probe(self, registry, metrics, clock):
        self.trip(registry)
        clock.advance(30)
        backend = FakeBackend(delay=0.01)

        result = await ExecutionOrchestrator(backend, registry=registry, metrics=metrics).execute_batch(
            [describe("i-1"), describe("i-2"), describe("i-3")]
        )

        assert [r.ok for r in result.results] == [True, False, False]
        assert sum(backend.calls.values()) == 1
        assert registry.get("ec2").state.circuit.state is CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_failures_open_circuit_for_next_batch(self, registry, metrics):
        backend = FakeBackend(failures={"i-1": ThrottledError("slow down")})
        orchestrator = ExecutionOrchestrator(backend, registry=registry, metrics=metrics)
        await orchestrator.execute_batch([describe("i-1")])
        assert registry.get("ec2").state.circuit.state is CircuitState.OPEN

        result = await orchestrator.execute_batch([describe("i-2")])
        assert isinstance(result.results[0].error, CircuitOpenError)
        assert backend.calls["i-2"] == 0


# ── Cache ────────────────────────────────────────────────────────────────


class TestCache:
    @pytest.mark.asyncio
    async def test_cache_aware_skips_cached_groups(self, registry, metrics, cache, clock):
        key = DeduplicationEngine(clock=clock).canonical_key(describe("i-1"), "semantic")
        cache.set(str(key), {"InstanceId": "i-1", "State": "stopped"})
        backend = FakeBackend()

        result = await ExecutionOrchestrator(backend, cache=cache, registry=registry, metrics=metrics).execute_batch(
            [describe("i-1"), describe("i-2"), describe("i-1")], BatchConfig(strategy="cache_aware")
        )

        assert dict(backend.calls) == {"i-2": 1}
        assert result.results[0].from_cache
        assert result.results[2].from_cache and result.results[2].was_deduplicated
        assert result.results[0].value["State"] == "stopped"
        assert result.performance_metrics.cache_hits == 1

    @pytest.mark.asyncio
    async def test_results_written_back(self, registry, metrics, cache):
        backend = FakeBackend()
        orchestrator = ExecutionOrchestrator(backend, cache=cache, registry=registry, metrics=metrics)

        first = await orchestrator.execute_batch([describe("i-1")])
        assert cache.get(str(first.results[0].key)) == {"InstanceId": "i-1", "State": "running"}

        second = await orchestrator.execute_batch([describe("i-1")], BatchConfig(strategy="cache_aware"))
        assert second.results[0].from_cache
        assert backend.calls["i-1"] == 1

    @pytest.mark.asyncio
    async def test_cache_results_disabled(self, registry, metrics, cache):
        orchestrator = ExecutionOrchestrator(FakeBackend(), cache=cache, registry=registry, metrics=metrics)
        result = await orchestrator.execute_batch([describe("i-1")], BatchConfig(cache_results=False))
        assert not cache.exists(str(result.results[0].key))

    @pytest.mark.asyncio
    async def test_failures_not_cached(self, registry, metrics, cache):
        backend = FakeBackend(failures={"i-1": ThrottledError("slow down")})
        orchestrator = ExecutionOrchestrator(backend, cache=cache, registry=registry, metrics=metrics)
        result = await orchestrator.execute_batch([describe("i-1")])
        assert not cache.exists(str(result.results[0].key))


# ── Feedback into the controller ─────────────────────────────────────────


class TestFeedback:
    @pytest.fixture
    def registry(self, clock) -> ServiceStateRegistry:
        return ServiceStateRegistry(
            concurrency_config=ConcurrencyConfig(max_concurrency=10, initial_concurrency=10, error_threshold=0.2),
            circuit=CircuitBreakerConfig(failure_threshold=100),
            clock=clock,
        )

    @pytest.mark.asyncio
    async def test_throttling_triggers_emergency_reduction(self, registry, metrics):
        ids = [f"i-{i}" for i in range(10)]
        backend = FakeBackend(failures={i: ThrottledError("Rate exceeded") for i in ids})

        result = await ExecutionOrchestrator(backend, registry=registry, metrics=metrics).execute_batch(
            [describe(i) for i in ids], BatchConfig(micro_batch_size=5)
        )

        adjustments = result.concurrency_adjustments
        assert [(a.from_concurrency, a.to_concurrency) for a in adjustments] == [(10, 5), (5, 2)]
        assert all(a.reason is AdjustmentReason.ERROR_THRESHOLD_EXCEEDED for a in adjustments)
        assert result.final_concurrency == {"ec2": 2}
        assert result.performance_metrics.adjustments_made == 2
        assert metrics.concurrency_limit.labels(service="ec2").value == 2.0

    @pytest.mark.asyncio
    async def test_state_persists_across_batches(self, registry, metrics):
        backend = FakeBackend(failures={"i-0": ThrottledError("Rate exceeded")})
        first = ExecutionOrchestrator(backend, registry=registry, metrics=metrics)
        result = await first.execute_batch([describe("i-0")])
        reduced = result.final_concurrency["ec2"]
        assert reduced < 10

        second = ExecutionOrchestrator(FakeBackend(), registry=registry, metrics=metrics)
        assert second.registry.get("ec2").state.current_concurrency == reduced
        assert second.registry.get("ec2").limiter.limit == reduced

    @pytest.mark.asyncio
    async def test_partial_window_flushed_at_batch_end(self, registry, metrics):
        result = await ExecutionOrchestrator(FakeBackend(), registry=registry, metrics=metrics).execute_batch(
            [describe("i-1"), describe("i-2")]
        )
        assert result.performance_metrics.succeeded == 2
        assert len(registry.get("ec2").state.metrics_window) == 1


# ── Pool maintenance ─────────────────────────────────────────────────────


class TestPoolMaintenance:
    @pytest.fixture
    def entry(self, registry):
        return registry.configure(
            "ec2",
            pool_config=PoolConfig(
                max_connections=2, min_connections=1, connection_lifetime=30, health_check_interval=20
            ),
        )

    @pytest.mark.asyncio
    async def test_expired_connection_replaced_between_batches(self, registry, metrics, clock, entry):
        orchestrator = ExecutionOrchestrator(FakeBackend(), registry=registry, metrics=metrics)
        await orchestrator.execute_batch([describe("i-1")])
        (first,) = entry.pool.available

        clock.advance(40)
        entry.pool.record_probe(first, True)
        result = await orchestrator.execute_batch([describe("i-2")])

        assert result.performance_metrics.succeeded == 1
        stats = entry.pool.statistics()
        assert stats.expirations == 1
        assert stats.created == 2
        assert first not in entry.pool.available
        assert entry.pool.current_connections == 1

    @pytest.mark.asyncio
    async def test_failed_probe_reconnected_between_batches(self, registry, metrics, clock, entry):
        orchestrator = ExecutionOrchestrator(FakeBackend(), registry=registry, metrics=metrics)
        await orchestrator.execute_batch([describe("i-1")])
        (first,) = entry.pool.available
        entry.pool.record_probe(first, False)

        clock.advance(20)
        await orchestrator.execute_batch([describe("i-2")])

        assert entry.pool.statistics().reconnects == 1
        assert first not in entry.pool.available

    @pytest.mark.asyncio
    async def test_no_maintenance_inside_interval(self, registry, metrics, clock, entry):
        orchestrator = ExecutionOrchestrator(FakeBackend(), registry=registry, metrics=metrics)
        await orchestrator.execute_batch([describe("i-1")])
        (first,) = entry.pool.available
        entry.pool.record_probe(first, False)

        clock.advance(5)
        await orchestrator.execute_batch([describe("i-2")])

        assert entry.pool.statistics().reconnects == 0
        assert entry.last_maintenance == 1_000.0

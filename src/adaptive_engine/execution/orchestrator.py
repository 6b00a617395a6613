"""Execution Orchestrator — dedup, gate, dispatch, feed back, fan out.

WHY
───
The pool, the controller and the dedup engine are each simple; the value
is in running them together so that every call a batch makes is (a)
necessary, (b) admitted by the breaker, (c) within the current ceiling
and (d) reported back so the next call is better informed.

ARCHITECTURE
────────────
::

    execute_batch(requests, BatchConfig)
      │
      ├─ DeduplicationEngine.deduplicate       ValidationError → caller
      │     cached groups never dispatch
      │
      ├─ per unique request (asyncio tasks)
      │     controller.admit                    refused → CircuitOpenError
      │     AdaptiveLimiter.slot                min(pool max, ceiling)
      │     ConnectionPool.acquire              timeout → PoolTimeoutError
      │     execute_one(request)                optional call_timeout
      │     ConnectionPool.release
      │     controller.record_outcome           circuit transition
      │     micro-batch full → Sample → controller.update → commit
      │
      └─ fan out: every original index gets its group's value or error

    Errors are isolated per group: one failing unique request only fails
    the batch slots that mapped to it.  Only ValidationError (before any
    dispatch) and InvariantViolation (corrupt state) escape.

All state writes happen on the event loop between awaits, so the
orchestrator is the single writer of each service's ``ConcurrencyState``.

Example::

    async def execute_one(request):
        return await client.call(request.service, request.operation, **request.params)

    orchestrator = ExecutionOrchestrator(execute_one, cache=InMemoryCache())
    result = await orchestrator.execute_batch(requests)
    result.performance_metrics.duplicates_found
    result.final_concurrency          # {"ec2": 11}
"""

from __future__ import annotations

import asyncio
import math
import uuid
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from adaptive_engine.core.cache import CacheBackend
from adaptive_engine.core.clock import Clock
from adaptive_engine.core.errors import (
    CircuitOpenError,
    ConfigError,
    EngineError,
    OutcomeKind,
    PoolTimeoutError,
    as_engine_error,
    classify_outcome,
)
from adaptive_engine.core.logging import LogContext, get_logger
from adaptive_engine.observability.metrics import EngineMetrics

from .circuit_breaker import ImpactAction
from .dedup import DedupStrategy, DeduplicationEngine, DeduplicationPlan
from .models import (
    Adjustment,
    BatchResult,
    CanonicalKey,
    PerformanceMetrics,
    Request,
    Sample,
    SlotResult,
)
from .registry import ServiceState, ServiceStateRegistry, get_registry
from .resources import ResourceSnapshot

logger = get_logger(__name__)

ExecuteOne = Callable[[Request], Awaitable[Any]]
ResourceProvider = Callable[[], ResourceSnapshot]


@dataclass(frozen=True)
class BatchConfig:
    """Per-call-site batch options.

    Attributes:
        strategy: Deduplication strategy
        freshness_threshold: Seconds; required for ``temporal``
        call_timeout: Per-call timeout around ``execute_one`` (None = none)
        acquire_timeout: Pool wait bound (None = pool's connection_timeout)
        cache_results: Write successful results back to the cache
        cache_ttl_seconds: TTL for written results (None = cache default)
        micro_batch_size: Completions per controller sample
            (None = the service's current concurrency)
    """

    strategy: DedupStrategy = DedupStrategy.SEMANTIC
    freshness_threshold: float | None = None
    call_timeout: float | None = None
    acquire_timeout: float | None = None
    cache_results: bool = True
    cache_ttl_seconds: float | None = None
    micro_batch_size: int | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "strategy", DedupStrategy(self.strategy))
        if self.call_timeout is not None and self.call_timeout <= 0:
            raise ConfigError("call_timeout must be > 0", field="call_timeout", value=self.call_timeout)
        if self.acquire_timeout is not None and self.acquire_timeout <= 0:
            raise ConfigError(
                "acquire_timeout must be > 0", field="acquire_timeout", value=self.acquire_timeout
            )
        if self.micro_batch_size is not None and self.micro_batch_size < 1:
            raise ConfigError(
                "micro_batch_size must be >= 1", field="micro_batch_size", value=self.micro_batch_size
            )


@dataclass
class _GroupOutcome:
    value: Any = None
    error: EngineError | None = None
    outcome: OutcomeKind = OutcomeKind.SUCCESS
    from_cache: bool = False


@dataclass
class _Window:
    """Completions since the last controller sample for one service."""

    started: float
    latencies: list[float] = field(default_factory=list)
    failures: int = 0


@dataclass
class _BatchRun:
    batch_id: str
    config: BatchConfig
    started: float
    windows: dict[str, _Window] = field(default_factory=dict)
    adjustments: list[Adjustment] = field(default_factory=list)
    latencies: list[float] = field(default_factory=list)
    executed_calls: int = 0


def _p95(values: Sequence[float]) -> float:
    if not values:
        return 0.0
    ordered = sorted(values)
    return ordered[max(0, math.ceil(0.95 * len(ordered)) - 1)]


class ExecutionOrchestrator:
    """Runs batches of independent remote calls through the engine."""

    def __init__(
        self,
        execute_one: ExecuteOne,
        *,
        cache: CacheBackend | None = None,
        registry: ServiceStateRegistry | None = None,
        dedup_engine: DeduplicationEngine | None = None,
        metrics: EngineMetrics | None = None,
        resource_provider: ResourceProvider | None = None,
        clock: Clock | None = None,
    ):
        self._execute_one = execute_one
        self._cache = cache
        self._registry = registry or get_registry()
        self._clock = clock or self._registry.clock
        self._dedup = dedup_engine or DeduplicationEngine(clock=self._clock)
        self._metrics = metrics or EngineMetrics()
        self._resource_provider = resource_provider

    @property
    def registry(self) -> ServiceStateRegistry:
        return self._registry

    async def execute_batch(
        self,
        requests: Sequence[Request],
        config: BatchConfig | None = None,
    ) -> BatchResult:
        """Execute a batch and return one result per original request.

        Raises:
            ValidationError: A request is malformed; nothing was dispatched.
            InvariantViolation: Engine state is corrupt.
        """
        config = config or BatchConfig()
        requests = list(requests)
        loop = asyncio.get_running_loop()
        run = _BatchRun(batch_id=uuid.uuid4().hex[:12], config=config, started=loop.time())

        async with LogContext(batch_id=run.batch_id):
            plan = self._dedup.deduplicate(
                requests,
                config.strategy,
                freshness_threshold=config.freshness_threshold,
                cache=self._cache if config.strategy is DedupStrategy.CACHE_AWARE else None,
            )
            self._metrics.record_plan(config.strategy.value, plan.duplicates_found, plan.cache_hits)

            logger.info(
                "orchestrator.batch_start",
                requests=len(requests),
                unique=len(plan.unique_requests),
                duplicates=plan.duplicates_found,
                cache_hits=plan.cache_hits,
                strategy=config.strategy.value,
            )

            outcomes: dict[int, _GroupOutcome] = {
                i: _GroupOutcome(value=value, from_cache=True) for i, value in plan.cached.items()
            }

            pending = plan.pending()
            services = sorted({r.service for r in plan.unique_requests})
            for service in services:
                count = sum(1 for i in pending if plan.unique_requests[i].service == service)
                entry = self._registry.get(service)
                entry.arrivals.record(count)
                await entry.maintain()

            tasks = [
                asyncio.create_task(
                    self._run_group(run, plan.representatives[i], plan.unique_requests[i], plan.keys[i])
                )
                for i in pending
            ]
            try:
                for i, outcome in zip(pending, await asyncio.gather(*tasks)):
                    outcomes[i] = outcome
            except BaseException:
                for task in tasks:
                    task.cancel()
                raise

            for service in services:
                self._feed(run, self._registry.get(service))

            result = self._assemble(run, requests, plan, outcomes, services, loop.time())

            logger.info(
                "orchestrator.batch_complete",
                succeeded=result.performance_metrics.succeeded,
                failed=result.performance_metrics.failed,
                adjustments=len(result.concurrency_adjustments),
                final_concurrency=dict(result.final_concurrency),
                elapsed_seconds=round(result.performance_metrics.elapsed_seconds, 4),
            )
            return result

    # ── One canonical group ──────────────────────────────────────────

    def _reject(
        self, run: _BatchRun, index: int, request: Request, error: EngineError
    ) -> _GroupOutcome:
        error.with_context(
            service=request.service,
            operation=request.operation,
            batch_id=run.batch_id,
            request_index=index,
        )
        self._metrics.record_call(request.service, OutcomeKind.REJECTED.value)
        return _GroupOutcome(error=error, outcome=OutcomeKind.REJECTED)

    async def _run_group(
        self, run: _BatchRun, index: int, request: Request, key: CanonicalKey
    ) -> _GroupOutcome:
        entry = self._registry.get(request.service)

        new_state, admission = entry.controller.admit(entry.state)
        entry.commit(new_state)
        self._metrics.set_circuit_state(entry.service, admission.circuit_state.value)
        if not admission.allowed:
            return self._reject(
                run,
                index,
                request,
                CircuitOpenError(
                    f"Circuit for '{entry.service}' is {admission.circuit_state.value}",
                    service=entry.service,
                    retry_after=admission.retry_after,
                ),
            )

        async with entry.limiter.slot():
            # The breaker may have opened while this request was queued.
            impact = entry.controller.concurrency_impact(entry.state)
            if impact.action is ImpactAction.SUSPEND or (
                impact.action is ImpactAction.PROBE and not admission.probe
            ):
                if admission.probe:
                    entry.commit(entry.controller.record_outcome(entry.state, OutcomeKind.REJECTED))
                return self._reject(
                    run,
                    index,
                    request,
                    CircuitOpenError(
                        f"Circuit for '{entry.service}' opened while request was queued",
                        service=entry.service,
                    ),
                )

            try:
                lease = await entry.pool.acquire(run.config.acquire_timeout)
            except PoolTimeoutError as e:
                if admission.probe:
                    entry.commit(entry.controller.record_outcome(entry.state, OutcomeKind.REJECTED))
                return self._reject(run, index, request, e)
            self._metrics.record_pool_wait(entry.service, lease.wait_time)

            loop = asyncio.get_running_loop()
            started = loop.time()
            value: Any = None
            error: EngineError | None = None
            run.executed_calls += 1
            try:
                call = self._execute_one(request)
                if run.config.call_timeout is not None:
                    value = await asyncio.wait_for(call, run.config.call_timeout)
                else:
                    value = await call
                outcome = OutcomeKind.SUCCESS
            except Exception as e:
                outcome = classify_outcome(e)
                error = as_engine_error(e).with_context(
                    service=request.service,
                    operation=request.operation,
                    batch_id=run.batch_id,
                    request_index=index,
                )
                logger.warning(
                    "orchestrator.call_failed",
                    service=request.service,
                    operation=request.operation,
                    outcome=outcome.value,
                    error=str(e),
                )
            finally:
                latency = loop.time() - started
                await entry.pool.release(lease.connection_id)

        entry.commit(entry.controller.record_outcome(entry.state, outcome))
        self._metrics.record_call(entry.service, outcome.value, latency)
        self._metrics.set_circuit_state(entry.service, entry.state.circuit.state.value)
        self._complete(run, entry, latency, outcome)

        if (
            outcome is OutcomeKind.SUCCESS
            and self._cache is not None
            and run.config.cache_results
            and value is not None
        ):
            self._cache.set(str(key), value, ttl_seconds=run.config.cache_ttl_seconds)

        return _GroupOutcome(value=value, error=error, outcome=outcome)

    # ── Feedback ─────────────────────────────────────────────────────

    def _complete(
        self, run: _BatchRun, entry: ServiceState, latency: float, outcome: OutcomeKind
    ) -> None:
        window = run.windows.get(entry.service)
        if window is None:
            window = run.windows[entry.service] = _Window(started=run.started)
        window.latencies.append(latency)
        if outcome.is_failure:
            window.failures += 1
        run.latencies.append(latency)

        size = run.config.micro_batch_size or entry.state.current_concurrency
        if len(window.latencies) >= size:
            self._feed(run, entry)

    def _feed(self, run: _BatchRun, entry: ServiceState) -> None:
        """Turn the service's open window into a Sample and update the controller."""
        window = run.windows.get(entry.service)
        if window is None or not window.latencies:
            return
        now = asyncio.get_running_loop().time()
        elapsed = max(now - window.started, 1e-6)
        completed = len(window.latencies)
        sample = Sample(
            timestamp=self._clock.now(),
            concurrency=entry.state.current_concurrency,
            latency=_p95(window.latencies),
            error_rate=window.failures / completed,
            throughput=completed / elapsed,
        )
        resources = self._resource_provider() if self._resource_provider else None

        new_state = entry.controller.update(
            entry.state,
            sample,
            resources=resources,
            request_rate=entry.arrivals.rate(),
        )
        entry.commit(new_state)
        run.windows[entry.service] = _Window(started=now)

        change = new_state.last_change
        if change is not None:
            run.adjustments.append(change)
            self._metrics.record_adjustment(entry.service, change.reason.value, change.to_concurrency)
        else:
            self._metrics.set_concurrency(entry.service, new_state.current_concurrency)

    # ── Fan out ──────────────────────────────────────────────────────

    def _assemble(
        self,
        run: _BatchRun,
        requests: list[Request],
        plan: DeduplicationPlan,
        outcomes: dict[int, _GroupOutcome],
        services: list[str],
        finished: float,
    ) -> BatchResult:
        results: list[SlotResult] = []
        for entry in plan.mapping:
            group = outcomes[entry.maps_to_index]
            results.append(
                SlotResult(
                    index=entry.original_index,
                    request=requests[entry.original_index],
                    value=group.value,
                    error=group.error,
                    outcome=group.outcome,
                    was_deduplicated=entry.was_deduplicated,
                    from_cache=group.from_cache,
                    key=plan.keys[entry.maps_to_index],
                )
            )

        elapsed = max(finished - run.started, 0.0)
        succeeded = sum(1 for r in results if r.ok)
        rejected = sum(1 for r in results if r.outcome is OutcomeKind.REJECTED)
        latencies = run.latencies
        metrics = PerformanceMetrics(
            requests_processed=len(requests),
            unique_requests=len(plan.unique_requests),
            duplicates_found=plan.duplicates_found,
            cache_hits=plan.cache_hits,
            executed_calls=run.executed_calls,
            succeeded=succeeded,
            failed=len(results) - succeeded,
            rejected=rejected,
            adjustments_made=len(run.adjustments),
            elapsed_seconds=elapsed,
            throughput=(len(requests) / elapsed) if elapsed > 0 else 0.0,
            avg_latency=(sum(latencies) / len(latencies)) if latencies else 0.0,
            p95_latency=_p95(latencies),
        )

        return BatchResult(
            batch_id=run.batch_id,
            results=tuple(results),
            concurrency_adjustments=tuple(run.adjustments),
            final_concurrency={
                service: self._registry.get(service).state.current_concurrency
                for service in services
            },
            performance_metrics=metrics,
            plan=plan,
        )


async def execute_batch(
    requests: Sequence[Request],
    execute_one: ExecuteOne,
    config: BatchConfig | None = None,
    **kwargs: Any,
) -> BatchResult:
    """One-shot helper around ``ExecutionOrchestrator``."""
    return await ExecutionOrchestrator(execute_one, **kwargs).execute_batch(requests, config)


__all__ = [
    "BatchConfig",
    "ExecuteOne",
    "ExecutionOrchestrator",
    "execute_batch",
]

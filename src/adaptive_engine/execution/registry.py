"""Process-wide per-service engine state.

Controller state and pools persist across batches: the tenth batch against
a throttling service should start where the ninth left off, not at the
default ceiling. The registry owns one ``ServiceState`` per service and
creates it lazily on first use; ``reset`` is the explicit operator reset.

Example:
    >>> registry = ServiceStateRegistry()
    >>> entry = registry.get("stepfunctions")
    >>> entry.controller.config.max_concurrency
    5
    >>> registry.reset("stepfunctions")
"""

from __future__ import annotations

import threading
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from adaptive_engine.core.clock import Clock, default_clock
from adaptive_engine.core.logging import get_logger

from .burst import ArrivalRateTracker, BurstConfig
from .circuit_breaker import CircuitBreakerConfig
from .controller import ConcurrencyConfig, ConcurrencyController, ConcurrencyState
from .limiter import AdaptiveLimiter
from .pool import ConnectionPool, PoolConfig, ScalingAction
from .profiles import ServiceProfile, get_profile
from .resources import ResourceLimits

logger = get_logger(__name__)


@dataclass
class ServiceState:
    """Everything the orchestrator keeps for one service.

    ``state`` is replaced, never mutated; ``commit`` is the only writer and
    also resizes the dispatch gate. ``maintain`` runs the pool's health and
    lifecycle checks once per ``health_check_interval``.
    """

    service: str
    profile: ServiceProfile
    controller: ConcurrencyController
    pool: ConnectionPool
    state: ConcurrencyState
    limiter: AdaptiveLimiter = field(init=False)
    arrivals: ArrivalRateTracker = field(init=False)
    last_maintenance: float = field(init=False)

    def __post_init__(self) -> None:
        self.last_maintenance = self.controller.clock.now()
        self.limiter = AdaptiveLimiter(self.dispatch_limit())
        self.arrivals = ArrivalRateTracker(
            time_window=self.controller.burst_config.time_window,
            clock=self.controller.clock,
        )

    def dispatch_limit(self, state: ConcurrencyState | None = None) -> int:
        """``min(pool capacity, concurrency ceiling)``, at least 1."""
        state = state or self.state
        return max(1, min(self.pool.max_connections, state.current_concurrency))

    def commit(self, new_state: ConcurrencyState) -> None:
        self.state = new_state
        self.limiter.set_limit(self.dispatch_limit(new_state))

    async def maintain(self, *, force: bool = False) -> bool:
        """Health-check, expire and shrink the pool if the interval has passed.

        Unhealthy idle connections are reconnected or evicted, expired ones
        are retired and replaced up to ``min_connections``, and idle surplus
        above the floor is released. Returns True when the checks ran.
        """
        now = self.controller.clock.now()
        if not force and now - self.last_maintenance < self.pool.config.health_check_interval:
            return False
        self.last_maintenance = now

        report = self.pool.health_check()
        if not report.all_healthy:
            await self.pool.apply_recovery(report)
        self.pool.evaluate_lifecycle()
        await self.pool.run_cleanup()
        decision = self.pool.evaluate_scaling()
        if decision.action is ScalingAction.SCALE_DOWN:
            await self.pool.apply_scaling(decision)

        logger.debug(
            "registry.pool_maintained",
            service=self.service,
            unhealthy=len(report.unhealthy),
            connections=self.pool.current_connections,
        )
        return True

    def to_dict(self) -> dict[str, Any]:
        return {
            "service": self.service,
            "profile": self.profile.to_dict(),
            "state": self.state.to_dict(),
            "pool": self.pool.statistics().to_dict(),
            "limiter": {
                "limit": self.limiter.limit,
                "in_flight": self.limiter.in_flight,
                "waiting": self.limiter.waiting,
            },
        }


class ServiceStateRegistry:
    """Lazily created ``ServiceState`` per service.

    Args:
        pool_config: Pool config for every service; default sizes the pool
            to the service's concurrency ceiling.
        pool_defaults: PoolConfig fields other than the size, used when the
            pool is sized per service.
        concurrency_config: Controller config for every service; default
            derives one from the service profile.
        concurrency_overrides: Field overrides applied on top of the
            profile-derived config.
        use_profiles: When False every service gets ``ConcurrencyConfig()``.
    """

    def __init__(
        self,
        *,
        pool_config: PoolConfig | None = None,
        pool_defaults: Mapping[str, Any] | None = None,
        concurrency_config: ConcurrencyConfig | None = None,
        concurrency_overrides: Mapping[str, Any] | None = None,
        circuit: CircuitBreakerConfig | None = None,
        burst: BurstConfig | None = None,
        resource_limits: ResourceLimits | None = None,
        use_profiles: bool = True,
        clock: Clock | None = None,
    ):
        self._pool_config = pool_config
        self._pool_defaults = dict(pool_defaults or {})
        self._concurrency_config = concurrency_config
        self._overrides = dict(concurrency_overrides or {})
        self._circuit = circuit or CircuitBreakerConfig()
        self._burst = burst or BurstConfig()
        self._resource_limits = resource_limits or ResourceLimits()
        self._use_profiles = use_profiles
        self._clock = clock or default_clock()
        self._services: dict[str, ServiceState] = {}
        self._configured: dict[str, tuple[PoolConfig | None, ConcurrencyConfig | None]] = {}
        self._lock = threading.RLock()

    @property
    def clock(self) -> Clock:
        return self._clock

    def _concurrency_for(self, service: str, profile: ServiceProfile) -> ConcurrencyConfig:
        explicit = self._configured.get(service, (None, None))[1]
        if explicit is not None:
            return explicit
        if self._concurrency_config is not None:
            return self._concurrency_config
        if not self._use_profiles:
            return ConcurrencyConfig(**self._overrides)
        return ConcurrencyConfig.for_service(profile, **self._overrides)

    def _pool_for(self, service: str, concurrency: ConcurrencyConfig) -> PoolConfig:
        explicit = self._configured.get(service, (None, None))[0]
        if explicit is not None:
            return explicit
        if self._pool_config is not None:
            return self._pool_config
        fields = {"min_connections": 1, **self._pool_defaults}
        size = concurrency.max_concurrency
        fields["min_connections"] = min(fields["min_connections"], size)
        return PoolConfig(max_connections=size, **fields)

    def _build(self, service: str) -> ServiceState:
        profile = get_profile(service)
        concurrency = self._concurrency_for(service, profile)
        controller = ConcurrencyController(
            concurrency,
            circuit=self._circuit,
            burst=self._burst,
            resource_limits=self._resource_limits,
            clock=self._clock,
            service=service,
        )
        pool = ConnectionPool(service, self._pool_for(service, concurrency), clock=self._clock)
        entry = ServiceState(
            service=service,
            profile=profile,
            controller=controller,
            pool=pool,
            state=controller.initial_state(),
        )
        logger.debug(
            "registry.service_created",
            service=service,
            max_concurrency=concurrency.max_concurrency,
            initial_concurrency=entry.state.current_concurrency,
            max_connections=pool.max_connections,
        )
        return entry

    def get(self, service: str) -> ServiceState:
        """Get or create the state for ``service``."""
        with self._lock:
            entry = self._services.get(service)
            if entry is None:
                entry = self._services[service] = self._build(service)
            return entry

    def configure(
        self,
        service: str,
        *,
        pool_config: PoolConfig | None = None,
        concurrency_config: ConcurrencyConfig | None = None,
    ) -> ServiceState:
        """Pin explicit configs for one service and rebuild its state."""
        with self._lock:
            self._configured[service] = (pool_config, concurrency_config)
            entry = self._services[service] = self._build(service)
            return entry

    def services(self) -> list[str]:
        with self._lock:
            return sorted(self._services)

    def reset(self, service: str | None = None) -> None:
        """Drop persisted state for one service, or for all of them."""
        with self._lock:
            if service is None:
                self._services.clear()
            else:
                self._services.pop(service, None)
        logger.info("registry.reset", service=service or "*")

    def snapshot(self) -> dict[str, dict[str, Any]]:
        with self._lock:
            entries = list(self._services.values())
        return {entry.service: entry.to_dict() for entry in entries}


_default_registry: ServiceStateRegistry | None = None
_default_lock = threading.Lock()


def get_registry() -> ServiceStateRegistry:
    """Process-wide default registry, created on first use."""
    global _default_registry
    with _default_lock:
        if _default_registry is None:
            _default_registry = ServiceStateRegistry()
        return _default_registry


def set_registry(registry: ServiceStateRegistry | None) -> None:
    """Replace (or with ``None`` discard) the process-wide registry."""
    global _default_registry
    with _default_lock:
        _default_registry = registry


__all__ = [
    "ServiceState",
    "ServiceStateRegistry",
    "get_registry",
    "set_registry",
]

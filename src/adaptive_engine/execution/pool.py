"""Connection Pool Manager — bounded logical connections per service.

WHY
───
Every in-flight remote call occupies a client-side slot (an HTTP
connection, a CLI subprocess, an SDK client).  Creating slots without
bound exhausts sockets and file descriptors; creating them eagerly wastes
them.  The pool creates slots lazily up to ``max_connections``, hands
them out, takes them back, and retires the ones that are too old or
fail their health probes.

ARCHITECTURE
────────────
::

    ConnectionPool(service, PoolConfig, clock)
      ├── .acquire(timeout)        ─ reuse MRU idle → create → wait (Condition)
      ├── .release(id, healthy)    ─ back to idle, or retire + queue cleanup
      ├── .lease()                 ─ async context manager around both
      ├── .warm_up()               ─ create up to min_connections
      ├── .evaluate_scaling(n)     ─ scale_up | scale_down | maintain
      ├── .apply_scaling(d)        ─ pre-create / retire idle
      ├── .probe(prober)           ─ run async probes over idle connections
      ├── .health_check()          ─ healthy / unhealthy / recovery actions
      ├── .apply_recovery(report)  ─ reconnect (replace) or evict
      ├── .evaluate_lifecycle()    ─ expired / active / cleanup actions
      ├── .run_cleanup()           ─ execute queued cleanup, re-warm
      └── .statistics()            ─ PoolStatistics snapshot

    Invariant after every mutation (else InvariantViolation):
      active ∩ available = ∅
      |active| + |available| == current_connections <= max_connections

Membership is only changed under the pool's ``asyncio.Condition``; the
only blocking point is ``acquire`` and it is bounded by
``connection_timeout``.

Example::

    pool = ConnectionPool("ec2", PoolConfig(max_connections=5))
    await pool.warm_up()
    async with pool.lease() as lease:
        await call_backend(lease.connection_id)
    pool.statistics().acquisitions   # 1
"""

from __future__ import annotations

import asyncio
import itertools
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from adaptive_engine.core.clock import Clock, default_clock
from adaptive_engine.core.errors import ConfigError, InvariantViolation, PoolTimeoutError
from adaptive_engine.core.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class PoolConfig:
    """Pool sizing and timing.

    Attributes:
        max_connections: Hard ceiling on provisioned connections
        min_connections: Floor kept warm after ``warm_up``
        connection_timeout: Seconds ``acquire`` may wait for capacity
        connection_lifetime: Seconds after creation a connection expires
        health_check_interval: Idle seconds tolerated without a good probe
        max_retry_attempts: Reconnects before a connection is evicted
        scale_up_threshold: Utilization at or above which to grow
        scale_down_threshold: Utilization at or below which to shrink
    """

    max_connections: int = 10
    min_connections: int = 1
    connection_timeout: float = 30.0
    connection_lifetime: float = 300.0
    health_check_interval: float = 60.0
    max_retry_attempts: int = 3
    scale_up_threshold: float = 0.8
    scale_down_threshold: float = 0.3

    def __post_init__(self) -> None:
        if self.max_connections < 1:
            raise ConfigError(
                "max_connections must be >= 1", field="max_connections", value=self.max_connections
            )
        if not 0 <= self.min_connections <= self.max_connections:
            raise ConfigError(
                f"min_connections ({self.min_connections}) must be within "
                f"[0, max_connections ({self.max_connections})]",
                field="min_connections",
                value=self.min_connections,
            )
        for name in ("connection_timeout", "connection_lifetime", "health_check_interval"):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be > 0", field=name, value=getattr(self, name))
        if self.max_retry_attempts < 0:
            raise ConfigError(
                "max_retry_attempts must be >= 0",
                field="max_retry_attempts",
                value=self.max_retry_attempts,
            )
        if not 0.0 <= self.scale_down_threshold < self.scale_up_threshold <= 1.0:
            raise ConfigError(
                "need 0 <= scale_down_threshold < scale_up_threshold <= 1",
                field="scale_up_threshold",
                value=(self.scale_down_threshold, self.scale_up_threshold),
            )


class ScalingAction(str, Enum):
    SCALE_UP = "scale_up"
    SCALE_DOWN = "scale_down"
    MAINTAIN = "maintain"


class RecoveryKind(str, Enum):
    RECONNECT = "reconnect"
    EVICT = "evict"
    CLEANUP = "cleanup"


@dataclass(frozen=True)
class Lease:
    """A connection handed out by ``acquire``."""

    connection_id: str
    acquired_at: float
    wait_time: float
    success: bool = True


@dataclass(frozen=True)
class ScalingDecision:
    action: ScalingAction
    target_size: int
    utilization: float
    current_size: int


@dataclass(frozen=True)
class RecoveryAction:
    connection_id: str
    kind: RecoveryKind
    reason: str = ""


@dataclass(frozen=True)
class PoolHealthReport:
    healthy: tuple[str, ...]
    unhealthy: tuple[str, ...]
    recovery_actions: tuple[RecoveryAction, ...]

    @property
    def all_healthy(self) -> bool:
        return not self.unhealthy


@dataclass(frozen=True)
class LifecycleReport:
    expired: tuple[str, ...]
    active: tuple[str, ...]
    cleanup_actions: tuple[RecoveryAction, ...]


@dataclass(frozen=True)
class PoolStatistics:
    """Point-in-time view of pool counters."""

    service: str
    acquisitions: int
    releases: int
    created: int
    reconnects: int
    evictions: int
    expirations: int
    timeouts: int
    peak_active: int
    average_acquisition_latency: float
    current_connections: int
    active: int
    available: int
    pending_cleanup: int

    @property
    def utilization(self) -> float:
        if self.current_connections == 0:
            return 0.0
        return self.active / self.current_connections

    def to_dict(self) -> dict[str, Any]:
        return {
            "service": self.service,
            "acquisitions": self.acquisitions,
            "releases": self.releases,
            "created": self.created,
            "reconnects": self.reconnects,
            "evictions": self.evictions,
            "expirations": self.expirations,
            "timeouts": self.timeouts,
            "peak_active": self.peak_active,
            "average_acquisition_latency": self.average_acquisition_latency,
            "current_connections": self.current_connections,
            "active": self.active,
            "available": self.available,
            "pending_cleanup": self.pending_cleanup,
            "utilization": self.utilization,
        }


@dataclass
class _Connection:
    connection_id: str
    created_at: float
    last_used: float
    reconnects: int = 0
    last_probe_ok: bool | None = None
    last_probe_at: float | None = None
    flagged: RecoveryKind | None = None


@dataclass
class _Counters:
    acquisitions: int = 0
    releases: int = 0
    created: int = 0
    reconnects: int = 0
    evictions: int = 0
    expirations: int = 0
    timeouts: int = 0
    peak_active: int = 0
    total_wait: float = field(default=0.0)


class ConnectionPool:
    """Bounded set of logical connections for one service."""

    def __init__(
        self,
        service: str,
        config: PoolConfig | None = None,
        clock: Clock | None = None,
    ):
        self.service = service
        self.config = config or PoolConfig()
        self._clock = clock or default_clock()
        self._connections: dict[str, _Connection] = {}
        self._active: set[str] = set()
        # Ordered least → most recently used; acquire pops from the end.
        self._available: list[str] = []
        self._pending_cleanup: list[RecoveryAction] = []
        self._counters = _Counters()
        self._ids = itertools.count(1)
        self._condition = asyncio.Condition()
        self._loop: asyncio.AbstractEventLoop | None = None

    # ── Views ────────────────────────────────────────────────────────

    @property
    def max_connections(self) -> int:
        return self.config.max_connections

    @property
    def min_connections(self) -> int:
        return self.config.min_connections

    @property
    def current_connections(self) -> int:
        return len(self._connections)

    @property
    def active(self) -> frozenset[str]:
        return frozenset(self._active)

    @property
    def available(self) -> frozenset[str]:
        return frozenset(self._available)

    @property
    def created_at(self) -> dict[str, float]:
        return {cid: c.created_at for cid, c in self._connections.items()}

    @property
    def last_used(self) -> dict[str, float]:
        return {cid: c.last_used for cid, c in self._connections.items()}

    @property
    def free_slots(self) -> int:
        """Connections that could be handed out without waiting."""
        return len(self._available) + (self.max_connections - self.current_connections)

    # ── Internals (caller holds the condition) ───────────────────────

    def _check_invariant(self) -> None:
        available = set(self._available)
        if len(available) != len(self._available):
            raise InvariantViolation(f"pool {self.service}: duplicate idle connection ids")
        if self._active & available:
            raise InvariantViolation(
                f"pool {self.service}: ids both active and available: {sorted(self._active & available)}"
            )
        if self._active | available != set(self._connections):
            raise InvariantViolation(f"pool {self.service}: membership does not match connections")
        if len(self._connections) > self.max_connections:
            raise InvariantViolation(
                f"pool {self.service}: {len(self._connections)} connections exceeds "
                f"max {self.max_connections}"
            )

    def _create(self, now: float, reconnects: int = 0) -> str:
        connection_id = f"{self.service}-{next(self._ids)}"
        self._connections[connection_id] = _Connection(
            connection_id=connection_id,
            created_at=now,
            last_used=now,
            reconnects=reconnects,
        )
        self._counters.created += 1
        return connection_id

    def _retire(self, connection_id: str) -> None:
        self._connections.pop(connection_id, None)
        if connection_id in self._available:
            self._available.remove(connection_id)

    def _replace(self, connection_id: str, now: float) -> str:
        old = self._connections[connection_id]
        self._retire(connection_id)
        new_id = self._create(now, reconnects=old.reconnects + 1)
        self._counters.reconnects += 1
        return new_id

    def _expired(self, conn: _Connection, now: float) -> bool:
        return now - conn.created_at > self.config.connection_lifetime

    def _guard(self) -> asyncio.Condition:
        # A process-wide pool can outlive the event loop it was first used on.
        loop = asyncio.get_running_loop()
        if self._loop is not loop:
            self._loop = loop
            self._condition = asyncio.Condition()
        return self._condition

    def _has_capacity(self) -> bool:
        return bool(self._available) or len(self._connections) < self.max_connections

    def _take(self) -> str:
        for position in range(len(self._available) - 1, -1, -1):
            connection_id = self._available[position]
            if self._connections[connection_id].flagged is None:
                return self._available.pop(position)
        return self._available.pop()

    # ── Acquire / release ────────────────────────────────────────────

    async def acquire(self, timeout: float | None = None) -> Lease:
        """Hand out a connection, waiting up to ``timeout`` for capacity.

        Raises:
            PoolTimeoutError: No capacity within the timeout.
        """
        timeout = self.config.connection_timeout if timeout is None else timeout
        loop = asyncio.get_running_loop()
        started = loop.time()

        async with self._guard():
            if not self._has_capacity():
                try:
                    await asyncio.wait_for(self._condition.wait_for(self._has_capacity), timeout)
                except asyncio.TimeoutError:
                    self._counters.timeouts += 1
                    logger.warning(
                        "pool.acquire_timeout",
                        service=self.service,
                        timeout=timeout,
                        active=len(self._active),
                        max_connections=self.max_connections,
                    )
                    raise PoolTimeoutError(
                        f"No connection for '{self.service}' within {timeout}s",
                        service=self.service,
                        timeout=timeout,
                    ) from None

            now = self._clock.now()
            if self._available:
                connection_id = self._take()
            else:
                connection_id = self._create(now)
                logger.debug("pool.connection_created", service=self.service, connection_id=connection_id)

            if connection_id in self._active:
                raise InvariantViolation(
                    f"pool {self.service}: {connection_id} handed out while active"
                )
            self._active.add(connection_id)
            self._connections[connection_id].last_used = now

            wait_time = loop.time() - started
            self._counters.acquisitions += 1
            self._counters.total_wait += wait_time
            self._counters.peak_active = max(self._counters.peak_active, len(self._active))
            self._check_invariant()

        return Lease(connection_id=connection_id, acquired_at=now, wait_time=wait_time)

    async def release(self, connection_id: str, *, healthy: bool = True) -> None:
        """Return a connection.

        Expired, evicted or unhealthy connections are retired instead and a
        cleanup action is queued; a connection flagged for reconnect is
        replaced by a fresh one.

        Raises:
            InvariantViolation: ``connection_id`` is not currently active.
        """
        async with self._guard():
            if connection_id not in self._active:
                raise InvariantViolation(
                    f"pool {self.service}: release of {connection_id!r} which is not active"
                )
            now = self._clock.now()
            conn = self._connections[connection_id]
            self._active.discard(connection_id)
            conn.last_used = now
            self._counters.releases += 1

            if not healthy:
                conn.last_probe_ok = False
                conn.last_probe_at = now

            if conn.flagged is RecoveryKind.RECONNECT and healthy:
                self._available.append(self._replace(connection_id, now))
            elif conn.flagged is not None or not healthy or self._expired(conn, now):
                if not healthy:
                    reason = "unhealthy"
                elif conn.flagged is RecoveryKind.EVICT:
                    reason = "evicted"
                else:
                    reason = "expired"
                self._retire(connection_id)
                if reason == "expired":
                    self._counters.expirations += 1
                else:
                    self._counters.evictions += 1
                self._pending_cleanup.append(
                    RecoveryAction(connection_id, RecoveryKind.CLEANUP, reason)
                )
                logger.info(
                    "pool.connection_retired",
                    service=self.service,
                    connection_id=connection_id,
                    reason=reason,
                )
            else:
                self._available.append(connection_id)

            self._check_invariant()
            self._condition.notify_all()

    @asynccontextmanager
    async def lease(self, timeout: float | None = None) -> AsyncIterator[Lease]:
        """Acquire for the duration of the block, always releasing."""
        lease = await self.acquire(timeout)
        try:
            yield lease
        finally:
            await self.release(lease.connection_id)

    async def warm_up(self) -> int:
        """Create idle connections up to ``min_connections``. Returns count created."""
        async with self._guard():
            created = 0
            now = self._clock.now()
            while len(self._connections) < self.min_connections:
                self._available.insert(0, self._create(now))
                created += 1
            self._check_invariant()
            if created:
                self._condition.notify_all()
        return created

    # ── Scaling ──────────────────────────────────────────────────────

    def evaluate_scaling(self, pending_demand: int = 0) -> ScalingDecision:
        """Decide whether the provisioned size should change."""
        current = len(self._connections)
        active = len(self._active)
        if current:
            utilization = active / current
        else:
            utilization = 1.0 if pending_demand > 0 else 0.0

        def clamp(value: int) -> int:
            return max(self.min_connections, min(self.max_connections, value))

        if utilization >= self.config.scale_up_threshold and current < self.max_connections:
            action = ScalingAction.SCALE_UP
            target = clamp(max(current + 1, active + pending_demand))
        elif utilization <= self.config.scale_down_threshold and current > self.min_connections:
            action = ScalingAction.SCALE_DOWN
            target = clamp(max(active + pending_demand, self.min_connections))
        else:
            action = ScalingAction.MAINTAIN
            target = clamp(current)

        return ScalingDecision(action, target, utilization, current)

    async def apply_scaling(self, decision: ScalingDecision) -> int:
        """Move towards ``decision.target_size``; returns the net change.

        Only idle connections are retired, least recently used first.
        """
        async with self._guard():
            now = self._clock.now()
            before = len(self._connections)
            target = max(self.min_connections, min(self.max_connections, decision.target_size))
            while len(self._connections) < target:
                self._available.insert(0, self._create(now))
            while len(self._connections) > target and self._available:
                self._retire(self._available[0])
            self._check_invariant()
            self._condition.notify_all()
            delta = len(self._connections) - before

        if delta:
            logger.info(
                "pool.scaled",
                service=self.service,
                action=decision.action.value,
                delta=delta,
                size=before + delta,
            )
        return delta

    # ── Health ───────────────────────────────────────────────────────

    def record_probe(self, connection_id: str, ok: bool) -> None:
        conn = self._connections.get(connection_id)
        if conn is None:
            return
        conn.last_probe_ok = ok
        conn.last_probe_at = self._clock.now()
        if ok:
            conn.reconnects = 0

    async def probe(self, prober: Callable[[str], Awaitable[bool]]) -> dict[str, bool]:
        """Run ``prober`` against every idle connection and record results.

        A prober that raises counts as a failed probe.
        """
        results: dict[str, bool] = {}
        for connection_id in list(self._available):
            try:
                ok = bool(await prober(connection_id))
            except Exception as e:
                logger.warning(
                    "pool.probe_failed",
                    service=self.service,
                    connection_id=connection_id,
                    error=str(e),
                )
                ok = False
            self.record_probe(connection_id, ok)
            results[connection_id] = ok
        return results

    def _is_unhealthy(self, conn: _Connection, now: float) -> str | None:
        if conn.last_probe_ok is False:
            return "probe_failed"
        if conn.connection_id in self._active:
            return None
        interval = self.config.health_check_interval
        if now - conn.last_used <= interval:
            return None
        if conn.last_probe_ok and conn.last_probe_at is not None and now - conn.last_probe_at <= interval:
            return None
        return "idle_without_probe"

    def health_check(self) -> PoolHealthReport:
        """Classify connections and propose a recovery action per unhealthy one."""
        now = self._clock.now()
        healthy: list[str] = []
        unhealthy: list[str] = []
        actions: list[RecoveryAction] = []
        for connection_id, conn in self._connections.items():
            reason = self._is_unhealthy(conn, now)
            if reason is None:
                healthy.append(connection_id)
                continue
            unhealthy.append(connection_id)
            kind = (
                RecoveryKind.RECONNECT
                if conn.reconnects < self.config.max_retry_attempts
                else RecoveryKind.EVICT
            )
            actions.append(RecoveryAction(connection_id, kind, reason))

        if unhealthy:
            logger.info(
                "pool.health_check",
                service=self.service,
                healthy=len(healthy),
                unhealthy=len(unhealthy),
            )
        return PoolHealthReport(tuple(healthy), tuple(unhealthy), tuple(actions))

    async def apply_recovery(self, report: PoolHealthReport) -> None:
        """Reconnect or evict per ``report``; active ones are handled on release."""
        async with self._guard():
            now = self._clock.now()
            for action in report.recovery_actions:
                conn = self._connections.get(action.connection_id)
                if conn is None:
                    continue
                if action.connection_id in self._active:
                    conn.flagged = action.kind
                    continue
                if action.kind is RecoveryKind.RECONNECT:
                    self._available.append(self._replace(action.connection_id, now))
                else:
                    self._retire(action.connection_id)
                    self._counters.evictions += 1
                    logger.warning(
                        "pool.connection_evicted",
                        service=self.service,
                        connection_id=action.connection_id,
                        reconnects=conn.reconnects,
                    )
            self._check_invariant()
            self._condition.notify_all()

    # ── Lifecycle ────────────────────────────────────────────────────

    def evaluate_lifecycle(self) -> LifecycleReport:
        """Find expired connections and queue a cleanup action for each."""
        now = self._clock.now()
        expired: list[str] = []
        live: list[str] = []
        for connection_id, conn in self._connections.items():
            (expired if self._expired(conn, now) else live).append(connection_id)

        queued = {a.connection_id for a in self._pending_cleanup}
        actions = tuple(RecoveryAction(cid, RecoveryKind.CLEANUP, "expired") for cid in expired)
        self._pending_cleanup.extend(a for a in actions if a.connection_id not in queued)
        return LifecycleReport(tuple(expired), tuple(live), actions)

    async def run_cleanup(self) -> int:
        """Execute queued cleanup actions, then re-warm. Returns actions run."""
        async with self._guard():
            now = self._clock.now()
            pending, self._pending_cleanup = self._pending_cleanup, []
            for action in pending:
                conn = self._connections.get(action.connection_id)
                if conn is None:
                    continue
                if action.connection_id in self._active:
                    conn.flagged = RecoveryKind.CLEANUP
                    continue
                self._retire(action.connection_id)
                self._counters.expirations += 1
            while len(self._connections) < self.min_connections:
                self._available.insert(0, self._create(now))
            self._check_invariant()
            self._condition.notify_all()

        if pending:
            logger.debug("pool.cleanup", service=self.service, actions=len(pending))
        return len(pending)

    # ── Stats ────────────────────────────────────────────────────────

    def statistics(self) -> PoolStatistics:
        c = self._counters
        return PoolStatistics(
            service=self.service,
            acquisitions=c.acquisitions,
            releases=c.releases,
            created=c.created,
            reconnects=c.reconnects,
            evictions=c.evictions,
            expirations=c.expirations,
            timeouts=c.timeouts,
            peak_active=c.peak_active,
            average_acquisition_latency=(c.total_wait / c.acquisitions) if c.acquisitions else 0.0,
            current_connections=len(self._connections),
            active=len(self._active),
            available=len(self._available),
            pending_cleanup=len(self._pending_cleanup),
        )

    @property
    def stats(self) -> PoolStatistics:
        return self.statistics()

    def reset(self) -> None:
        """Drop every connection and counter (operator reset)."""
        self._connections.clear()
        self._active.clear()
        self._available.clear()
        self._pending_cleanup.clear()
        self._counters = _Counters()


__all__ = [
    "PoolConfig",
    "ScalingAction",
    "RecoveryKind",
    "Lease",
    "ScalingDecision",
    "RecoveryAction",
    "PoolHealthReport",
    "LifecycleReport",
    "PoolStatistics",
    "ConnectionPool",
]

"""Circuit breaker composed into the concurrency controller.

Prevents a struggling backend from being hammered by failing fast once
failures pile up.

States:
    CLOSED: Normal operation, dispatch passes through
    OPEN: Failing fast, new dispatch suspended
    HALF_OPEN: Admitting a bounded number of probes to test recovery

The transitions are pure functions over an immutable
``CircuitBreakerState`` so the controller can fold them into its own
state update. ``CircuitBreaker`` wraps them with a lock for standalone use.

Example:
    >>> config = CircuitBreakerConfig(failure_threshold=5, recovery_timeout=30.0)
    >>> state = CircuitBreakerState()
    >>> for _ in range(5):
    ...     state = on_failure(state, config, now=1.0)
    >>> state.state
    <CircuitState.OPEN: 'open'>
    >>> state, allowed = allow(state, config, now=31.0)
    >>> state.state, allowed
    (<CircuitState.HALF_OPEN: 'half_open'>, True)
"""

from __future__ import annotations

import threading
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, TypeVar

from adaptive_engine.core.clock import Clock, default_clock
from adaptive_engine.core.errors import (
    CircuitOpenError,
    ConfigError,
    OutcomeKind,
    classify_outcome,
)
from adaptive_engine.core.logging import get_logger

T = TypeVar("T")

logger = get_logger(__name__)


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Rejecting dispatch
    HALF_OPEN = "half_open"  # Testing recovery


class ImpactAction(str, Enum):
    """What the breaker means for new dispatch."""

    PROCEED = "proceed"
    PROBE = "probe"
    SUSPEND = "suspend"


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """Breaker thresholds.

    Attributes:
        failure_threshold: Consecutive failures before opening
        recovery_timeout: Seconds to stay open before probing
        half_open_test_requests: Probes admitted (and needed) in half-open
    """

    failure_threshold: int = 5
    recovery_timeout: float = 30.0
    half_open_test_requests: int = 1

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            raise ConfigError(
                "failure_threshold must be >= 1",
                field="failure_threshold",
                value=self.failure_threshold,
            )
        if self.recovery_timeout < 0:
            raise ConfigError(
                "recovery_timeout must be >= 0",
                field="recovery_timeout",
                value=self.recovery_timeout,
            )
        if self.half_open_test_requests < 1:
            raise ConfigError(
                "half_open_test_requests must be >= 1",
                field="half_open_test_requests",
                value=self.half_open_test_requests,
            )


@dataclass(frozen=True)
class CircuitBreakerState:
    """Snapshot of one service's breaker."""

    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    opened_at: float | None = None
    probes_admitted: int = 0
    probe_successes: int = 0

    @property
    def is_closed(self) -> bool:
        return self.state is CircuitState.CLOSED

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "failure_count": self.failure_count,
            "opened_at": self.opened_at,
            "probes_admitted": self.probes_admitted,
            "probe_successes": self.probe_successes,
        }


@dataclass(frozen=True)
class ConcurrencyImpact:
    """Breaker verdict for the dispatch gate."""

    action: ImpactAction
    allowed_concurrency: int


def _open(state: CircuitBreakerState, now: float) -> CircuitBreakerState:
    return CircuitBreakerState(
        state=CircuitState.OPEN,
        failure_count=state.failure_count,
        opened_at=now,
    )


def refresh(
    state: CircuitBreakerState, config: CircuitBreakerConfig, now: float
) -> CircuitBreakerState:
    """Move OPEN → HALF_OPEN once ``recovery_timeout`` has elapsed."""
    if state.state is CircuitState.OPEN and state.opened_at is not None:
        if now - state.opened_at >= config.recovery_timeout:
            return replace(
                state, state=CircuitState.HALF_OPEN, probes_admitted=0, probe_successes=0
            )
    return state


def retry_after(
    state: CircuitBreakerState, config: CircuitBreakerConfig, now: float
) -> float | None:
    """Seconds until an open breaker starts probing, ``None`` if not open."""
    if state.state is not CircuitState.OPEN or state.opened_at is None:
        return None
    return max(0.0, state.opened_at + config.recovery_timeout - now)


def allow(
    state: CircuitBreakerState, config: CircuitBreakerConfig, now: float
) -> tuple[CircuitBreakerState, bool]:
    """Admit one dispatch.

    Returns the new state and whether the call may proceed. In half-open
    the admitted call is a probe and consumes one probe slot.
    """
    state = refresh(state, config, now)

    if state.state is CircuitState.CLOSED:
        return state, True

    if state.state is CircuitState.OPEN:
        return state, False

    if state.probes_admitted < config.half_open_test_requests:
        return replace(state, probes_admitted=state.probes_admitted + 1), True
    return state, False


def ensure_allowed(
    state: CircuitBreakerState,
    config: CircuitBreakerConfig,
    now: float,
    *,
    service: str | None = None,
) -> CircuitBreakerState:
    """Like ``allow`` but raises ``CircuitOpenError`` on refusal."""
    new_state, allowed = allow(state, config, now)
    if not allowed:
        raise CircuitOpenError(
            f"Circuit for '{service or 'service'}' is {new_state.state.value}, rejecting request",
            service=service,
            retry_after=retry_after(new_state, config, now),
        )
    return new_state


def on_success(
    state: CircuitBreakerState, config: CircuitBreakerConfig, now: float
) -> CircuitBreakerState:
    """Record a successful call."""
    if state.state is CircuitState.HALF_OPEN:
        successes = state.probe_successes + 1
        if successes >= config.half_open_test_requests:
            return CircuitBreakerState()
        return replace(state, probe_successes=successes)

    if state.state is CircuitState.CLOSED:
        return replace(state, failure_count=0)

    # Late success from a call dispatched before the breaker opened.
    return state


def on_failure(
    state: CircuitBreakerState, config: CircuitBreakerConfig, now: float
) -> CircuitBreakerState:
    """Record a failed call."""
    failures = state.failure_count + 1

    if state.state is CircuitState.CLOSED:
        state = replace(state, failure_count=failures)
        if failures >= config.failure_threshold:
            return _open(state, now)
        return state

    if state.state is CircuitState.HALF_OPEN:
        # Any probe failure reopens and restarts the recovery timer.
        return _open(replace(state, failure_count=failures), now)

    return replace(state, failure_count=failures)


def on_neutral(
    state: CircuitBreakerState, config: CircuitBreakerConfig, now: float
) -> CircuitBreakerState:
    """Record an outcome that says nothing about backend health.

    Validation and auth rejections leave the failure streak alone. A probe
    that ends this way still proved the backend answered.
    """
    if state.state is CircuitState.HALF_OPEN:
        return on_success(state, config, now)
    return state


def release_probe(state: CircuitBreakerState) -> CircuitBreakerState:
    """Hand back a half-open probe slot for a call that was never dispatched."""
    if state.state is CircuitState.HALF_OPEN and state.probes_admitted > 0:
        return replace(state, probes_admitted=state.probes_admitted - 1)
    return state


def record(
    state: CircuitBreakerState,
    config: CircuitBreakerConfig,
    now: float,
    outcome: OutcomeKind,
) -> CircuitBreakerState:
    """Fold one tagged call outcome into the breaker."""
    if outcome is OutcomeKind.SUCCESS:
        return on_success(state, config, now)
    if outcome.is_failure:
        return on_failure(state, config, now)
    if outcome is OutcomeKind.REJECTED:
        return release_probe(state)
    return on_neutral(state, config, now)


def impact(
    state: CircuitBreakerState,
    config: CircuitBreakerConfig,
    now: float,
    current_concurrency: int,
) -> ConcurrencyImpact:
    """How many new dispatches the breaker allows right now."""
    state = refresh(state, config, now)
    if state.state is CircuitState.CLOSED:
        return ConcurrencyImpact(ImpactAction.PROCEED, current_concurrency)
    if state.state is CircuitState.OPEN:
        return ConcurrencyImpact(ImpactAction.SUSPEND, 0)
    remaining = max(0, config.half_open_test_requests - state.probes_admitted)
    return ConcurrencyImpact(ImpactAction.PROBE, min(current_concurrency, remaining))


class CircuitBreaker:
    """Thread-safe stateful wrapper over the pure transitions.

    Example:
        breaker = CircuitBreaker("sqs", CircuitBreakerConfig(failure_threshold=3))
        result = await breaker.call_async(client.receive_message, queue_url)
    """

    def __init__(
        self,
        name: str = "default",
        config: CircuitBreakerConfig | None = None,
        clock: Clock | None = None,
    ):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock or default_clock()
        self._state = CircuitBreakerState()
        self._lock = threading.RLock()

    @property
    def snapshot(self) -> CircuitBreakerState:
        with self._lock:
            self._state = refresh(self._state, self.config, self._clock.now())
            return self._state

    @property
    def state(self) -> CircuitState:
        return self.snapshot.state

    def _transition(self, new_state: CircuitBreakerState) -> None:
        if new_state.state is not self._state.state:
            logger.info(
                "circuit.state_change",
                circuit=self.name,
                from_state=self._state.state.value,
                to_state=new_state.state.value,
                failure_count=new_state.failure_count,
            )
        self._state = new_state

    def allow_request(self) -> bool:
        with self._lock:
            new_state, allowed = allow(self._state, self.config, self._clock.now())
            self._transition(new_state)
            return allowed

    def record_success(self) -> None:
        with self._lock:
            self._transition(on_success(self._state, self.config, self._clock.now()))

    def record_failure(self) -> None:
        with self._lock:
            self._transition(on_failure(self._state, self.config, self._clock.now()))

    def record_outcome(self, outcome: OutcomeKind) -> None:
        with self._lock:
            self._transition(record(self._state, self.config, self._clock.now(), outcome))

    def reset(self) -> None:
        """Reset circuit to closed state."""
        with self._lock:
            self._transition(CircuitBreakerState())

    async def call_async(
        self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any
    ) -> T:
        """Execute an async function through the circuit breaker.

        Raises:
            CircuitOpenError: If the circuit refuses the call
        """
        if not self.allow_request():
            raise CircuitOpenError(
                f"Circuit '{self.name}' is open, rejecting request",
                service=self.name,
                retry_after=retry_after(self._state, self.config, self._clock.now()),
            )

        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            self.record_outcome(classify_outcome(e))
            raise
        self.record_success()
        return result


__all__ = [
    "CircuitState",
    "ImpactAction",
    "CircuitBreakerConfig",
    "CircuitBreakerState",
    "ConcurrencyImpact",
    "refresh",
    "retry_after",
    "allow",
    "ensure_allowed",
    "on_success",
    "on_failure",
    "on_neutral",
    "release_probe",
    "record",
    "impact",
    "CircuitBreaker",
]

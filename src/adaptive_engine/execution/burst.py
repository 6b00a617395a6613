"""Burst Handling — temporary, decaying concurrency for demand spikes.

WHY
───
A steady-state controller that moves one unit per cooldown is too slow
for a sudden flood of work (a fan-out over every region, a backlog
flush).  When the arrival rate jumps well above its baseline the
controller grants a one-off ``burst_concurrency`` and, once the spike is
over, walks the ceiling back down along an explicit ``RecoveryPlan``.

ARCHITECTURE
────────────
::

    ArrivalRateTracker        ─ sliding-window arrivals/sec (thread-safe)
    BurstConfig               ─ multiplier, factor, decay schedule
    BurstStatus (frozen)      ─ idle → active → recovering → idle
    RecoveryPlan (frozen)     ─ linear steps, ``value_at(now)``

    detect_burst(rate, baseline)   rate > baseline × rate_multiplier
    update_baseline(...)           EMA, frozen while a burst is active
    plan_recovery(...)             decay_steps spaced decay_interval apart

The controller owns the policy decisions (never during emergency cooldown,
never while the circuit is not closed); this module is the arithmetic.

Example::

    tracker = ArrivalRateTracker(time_window=10.0)
    tracker.record(50)
    tracker.rate()          # 5.0 arrivals/sec
"""

from __future__ import annotations

import math
import threading
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from adaptive_engine.core.clock import Clock, default_clock
from adaptive_engine.core.errors import ConfigError


@dataclass(frozen=True)
class BurstConfig:
    """Burst detection and recovery tuning.

    Attributes:
        rate_multiplier: Arrival rate over baseline that counts as a burst
        time_window: Seconds of arrivals the rate is measured over
        burst_factor: Multiplier applied to the pre-burst concurrency
        decay_steps: Number of linear steps back to the pre-burst value
        decay_interval: Seconds between decay steps
        baseline_alpha: EMA smoothing factor for the baseline rate
    """

    rate_multiplier: float = 2.0
    time_window: float = 10.0
    burst_factor: float = 1.5
    decay_steps: int = 4
    decay_interval: float = 5.0
    baseline_alpha: float = 0.2

    def __post_init__(self) -> None:
        if self.rate_multiplier <= 1.0:
            raise ConfigError(
                "rate_multiplier must be > 1", field="rate_multiplier", value=self.rate_multiplier
            )
        if self.time_window <= 0:
            raise ConfigError("time_window must be > 0", field="time_window", value=self.time_window)
        if self.burst_factor < 1.0:
            raise ConfigError(
                "burst_factor must be >= 1", field="burst_factor", value=self.burst_factor
            )
        if self.decay_steps < 1:
            raise ConfigError("decay_steps must be >= 1", field="decay_steps", value=self.decay_steps)
        if self.decay_interval < 0:
            raise ConfigError(
                "decay_interval must be >= 0", field="decay_interval", value=self.decay_interval
            )
        if not 0.0 < self.baseline_alpha <= 1.0:
            raise ConfigError(
                "baseline_alpha must be in (0, 1]", field="baseline_alpha", value=self.baseline_alpha
            )


class BurstPhase(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"
    RECOVERING = "recovering"


@dataclass(frozen=True)
class RecoveryPlan:
    """Linear decay from ``from_concurrency`` back to ``to_concurrency``.

    ``steps`` holds ``(not_before, value)`` pairs in time order; the last
    value is always ``to_concurrency``.
    """

    from_concurrency: int
    to_concurrency: int
    steps: tuple[tuple[float, int], ...]

    @property
    def completes_at(self) -> float:
        return self.steps[-1][0] if self.steps else 0.0

    def value_at(self, now: float) -> int:
        value = self.from_concurrency
        for not_before, step_value in self.steps:
            if now >= not_before:
                value = step_value
            else:
                break
        return value

    def is_complete(self, now: float) -> bool:
        return now >= self.completes_at


@dataclass(frozen=True)
class BurstStatus:
    """Burst bookkeeping carried on ``ConcurrencyState``."""

    phase: BurstPhase = BurstPhase.IDLE
    pre_burst_concurrency: int | None = None
    burst_concurrency: int | None = None
    started_at: float | None = None
    recovery_plan: RecoveryPlan | None = None

    @property
    def active(self) -> bool:
        return self.phase is BurstPhase.ACTIVE

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase.value,
            "pre_burst_concurrency": self.pre_burst_concurrency,
            "burst_concurrency": self.burst_concurrency,
            "started_at": self.started_at,
            "recovery_completes_at": (
                self.recovery_plan.completes_at if self.recovery_plan else None
            ),
        }


def detect_burst(rate: float | None, baseline: float | None, config: BurstConfig) -> bool:
    """True when ``rate`` exceeds ``baseline × rate_multiplier``."""
    if rate is None or baseline is None or baseline <= 0:
        return False
    return rate > baseline * config.rate_multiplier


def update_baseline(
    baseline: float | None, rate: float | None, config: BurstConfig
) -> float | None:
    """Exponential moving average of the arrival rate."""
    if rate is None:
        return baseline
    if baseline is None:
        return rate
    alpha = config.baseline_alpha
    return alpha * rate + (1 - alpha) * baseline


def burst_concurrency(pre_burst: int, max_concurrency: int, config: BurstConfig) -> int:
    return min(max_concurrency, math.ceil(pre_burst * config.burst_factor))


def plan_recovery(
    from_concurrency: int, to_concurrency: int, now: float, config: BurstConfig
) -> RecoveryPlan:
    """Build the decay schedule; the first step lands one interval from now."""
    span = from_concurrency - to_concurrency
    steps: list[tuple[float, int]] = []
    for i in range(1, config.decay_steps + 1):
        value = to_concurrency + math.floor(span * (config.decay_steps - i) / config.decay_steps)
        steps.append((now + i * config.decay_interval, value))
    return RecoveryPlan(from_concurrency, to_concurrency, tuple(steps))


@dataclass
class ArrivalRateTracker:
    """Counts request arrivals in a sliding window.

    Attributes:
        time_window: Window size in seconds
    """

    time_window: float = 10.0
    clock: Clock = field(default_factory=default_clock)

    _events: deque[tuple[float, int]] = field(default_factory=deque, init=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False)

    def _cleanup(self, now: float) -> None:
        """Remove arrivals outside the window."""
        cutoff = now - self.time_window
        while self._events and self._events[0][0] <= cutoff:
            self._events.popleft()

    def record(self, count: int = 1) -> None:
        if count <= 0:
            return
        with self._lock:
            now = self.clock.now()
            self._cleanup(now)
            self._events.append((now, count))

    def count(self) -> int:
        with self._lock:
            self._cleanup(self.clock.now())
            return sum(n for _, n in self._events)

    def rate(self) -> float:
        """Arrivals per second over the window."""
        return self.count() / self.time_window

    def reset(self) -> None:
        with self._lock:
            self._events.clear()


__all__ = [
    "BurstConfig",
    "BurstPhase",
    "BurstStatus",
    "RecoveryPlan",
    "ArrivalRateTracker",
    "detect_burst",
    "update_baseline",
    "burst_concurrency",
    "plan_recovery",
]

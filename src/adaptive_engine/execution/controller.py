"""Concurrency Controller — feedback loop over the in-flight ceiling.

WHY
───
A fixed worker count is either too timid for a healthy backend or too
aggressive for a throttling one.  The controller watches what each
micro-batch actually achieved (latency, error rate, throughput) and moves
the ceiling: fast and hard when errors spike, slowly and one unit at a
time otherwise.

ARCHITECTURE
────────────
::

    update(state, sample) ──► new ConcurrencyState      (pure)
      1. append to ring buffer (measurement_window / sampling_interval)
      2. analyze_trends over the last trend_window samples
      3. emergency   error_rate >= error_threshold
                     −max(min_emergency_reduction, ceil(current × severity))
                     cooldown_until = now + cooldown_period
                     cancels any burst
      4. steady      only once the cooldown has elapsed
                     latency growth > margin            → −1
                     plateau ∧ errors increasing        → −1
                     throughput up ∧ errors not up      → +1
      5. burst       grant / hold / decay (see burst.py), after the cooldown
         resources   ceiling below the uncapped target under CPU / memory / fd
                     pressure; tightens at most once per cooldown
         clamp       [min_concurrency, max_concurrency]
      6. Adjustment recorded whenever the value changes

    admit(state)               circuit admission (probe in half-open)
    record_outcome(state, k)   circuit transition for one call outcome
    concurrency_impact(state)  proceed | probe | suspend

State is never mutated: every call returns a new ``ConcurrencyState``.
The orchestrator is the single writer that stores it back.

Severity:
    error_rate / error_threshold >= severity_high   → high   (×0.5)
                                 >= severity_medium → medium (×0.3)
                                 otherwise          → low    (×0.2)

Example::

    controller = ConcurrencyController(ConcurrencyConfig(error_threshold=0.2))
    state = controller.initial_state()          # current = 10
    state = controller.update(state, Sample(0.0, 10, 0.4, 0.25, 20.0))
    state.current_concurrency                   # 7
    state.last_change.reason                    # error_threshold_exceeded
"""

from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from adaptive_engine.core.clock import Clock, default_clock
from adaptive_engine.core.errors import ConfigError, InvariantViolation, OutcomeKind
from adaptive_engine.core.logging import get_logger

from . import circuit_breaker as cb
from .burst import (
    BurstConfig,
    BurstPhase,
    BurstStatus,
    burst_concurrency,
    detect_burst,
    plan_recovery,
    update_baseline,
)
from .circuit_breaker import (
    CircuitBreakerConfig,
    CircuitBreakerState,
    CircuitState,
    ConcurrencyImpact,
)
from .models import Adjustment, AdjustmentReason, Sample
from .profiles import ServiceProfile
from .resources import ResourceLimits, ResourceSnapshot, apply_resource_cap
from .trends import TrendAnalysis, TrendDirection, analyze_trends

logger = get_logger(__name__)

DEFAULT_INITIAL_CONCURRENCY = 10
ADJUSTMENT_HISTORY = 100


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True)
class ConcurrencyConfig:
    """Controller bounds and tuning.

    The trend constants (``trend_window``, ``throughput_noise``,
    ``error_noise``, ``knee_ratio``) are deliberately exposed; the right
    values depend on how noisy a backend is.
    """

    min_concurrency: int = 1
    max_concurrency: int = 50
    initial_concurrency: int | None = None
    error_threshold: float = 0.1
    cooldown_period: float = 10.0
    measurement_window: float = 60.0
    sampling_interval: float = 5.0
    trend_window: int = 3
    throughput_noise: float = 0.1
    error_noise: float = 0.01
    latency_margin: float = 0.2
    severity_medium: float = 1.2
    severity_high: float = 1.5
    severity_factors: tuple[float, float, float] = (0.2, 0.3, 0.5)
    min_emergency_reduction: int = 3
    knee_ratio: float = 0.9

    def __post_init__(self) -> None:
        if self.min_concurrency < 1:
            raise ConfigError(
                "min_concurrency must be >= 1", field="min_concurrency", value=self.min_concurrency
            )
        if self.max_concurrency < self.min_concurrency:
            raise ConfigError(
                f"max_concurrency ({self.max_concurrency}) must be >= "
                f"min_concurrency ({self.min_concurrency})",
                field="max_concurrency",
                value=self.max_concurrency,
            )
        if self.initial_concurrency is not None and not (
            self.min_concurrency <= self.initial_concurrency <= self.max_concurrency
        ):
            raise ConfigError(
                "initial_concurrency must lie within [min_concurrency, max_concurrency]",
                field="initial_concurrency",
                value=self.initial_concurrency,
            )
        if not 0.0 < self.error_threshold <= 1.0:
            raise ConfigError(
                "error_threshold must be in (0, 1]", field="error_threshold", value=self.error_threshold
            )
        if self.cooldown_period < 0:
            raise ConfigError(
                "cooldown_period must be >= 0", field="cooldown_period", value=self.cooldown_period
            )
        if self.sampling_interval <= 0 or self.measurement_window < self.sampling_interval:
            raise ConfigError(
                "need 0 < sampling_interval <= measurement_window",
                field="sampling_interval",
                value=self.sampling_interval,
            )
        if self.trend_window < 2:
            raise ConfigError("trend_window must be >= 2", field="trend_window", value=self.trend_window)
        if self.throughput_noise < 0 or self.error_noise < 0:
            raise ConfigError("noise thresholds must be >= 0", field="throughput_noise")
        if not 1.0 <= self.severity_medium <= self.severity_high:
            raise ConfigError(
                "need 1 <= severity_medium <= severity_high",
                field="severity_medium",
                value=self.severity_medium,
            )
        if len(self.severity_factors) != 3 or not all(0.0 < f <= 1.0 for f in self.severity_factors):
            raise ConfigError(
                "severity_factors must be three values in (0, 1]",
                field="severity_factors",
                value=self.severity_factors,
            )
        if self.min_emergency_reduction < 1:
            raise ConfigError(
                "min_emergency_reduction must be >= 1",
                field="min_emergency_reduction",
                value=self.min_emergency_reduction,
            )
        if not 0.0 < self.knee_ratio <= 1.0:
            raise ConfigError("knee_ratio must be in (0, 1]", field="knee_ratio", value=self.knee_ratio)

    @property
    def window_size(self) -> int:
        """Ring buffer capacity in samples."""
        return max(self.trend_window, math.ceil(self.measurement_window / self.sampling_interval))

    @property
    def start_concurrency(self) -> int:
        if self.initial_concurrency is not None:
            return self.initial_concurrency
        return max(self.min_concurrency, min(self.max_concurrency, DEFAULT_INITIAL_CONCURRENCY))

    @classmethod
    def for_service(cls, profile: ServiceProfile, **overrides: Any) -> ConcurrencyConfig:
        """Seed bounds and thresholds from a service profile."""
        ceiling = profile.effective_ceiling
        strategy = profile.scaling_strategy
        values: dict[str, Any] = {
            "min_concurrency": 1,
            "max_concurrency": ceiling,
            "initial_concurrency": max(1, min(ceiling, math.ceil(ceiling * strategy.initial_fraction))),
            "error_threshold": profile.error_threshold,
            "cooldown_period": 10.0 * strategy.cooldown_multiplier,
            "latency_margin": 0.2 / profile.latency_sensitivity,
        }
        values.update(overrides)
        return cls(**values)


@dataclass(frozen=True)
class ConcurrencyState:
    """Immutable controller state for one service.

    Invariant: ``min_concurrency <= current_concurrency <= max_concurrency``;
    constructing a state that breaks it raises ``InvariantViolation``.
    ``last_change`` is the adjustment made by the update that produced
    this state, if any.
    ``pressure_ceiling`` is the resource-pressure cap in force, if any.
    """

    current_concurrency: int
    min_concurrency: int
    max_concurrency: int
    window_size: int
    metrics_window: tuple[Sample, ...] = ()
    last_adjustment: float | None = None
    cooldown_until: float | None = None
    circuit: CircuitBreakerState = field(default_factory=CircuitBreakerState)
    adjustments: tuple[Adjustment, ...] = ()
    last_change: Adjustment | None = None
    burst: BurstStatus = field(default_factory=BurstStatus)
    baseline_rate: float | None = None
    last_analysis: TrendAnalysis | None = None
    limiting_resources: tuple[str, ...] = ()
    pressure_ceiling: int | None = None

    def __post_init__(self) -> None:
        if not self.min_concurrency <= self.current_concurrency <= self.max_concurrency:
            raise InvariantViolation(
                f"concurrency {self.current_concurrency} outside "
                f"[{self.min_concurrency}, {self.max_concurrency}]"
            )
        if len(self.metrics_window) > self.window_size:
            raise InvariantViolation(
                f"metrics window holds {len(self.metrics_window)} samples, capacity {self.window_size}"
            )

    def in_cooldown(self, now: float) -> bool:
        return self.cooldown_until is not None and now < self.cooldown_until

    def to_dict(self) -> dict[str, Any]:
        return {
            "current_concurrency": self.current_concurrency,
            "min_concurrency": self.min_concurrency,
            "max_concurrency": self.max_concurrency,
            "samples": len(self.metrics_window),
            "last_adjustment": self.last_adjustment,
            "cooldown_until": self.cooldown_until,
            "circuit": self.circuit.to_dict(),
            "burst": self.burst.to_dict(),
            "baseline_rate": self.baseline_rate,
            "limiting_resources": list(self.limiting_resources),
            "pressure_ceiling": self.pressure_ceiling,
            "last_analysis": self.last_analysis.to_dict() if self.last_analysis else None,
        }


@dataclass(frozen=True)
class Admission:
    """Circuit verdict for one dispatch."""

    allowed: bool
    probe: bool
    circuit_state: CircuitState
    retry_after: float | None = None


class ConcurrencyController:
    """Pure decision logic for one service's concurrency ceiling."""

    def __init__(
        self,
        config: ConcurrencyConfig | None = None,
        *,
        circuit: CircuitBreakerConfig | None = None,
        burst: BurstConfig | None = None,
        resource_limits: ResourceLimits | None = None,
        clock: Clock | None = None,
        service: str | None = None,
    ):
        self.config = config or ConcurrencyConfig()
        self.circuit_config = circuit or CircuitBreakerConfig()
        self.burst_config = burst or BurstConfig()
        self.resource_limits = resource_limits or ResourceLimits()
        self.service = service
        self._clock = clock or default_clock()

    @property
    def clock(self) -> Clock:
        return self._clock

    def _now(self, now: float | None) -> float:
        return self._clock.now() if now is None else now

    def initial_state(self) -> ConcurrencyState:
        return ConcurrencyState(
            current_concurrency=self.config.start_concurrency,
            min_concurrency=self.config.min_concurrency,
            max_concurrency=self.config.max_concurrency,
            window_size=self.config.window_size,
        )

    def clamp(self, value: int) -> int:
        return max(self.config.min_concurrency, min(self.config.max_concurrency, value))

    # ── Analysis ─────────────────────────────────────────────────────

    def analyze_trends(
        self, samples: Sequence[Sample], current: int | None = None
    ) -> TrendAnalysis:
        """Trend classification with the recommendation clamped to bounds."""
        analysis = analyze_trends(
            samples,
            trend_window=self.config.trend_window,
            throughput_noise=self.config.throughput_noise,
            error_noise=self.config.error_noise,
            knee_ratio=self.config.knee_ratio,
            current=current,
        )
        if analysis.recommended_concurrency is None:
            return analysis
        return replace(
            analysis, recommended_concurrency=self.clamp(analysis.recommended_concurrency)
        )

    def severity(self, error_rate: float) -> tuple[Severity, float]:
        """Severity bucket and reduction factor for an emergency."""
        low, medium, high = self.config.severity_factors
        ratio = error_rate / self.config.error_threshold
        if ratio >= self.config.severity_high:
            return Severity.HIGH, high
        if ratio >= self.config.severity_medium:
            return Severity.MEDIUM, medium
        return Severity.LOW, low

    def emergency_reduction(self, current: int, error_rate: float) -> int:
        _, factor = self.severity(error_rate)
        return max(self.config.min_emergency_reduction, math.ceil(current * factor))

    def _steady_state_allowed(self, state: ConcurrencyState, now: float) -> bool:
        if state.in_cooldown(now):
            return False
        if state.last_adjustment is None:
            return True
        return now - state.last_adjustment >= self.config.cooldown_period

    # ── Feedback step ────────────────────────────────────────────────

    def update(
        self,
        state: ConcurrencyState,
        sample: Sample,
        *,
        now: float | None = None,
        resources: ResourceSnapshot | None = None,
        request_rate: float | None = None,
    ) -> ConcurrencyState:
        """Fold one sample into the state and return the successor.

        Args:
            state: Current state (not modified)
            sample: Observation for the micro-batch just completed
            now: Decision time; defaults to the injected clock
            resources: Optional host snapshot for resource capping
            request_rate: Current arrival rate for burst detection
        """
        now = self._now(now)
        config = self.config

        window = (state.metrics_window + (sample,))[-state.window_size :]
        analysis = self.analyze_trends(window, current=state.current_concurrency)

        current = state.current_concurrency
        target = current
        reason: AdjustmentReason | None = None
        cooldown_until = state.cooldown_until
        burst = state.burst
        baseline = state.baseline_rate
        emergency = sample.error_rate >= config.error_threshold

        if emergency:
            severity, _ = self.severity(sample.error_rate)
            target = current - self.emergency_reduction(current, sample.error_rate)
            reason = AdjustmentReason.ERROR_THRESHOLD_EXCEEDED
            cooldown_until = now + config.cooldown_period
            if burst.phase is not BurstPhase.IDLE:
                burst = BurstStatus()
            logger.warning(
                "controller.emergency_reduction",
                service=self.service,
                error_rate=sample.error_rate,
                threshold=config.error_threshold,
                severity=severity.value,
                from_concurrency=current,
                cooldown_until=cooldown_until,
            )
        elif self._steady_state_allowed(state, now):
            if analysis.latency_growth > config.latency_margin:
                target, reason = current - 1, AdjustmentReason.LATENCY_DEGRADATION
            elif (
                analysis.throughput_trend is TrendDirection.PLATEAUING
                and analysis.error_trend is TrendDirection.INCREASING
            ):
                target, reason = current - 1, AdjustmentReason.THROUGHPUT_PLATEAU
            elif (
                analysis.throughput_trend is TrendDirection.INCREASING
                and analysis.error_trend is not TrendDirection.INCREASING
            ):
                target, reason = current + 1, AdjustmentReason.THROUGHPUT_GROWTH

        if not emergency:
            target, reason, burst, baseline = self._apply_burst(
                state, now, target, reason, burst, baseline, request_rate
            )

        # The ceiling is taken from the uncapped target and tightens at most
        # once per cooldown while the pressure lasts.
        ceiling = state.pressure_ceiling
        capped, limiting = apply_resource_cap(
            target if ceiling is None else min(target, ceiling),
            resources,
            self.resource_limits,
            config.min_concurrency,
        )
        if not limiting:
            ceiling = None
        elif emergency or self._steady_state_allowed(state, now):
            ceiling = capped
        if ceiling is not None and ceiling < target:
            target = ceiling
            if not emergency:
                reason = AdjustmentReason.RESOURCE_PRESSURE
            logger.info(
                "controller.resource_cap",
                service=self.service,
                limiting=list(limiting),
                capped_to=ceiling,
            )

        target = self.clamp(target)

        change: Adjustment | None = None
        last_adjustment = state.last_adjustment
        adjustments = state.adjustments
        if target != current and reason is not None:
            change = Adjustment(current, target, reason, now, self.service)
            last_adjustment = now
            adjustments = (adjustments + (change,))[-ADJUSTMENT_HISTORY:]
            logger.info(
                "controller.adjusted",
                service=self.service,
                from_concurrency=current,
                to_concurrency=target,
                reason=reason.value,
            )

        return replace(
            state,
            current_concurrency=target,
            metrics_window=window,
            last_adjustment=last_adjustment,
            cooldown_until=cooldown_until,
            adjustments=adjustments,
            last_change=change,
            burst=burst,
            baseline_rate=baseline,
            last_analysis=analysis,
            limiting_resources=limiting,
            pressure_ceiling=ceiling,
        )

    def _apply_burst(
        self,
        state: ConcurrencyState,
        now: float,
        target: int,
        reason: AdjustmentReason | None,
        burst: BurstStatus,
        baseline: float | None,
        request_rate: float | None,
    ) -> tuple[int, AdjustmentReason | None, BurstStatus, float | None]:
        bc = self.burst_config
        current = state.current_concurrency
        circuit = cb.refresh(state.circuit, self.circuit_config, now)
        circuit_closed = circuit.state is CircuitState.CLOSED
        # Grants and decay steps only land once the cooldown has elapsed.
        allowed = self._steady_state_allowed(state, now)

        if burst.phase is BurstPhase.IDLE:
            if circuit_closed and allowed and detect_burst(request_rate, baseline, bc):
                granted = burst_concurrency(target, self.config.max_concurrency, bc)
                if granted > target:
                    burst = BurstStatus(
                        phase=BurstPhase.ACTIVE,
                        pre_burst_concurrency=target,
                        burst_concurrency=granted,
                        started_at=now,
                    )
                    logger.info(
                        "controller.burst_detected",
                        service=self.service,
                        request_rate=request_rate,
                        baseline_rate=baseline,
                        burst_concurrency=granted,
                    )
                    return granted, AdjustmentReason.BURST, burst, baseline
            return target, reason, burst, update_baseline(baseline, request_rate, bc)

        # Steady-state increases are suspended while a burst runs or decays.
        if target > current:
            target, reason = current, None

        pre_burst = burst.pre_burst_concurrency or self.config.min_concurrency

        if burst.phase is BurstPhase.ACTIVE:
            if circuit_closed and detect_burst(request_rate, baseline, bc):
                return target, reason, burst, baseline
            if target <= pre_burst:
                return target, reason, BurstStatus(), baseline
            plan = plan_recovery(target, pre_burst, now, bc)
            logger.info(
                "controller.burst_subsided",
                service=self.service,
                from_concurrency=target,
                to_concurrency=pre_burst,
                completes_at=plan.completes_at,
            )
            burst = replace(burst, phase=BurstPhase.RECOVERING, recovery_plan=plan)
            return target, reason, burst, baseline

        plan = burst.recovery_plan
        if plan is not None and allowed:
            planned = plan.value_at(now)
            if planned < target:
                target, reason = planned, AdjustmentReason.RECOVERY
        if plan is None or target <= pre_burst or (allowed and plan.is_complete(now)):
            burst = BurstStatus()
        return target, reason, burst, update_baseline(baseline, request_rate, bc)

    # ── Circuit breaker ──────────────────────────────────────────────

    def _with_circuit(
        self, state: ConcurrencyState, circuit: CircuitBreakerState
    ) -> ConcurrencyState:
        if circuit is state.circuit:
            return state
        if circuit.state is not state.circuit.state:
            log = logger.warning if circuit.state is CircuitState.OPEN else logger.info
            log(
                "circuit.state_change",
                service=self.service,
                from_state=state.circuit.state.value,
                to_state=circuit.state.value,
                failure_count=circuit.failure_count,
            )
        return replace(state, circuit=circuit)

    def admit(
        self, state: ConcurrencyState, now: float | None = None
    ) -> tuple[ConcurrencyState, Admission]:
        """Ask the circuit breaker whether one new dispatch may proceed."""
        now = self._now(now)
        circuit, allowed = cb.allow(state.circuit, self.circuit_config, now)
        admission = Admission(
            allowed=allowed,
            probe=allowed and circuit.state is CircuitState.HALF_OPEN,
            circuit_state=circuit.state,
            retry_after=cb.retry_after(circuit, self.circuit_config, now),
        )
        return self._with_circuit(state, circuit), admission

    def record_outcome(
        self, state: ConcurrencyState, outcome: OutcomeKind, now: float | None = None
    ) -> ConcurrencyState:
        """Feed one call outcome to the circuit breaker."""
        now = self._now(now)
        circuit = cb.record(state.circuit, self.circuit_config, now, outcome)
        return self._with_circuit(state, circuit)

    def concurrency_impact(
        self, state: ConcurrencyState, now: float | None = None
    ) -> ConcurrencyImpact:
        return cb.impact(
            state.circuit, self.circuit_config, self._now(now), state.current_concurrency
        )

    def effective_limit(self, state: ConcurrencyState, now: float | None = None) -> int:
        """Concurrency available for new dispatch (0 while suspended)."""
        return self.concurrency_impact(state, now).allowed_concurrency


__all__ = [
    "DEFAULT_INITIAL_CONCURRENCY",
    "Severity",
    "ConcurrencyConfig",
    "ConcurrencyState",
    "Admission",
    "ConcurrencyController",
]

"""Static per-service tuning profiles.

Backends differ wildly in what they tolerate: an orchestration API with a
hard per-account TPS quota wants a handful of calls in flight, an
invocation API for a massively parallel compute service happily takes
hundreds. A ``ServiceProfile`` seeds the controller's bounds and
thresholds for one service; the feedback loop takes it from there.

Example:
    >>> get_profile("stepfunctions").max_recommended
    5
    >>> get_profile("lambda").effective_ceiling
    100
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any

from adaptive_engine.core.errors import ConfigError


class ScalingStrategy(str, Enum):
    """How eagerly a service is driven.

    ``initial_fraction`` is the share of the ceiling to start at;
    ``cooldown_multiplier`` stretches the steady-state cooldown.
    """

    CONSERVATIVE = "conservative"
    MODERATE = "moderate"
    AGGRESSIVE = "aggressive"

    @property
    def initial_fraction(self) -> float:
        return _STRATEGY_TUNING[self][0]

    @property
    def cooldown_multiplier(self) -> float:
        return _STRATEGY_TUNING[self][1]


_STRATEGY_TUNING: dict[ScalingStrategy, tuple[float, float]] = {
    ScalingStrategy.CONSERVATIVE: (0.2, 2.0),
    ScalingStrategy.MODERATE: (0.4, 1.5),
    ScalingStrategy.AGGRESSIVE: (0.6, 1.0),
}


@dataclass(frozen=True)
class ServiceProfile:
    """Static tuning for one backend service.

    Attributes:
        name: Service identifier as used in ``Request.service``
        max_recommended: Concurrency ceiling before ``rate_limit_factor``
        baseline_latency: Expected healthy p95 latency, seconds
        error_threshold: Error rate that triggers emergency reduction
        rate_limit_factor: Share of ``max_recommended`` actually used, (0, 1]
        latency_sensitivity: Scales the latency margin; 2.0 halves it
        scaling_strategy: Start point and cooldown pacing
    """

    name: str
    max_recommended: int
    baseline_latency: float
    error_threshold: float = 0.1
    rate_limit_factor: float = 1.0
    latency_sensitivity: float = 1.0
    scaling_strategy: ScalingStrategy = ScalingStrategy.MODERATE

    def __post_init__(self) -> None:
        if self.max_recommended < 1:
            raise ConfigError(
                "max_recommended must be >= 1", field="max_recommended", value=self.max_recommended
            )
        if not 0.0 < self.rate_limit_factor <= 1.0:
            raise ConfigError(
                "rate_limit_factor must be in (0, 1]",
                field="rate_limit_factor",
                value=self.rate_limit_factor,
            )
        if self.latency_sensitivity <= 0:
            raise ConfigError(
                "latency_sensitivity must be > 0",
                field="latency_sensitivity",
                value=self.latency_sensitivity,
            )
        if not 0.0 < self.error_threshold <= 1.0:
            raise ConfigError(
                "error_threshold must be in (0, 1]", field="error_threshold", value=self.error_threshold
            )

    @property
    def effective_ceiling(self) -> int:
        return max(1, int(self.max_recommended * self.rate_limit_factor))

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "max_recommended": self.max_recommended,
            "baseline_latency": self.baseline_latency,
            "error_threshold": self.error_threshold,
            "rate_limit_factor": self.rate_limit_factor,
            "latency_sensitivity": self.latency_sensitivity,
            "scaling_strategy": self.scaling_strategy.value,
        }


DEFAULT_PROFILE = ServiceProfile(
    name="default",
    max_recommended=20,
    baseline_latency=0.5,
    error_threshold=0.1,
    scaling_strategy=ScalingStrategy.MODERATE,
)

SERVICE_PROFILES: dict[str, ServiceProfile] = {
    p.name: p
    for p in (
        # Strict per-account TPS quotas on the control plane.
        ServiceProfile(
            name="stepfunctions",
            max_recommended=5,
            baseline_latency=0.3,
            error_threshold=0.05,
            rate_limit_factor=1.0,
            latency_sensitivity=1.5,
            scaling_strategy=ScalingStrategy.CONSERVATIVE,
        ),
        ServiceProfile(
            name="lambda",
            max_recommended=100,
            baseline_latency=1.0,
            error_threshold=0.15,
            rate_limit_factor=1.0,
            latency_sensitivity=0.5,
            scaling_strategy=ScalingStrategy.AGGRESSIVE,
        ),
        ServiceProfile(
            name="s3",
            max_recommended=50,
            baseline_latency=0.2,
            error_threshold=0.1,
            scaling_strategy=ScalingStrategy.AGGRESSIVE,
        ),
        ServiceProfile(
            name="dynamodb",
            max_recommended=40,
            baseline_latency=0.05,
            error_threshold=0.1,
            rate_limit_factor=0.8,
            latency_sensitivity=2.0,
            scaling_strategy=ScalingStrategy.MODERATE,
        ),
        ServiceProfile(
            name="ec2",
            max_recommended=20,
            baseline_latency=0.5,
            error_threshold=0.1,
            rate_limit_factor=0.75,
            scaling_strategy=ScalingStrategy.MODERATE,
        ),
        ServiceProfile(
            name="sqs",
            max_recommended=30,
            baseline_latency=0.1,
            error_threshold=0.1,
            scaling_strategy=ScalingStrategy.MODERATE,
        ),
        ServiceProfile(
            name="cloudformation",
            max_recommended=8,
            baseline_latency=0.8,
            error_threshold=0.05,
            scaling_strategy=ScalingStrategy.CONSERVATIVE,
        ),
        ServiceProfile(
            name="iam",
            max_recommended=10,
            baseline_latency=0.4,
            error_threshold=0.05,
            scaling_strategy=ScalingStrategy.CONSERVATIVE,
        ),
    )
}

_lock = threading.Lock()


def get_profile(service: str) -> ServiceProfile:
    """Profile for ``service``, or ``DEFAULT_PROFILE`` renamed to it."""
    with _lock:
        profile = SERVICE_PROFILES.get(service)
    if profile is not None:
        return profile
    return replace(DEFAULT_PROFILE, name=service)


def register_profile(profile: ServiceProfile) -> None:
    """Add or replace a profile in the process-wide table."""
    with _lock:
        SERVICE_PROFILES[profile.name] = profile


__all__ = [
    "ScalingStrategy",
    "ServiceProfile",
    "DEFAULT_PROFILE",
    "SERVICE_PROFILES",
    "get_profile",
    "register_profile",
]

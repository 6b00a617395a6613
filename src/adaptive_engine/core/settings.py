"""Environment-driven engine settings.

Every tunable the engine exposes (pool sizing, controller bounds, breaker
thresholds, burst handling, resource high-water marks, batch defaults) can
be set from ``ADAPTIVE_ENGINE_*`` environment variables or a ``.env`` file.
``EngineSettings`` validates them once at startup and converts them into the
frozen config objects the execution layer consumes.

Manifesto:
    Configuration should be explicit, validated, and environment-driven.

    - **Pydantic validation:** Bounds are checked when settings load
    - **Cross-field rules:** ``min <= max`` style rules in one validator
    - **Typed output:** Converters hand out the engine's own config types
    - **Sensible defaults:** An empty environment gives a working engine

Examples:
    >>> settings = load_settings(max_concurrency=20, error_threshold=0.2)
    >>> settings.concurrency_config().max_concurrency
    20
    >>> load_settings(min_concurrency=5, max_concurrency=2)
    Traceback (most recent call last):
    ...
    ConfigError: ...

Tags:
    settings, configuration, pydantic, environment
"""

from __future__ import annotations

from functools import lru_cache
from typing import TYPE_CHECKING, Any, Literal

from pydantic import Field, ValidationError as PydanticValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigError

if TYPE_CHECKING:
    from adaptive_engine.core.clock import Clock
    from adaptive_engine.execution.burst import BurstConfig
    from adaptive_engine.execution.circuit_breaker import CircuitBreakerConfig
    from adaptive_engine.execution.controller import ConcurrencyConfig
    from adaptive_engine.execution.orchestrator import BatchConfig
    from adaptive_engine.execution.pool import PoolConfig
    from adaptive_engine.execution.registry import ServiceStateRegistry
    from adaptive_engine.execution.resources import ResourceLimits

# Profile-derived values win unless one of these is set explicitly.
_PROFILE_OVERRIDABLE = (
    "min_concurrency",
    "error_threshold",
    "cooldown_period",
    "measurement_window",
    "sampling_interval",
    "trend_window",
    "latency_margin",
    "min_emergency_reduction",
)


class EngineSettings(BaseSettings):
    """Engine-wide settings.

    Fields
    ──────
    log_level, log_json     : structlog configuration
    pool_*                  : connection pool (per service)
    min/max/initial_*       : concurrency controller bounds
    error_threshold, ...    : controller tuning
    circuit_*               : circuit breaker
    burst_*                 : burst detection and recovery
    cpu/memory/fd_*         : resource high-water marks
    dedup_strategy, ...     : batch defaults
    """

    model_config = SettingsConfigDict(
        env_prefix="ADAPTIVE_ENGINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Observability ────────────────────────────────────────────
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_json: bool | None = None

    # ── Pool ─────────────────────────────────────────────────────
    pool_max_connections: int | None = Field(default=None, ge=1)
    pool_min_connections: int = Field(default=1, ge=0)
    pool_connection_timeout: float = Field(default=30.0, gt=0)
    pool_connection_lifetime: float = Field(default=300.0, gt=0)
    pool_health_check_interval: float = Field(default=60.0, gt=0)
    pool_max_retry_attempts: int = Field(default=3, ge=0)
    pool_scale_up_threshold: float = Field(default=0.8, gt=0, le=1)
    pool_scale_down_threshold: float = Field(default=0.3, ge=0, lt=1)

    # ── Controller ───────────────────────────────────────────────
    use_service_profiles: bool = True
    min_concurrency: int = Field(default=1, ge=1)
    max_concurrency: int = Field(default=50, ge=1)
    initial_concurrency: int | None = Field(default=None, ge=1)
    error_threshold: float = Field(default=0.1, gt=0, le=1)
    cooldown_period: float = Field(default=10.0, ge=0)
    measurement_window: float = Field(default=60.0, gt=0)
    sampling_interval: float = Field(default=5.0, gt=0)
    trend_window: int = Field(default=3, ge=2)
    latency_margin: float = Field(default=0.2, gt=0)
    min_emergency_reduction: int = Field(default=3, ge=1)

    # ── Circuit breaker ──────────────────────────────────────────
    circuit_failure_threshold: int = Field(default=5, ge=1)
    circuit_recovery_timeout: float = Field(default=30.0, ge=0)
    circuit_half_open_requests: int = Field(default=1, ge=1)

    # ── Burst ────────────────────────────────────────────────────
    burst_rate_multiplier: float = Field(default=2.0, gt=1)
    burst_time_window: float = Field(default=10.0, gt=0)
    burst_factor: float = Field(default=1.5, ge=1)
    burst_decay_steps: int = Field(default=4, ge=1)
    burst_decay_interval: float = Field(default=5.0, ge=0)

    # ── Resources ────────────────────────────────────────────────
    cpu_high_water: float = Field(default=85.0, gt=0, le=100)
    memory_high_water: float = Field(default=85.0, gt=0, le=100)
    fd_min_headroom: float = Field(default=0.1, ge=0, lt=1)

    # ── Batch defaults ───────────────────────────────────────────
    dedup_strategy: Literal["exact", "semantic", "temporal", "cache_aware"] = "semantic"
    freshness_threshold: float | None = Field(default=None, ge=0)
    call_timeout: float | None = Field(default=None, gt=0)
    cache_results: bool = True
    cache_ttl_seconds: float | None = Field(default=None, gt=0)

    @model_validator(mode="after")
    def _check_ranges(self) -> EngineSettings:
        if self.min_concurrency > self.max_concurrency:
            raise ValueError(
                f"min_concurrency ({self.min_concurrency}) must be <= "
                f"max_concurrency ({self.max_concurrency})"
            )
        if self.initial_concurrency is not None and not (
            self.min_concurrency <= self.initial_concurrency <= self.max_concurrency
        ):
            raise ValueError("initial_concurrency must lie within [min, max]")
        if self.pool_max_connections is not None and self.pool_min_connections > self.pool_max_connections:
            raise ValueError("pool_min_connections must be <= pool_max_connections")
        if self.pool_scale_down_threshold >= self.pool_scale_up_threshold:
            raise ValueError("pool_scale_down_threshold must be < pool_scale_up_threshold")
        if self.dedup_strategy == "temporal" and self.freshness_threshold is None:
            raise ValueError("temporal dedup_strategy needs freshness_threshold")
        return self

    # ── Converters ───────────────────────────────────────────────

    def pool_defaults(self) -> dict[str, Any]:
        """Pool fields other than the size, for pools sized per service."""
        return {
            "min_connections": self.pool_min_connections,
            "connection_timeout": self.pool_connection_timeout,
            "connection_lifetime": self.pool_connection_lifetime,
            "health_check_interval": self.pool_health_check_interval,
            "max_retry_attempts": self.pool_max_retry_attempts,
            "scale_up_threshold": self.pool_scale_up_threshold,
            "scale_down_threshold": self.pool_scale_down_threshold,
        }

    def pool_config(self, max_connections: int | None = None) -> PoolConfig:
        from adaptive_engine.execution.pool import PoolConfig

        return PoolConfig(
            max_connections=max_connections or self.pool_max_connections or self.max_concurrency,
            **self.pool_defaults(),
        )

    def concurrency_overrides(self) -> dict[str, Any]:
        """Controller fields explicitly set, to apply on top of a service profile."""
        return {name: getattr(self, name) for name in _PROFILE_OVERRIDABLE if name in self.model_fields_set}

    def concurrency_config(self) -> ConcurrencyConfig:
        from adaptive_engine.execution.controller import ConcurrencyConfig

        return ConcurrencyConfig(
            min_concurrency=self.min_concurrency,
            max_concurrency=self.max_concurrency,
            initial_concurrency=self.initial_concurrency,
            error_threshold=self.error_threshold,
            cooldown_period=self.cooldown_period,
            measurement_window=self.measurement_window,
            sampling_interval=self.sampling_interval,
            trend_window=self.trend_window,
            latency_margin=self.latency_margin,
            min_emergency_reduction=self.min_emergency_reduction,
        )

    def circuit_config(self) -> CircuitBreakerConfig:
        from adaptive_engine.execution.circuit_breaker import CircuitBreakerConfig

        return CircuitBreakerConfig(
            failure_threshold=self.circuit_failure_threshold,
            recovery_timeout=self.circuit_recovery_timeout,
            half_open_test_requests=self.circuit_half_open_requests,
        )

    def burst_config(self) -> BurstConfig:
        from adaptive_engine.execution.burst import BurstConfig

        return BurstConfig(
            rate_multiplier=self.burst_rate_multiplier,
            time_window=self.burst_time_window,
            burst_factor=self.burst_factor,
            decay_steps=self.burst_decay_steps,
            decay_interval=self.burst_decay_interval,
        )

    def resource_limits(self) -> ResourceLimits:
        from adaptive_engine.execution.resources import ResourceLimits

        return ResourceLimits(
            cpu_high_water=self.cpu_high_water,
            memory_high_water=self.memory_high_water,
            fd_min_headroom=self.fd_min_headroom,
        )

    def batch_config(self) -> BatchConfig:
        from adaptive_engine.execution.orchestrator import BatchConfig

        return BatchConfig(
            strategy=self.dedup_strategy,
            freshness_threshold=self.freshness_threshold,
            call_timeout=self.call_timeout,
            acquire_timeout=self.pool_connection_timeout,
            cache_results=self.cache_results,
            cache_ttl_seconds=self.cache_ttl_seconds,
        )

    def build_registry(self, clock: Clock | None = None) -> ServiceStateRegistry:
        """A ``ServiceStateRegistry`` wired from these settings."""
        from adaptive_engine.execution.registry import ServiceStateRegistry

        common = {
            "circuit": self.circuit_config(),
            "burst": self.burst_config(),
            "resource_limits": self.resource_limits(),
            "clock": clock,
            "pool_defaults": self.pool_defaults(),
        }
        pool = self.pool_config() if self.pool_max_connections is not None else None
        if self.use_service_profiles:
            return ServiceStateRegistry(
                pool_config=pool,
                concurrency_overrides=self.concurrency_overrides(),
                **common,
            )
        return ServiceStateRegistry(
            pool_config=pool,
            concurrency_config=self.concurrency_config(),
            use_profiles=False,
            **common,
        )

    def configure_logging(self) -> None:
        """Apply ``log_level`` and ``log_json`` to the structlog pipeline."""
        from adaptive_engine.core.logging import configure_logging as _configure

        _configure(level=self.log_level, json_format=self.log_json)


def load_settings(**overrides: Any) -> EngineSettings:
    """Load settings from the environment, with explicit overrides on top.

    Raises:
        ConfigError: A value is out of range or a cross-field rule fails.
    """
    try:
        return EngineSettings(**overrides)
    except PydanticValidationError as e:
        first = e.errors()[0] if e.errors() else {}
        loc = ".".join(str(p) for p in first.get("loc", ())) or None
        raise ConfigError(
            f"Invalid engine settings: {first.get('msg', str(e))}",
            field=loc,
            value=first.get("input"),
            cause=e,
        ) from e


@lru_cache
def get_settings() -> EngineSettings:
    """Process-wide settings, loaded once."""
    return load_settings()


__all__ = ["EngineSettings", "load_settings", "get_settings"]

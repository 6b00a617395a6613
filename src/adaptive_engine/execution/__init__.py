"""Adaptive execution: dedup, pool, controller, breaker, orchestrator.

WHY
───
Fanning a batch of remote calls out with a fixed worker count either
underuses a healthy backend or hammers a throttling one.  This package
runs each batch through a pipeline that removes redundant work, gates
dispatch on a per-service ceiling that moves with observed latency,
errors and throughput, and fails fast when a backend is down.

ARCHITECTURE
────────────
::

    ExecutionOrchestrator.execute_batch
      ├── DeduplicationEngine   ─ canonical keys, plan, cache lookups
      ├── ServiceStateRegistry  ─ per-service state across batches
      │     ├── ConcurrencyController ─ pure update(state, sample)
      │     │     ├── trends            slope / plateau / knee
      │     │     ├── circuit_breaker   closed → open → half_open
      │     │     ├── burst             arrival spikes, linear decay
      │     │     └── resources         CPU / memory / fd cap
      │     ├── AdaptiveLimiter       ─ resizable dispatch gate
      │     └── ConnectionPool        ─ bounded connections, health, scaling
      └── BatchResult           ─ per-slot results, adjustments, metrics
"""

from .burst import ArrivalRateTracker, BurstConfig, BurstPhase, BurstStatus, RecoveryPlan
from .circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerState,
    CircuitState,
    ConcurrencyImpact,
    ImpactAction,
)
from .controller import (
    Admission,
    ConcurrencyConfig,
    ConcurrencyController,
    ConcurrencyState,
)
from .dedup import (
    DedupStrategy,
    DeduplicationEngine,
    DeduplicationPlan,
    OperationDefaults,
    PlanEntry,
    deduplicate,
)
from .limiter import AdaptiveLimiter
from .models import (
    Adjustment,
    AdjustmentReason,
    BatchResult,
    CanonicalKey,
    PerformanceMetrics,
    Request,
    Sample,
    SlotResult,
)
from .orchestrator import BatchConfig, ExecutionOrchestrator, execute_batch
from .pool import ConnectionPool, Lease, PoolConfig, PoolStatistics
from .profiles import ScalingStrategy, ServiceProfile, get_profile, register_profile
from .registry import ServiceState, ServiceStateRegistry, get_registry, set_registry
from .resources import ResourceLimits, ResourceSnapshot, sample_resources
from .trends import TrendAnalysis, TrendDirection, analyze_trends

__all__ = [
    # models
    "Request",
    "CanonicalKey",
    "Sample",
    "Adjustment",
    "AdjustmentReason",
    "SlotResult",
    "PerformanceMetrics",
    "BatchResult",
    # dedup
    "DedupStrategy",
    "DeduplicationEngine",
    "DeduplicationPlan",
    "OperationDefaults",
    "PlanEntry",
    "deduplicate",
    # pool
    "ConnectionPool",
    "Lease",
    "PoolConfig",
    "PoolStatistics",
    # controller
    "Admission",
    "ConcurrencyConfig",
    "ConcurrencyController",
    "ConcurrencyState",
    "TrendAnalysis",
    "TrendDirection",
    "analyze_trends",
    # circuit breaker
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerState",
    "CircuitState",
    "ConcurrencyImpact",
    "ImpactAction",
    # burst / resources / profiles
    "ArrivalRateTracker",
    "BurstConfig",
    "BurstPhase",
    "BurstStatus",
    "RecoveryPlan",
    "ResourceLimits",
    "ResourceSnapshot",
    "sample_resources",
    "ScalingStrategy",
    "ServiceProfile",
    "get_profile",
    "register_profile",
    # runtime
    "AdaptiveLimiter",
    "ServiceState",
    "ServiceStateRegistry",
    "get_registry",
    "set_registry",
    "BatchConfig",
    "ExecutionOrchestrator",
    "execute_batch",
]

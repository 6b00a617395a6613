"""Value objects shared across the execution engine.

Requests go in, ``SlotResult``s come out; ``Sample`` and ``Adjustment`` are
the currency of the feedback loop between the orchestrator and the
concurrency controller.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

from adaptive_engine.core.errors import EngineError, OutcomeKind, ValidationError

if TYPE_CHECKING:
    from .dedup import DeduplicationPlan


@dataclass(frozen=True, eq=False)
class Request:
    """One remote call to make: ``service.operation(**params)``.

    Immutable once submitted; ``params`` is exposed as a read-only mapping.
    Identity for deduplication is derived (see ``CanonicalKey``), never
    stored on the request.
    """

    service: str
    operation: str
    params: Mapping[str, Any] = field(default_factory=dict)
    timestamp: float | None = None

    def __post_init__(self) -> None:
        if isinstance(self.params, Mapping):
            object.__setattr__(self, "params", MappingProxyType(dict(self.params)))

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Request:
        """Build a request from a plain mapping.

        Raises:
            ValidationError: if ``service`` or ``operation`` is missing.
        """
        for required in ("service", "operation"):
            if not data.get(required):
                raise ValidationError(
                    f"Request is missing '{required}'",
                    field=required,
                    constraint="required",
                )
        return cls(
            service=data["service"],
            operation=data["operation"],
            params=data.get("params") or {},
            timestamp=data.get("timestamp"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "service": self.service,
            "operation": self.operation,
            "params": dict(self.params),
            "timestamp": self.timestamp,
        }

    def __repr__(self) -> str:
        return f"Request({self.service}.{self.operation}, params={dict(self.params)!r})"


@dataclass(frozen=True)
class CanonicalKey:
    """Normalized, hashable identity of a request."""

    service: str
    operation: str
    digest: str

    def __str__(self) -> str:
        return f"{self.service}:{self.operation}:{self.digest}"


@dataclass(frozen=True)
class Sample:
    """One observation fed to the concurrency controller.

    ``latency`` is in seconds (p95 of the micro-batch), ``throughput`` in
    completed calls per second.
    """

    timestamp: float
    concurrency: int
    latency: float
    error_rate: float
    throughput: float


class AdjustmentReason(str, Enum):
    """Why the concurrency ceiling moved."""

    ERROR_THRESHOLD_EXCEEDED = "error_threshold_exceeded"
    LATENCY_DEGRADATION = "latency_degradation"
    THROUGHPUT_PLATEAU = "throughput_plateau"
    THROUGHPUT_GROWTH = "throughput_growth"
    BURST = "burst"
    RECOVERY = "recovery"
    RESOURCE_PRESSURE = "resource_pressure"


@dataclass(frozen=True)
class Adjustment:
    """A recorded change of the concurrency ceiling."""

    from_concurrency: int
    to_concurrency: int
    reason: AdjustmentReason
    timestamp: float
    service: str | None = None

    @property
    def delta(self) -> int:
        return self.to_concurrency - self.from_concurrency

    def to_dict(self) -> dict[str, Any]:
        return {
            "service": self.service,
            "from_concurrency": self.from_concurrency,
            "to_concurrency": self.to_concurrency,
            "reason": self.reason.value,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class SlotResult:
    """Result delivered to one original batch index."""

    index: int
    request: Request
    value: Any = None
    error: EngineError | None = None
    outcome: OutcomeKind = OutcomeKind.SUCCESS
    was_deduplicated: bool = False
    from_cache: bool = False
    key: CanonicalKey | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "index": self.index,
            "service": self.request.service,
            "operation": self.request.operation,
            "outcome": self.outcome.value,
            "was_deduplicated": self.was_deduplicated,
            "from_cache": self.from_cache,
        }
        if self.error is not None:
            result["error"] = self.error.to_dict()
        return result


@dataclass(frozen=True)
class PerformanceMetrics:
    """Aggregate timing and efficiency figures for one batch."""

    requests_processed: int
    unique_requests: int
    duplicates_found: int
    cache_hits: int
    executed_calls: int
    succeeded: int
    failed: int
    rejected: int
    adjustments_made: int
    elapsed_seconds: float
    throughput: float
    avg_latency: float
    p95_latency: float

    @property
    def dedup_efficiency(self) -> float:
        """Share of requested work that never had to run."""
        if self.requests_processed == 0:
            return 0.0
        return 1.0 - (self.executed_calls / self.requests_processed)

    def to_dict(self) -> dict[str, Any]:
        return {
            "requests_processed": self.requests_processed,
            "unique_requests": self.unique_requests,
            "duplicates_found": self.duplicates_found,
            "cache_hits": self.cache_hits,
            "executed_calls": self.executed_calls,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "rejected": self.rejected,
            "adjustments_made": self.adjustments_made,
            "elapsed_seconds": self.elapsed_seconds,
            "throughput": self.throughput,
            "avg_latency": self.avg_latency,
            "p95_latency": self.p95_latency,
            "dedup_efficiency": self.dedup_efficiency,
        }


@dataclass(frozen=True)
class BatchResult:
    """Everything ``execute_batch`` reports back.

    ``results`` is ordered by original batch index. ``final_concurrency`` is
    keyed by service since every service has its own controller.
    """

    batch_id: str
    results: tuple[SlotResult, ...]
    concurrency_adjustments: tuple[Adjustment, ...]
    final_concurrency: Mapping[str, int]
    performance_metrics: PerformanceMetrics
    plan: DeduplicationPlan | None = None

    @property
    def succeeded(self) -> list[SlotResult]:
        return [r for r in self.results if r.ok]

    @property
    def failed(self) -> list[SlotResult]:
        return [r for r in self.results if not r.ok]

    def to_dict(self) -> dict[str, Any]:
        """Serialise for logging / API responses."""
        result = {
            "batch_id": self.batch_id,
            "results": [r.to_dict() for r in self.results],
            "concurrency_adjustments": [a.to_dict() for a in self.concurrency_adjustments],
            "final_concurrency": dict(self.final_concurrency),
            "performance_metrics": self.performance_metrics.to_dict(),
        }
        if self.plan is not None:
            result["plan"] = self.plan.to_dict()
        return result


__all__ = [
    "Request",
    "CanonicalKey",
    "Sample",
    "AdjustmentReason",
    "Adjustment",
    "SlotResult",
    "PerformanceMetrics",
    "BatchResult",
]

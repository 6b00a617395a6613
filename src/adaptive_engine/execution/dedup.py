"""Deduplication Engine — make identical work execute once.

WHY
───
Batches built by callers routinely contain the same call many times (the
same ``describe_*`` for every resource in a loop, the same ``list`` per
tenant).  Running each copy wastes backend quota and inflates the error
rate the controller reacts to.  The engine canonicalizes every request,
groups equivalents, executes one representative per group and copies its
result to every index that mapped to it.

ARCHITECTURE
────────────
::

    requests ──► validate (all, before any key is computed)
             ──► canonical_key(request, strategy)
                   exact       : sha256(service, operation, sorted params)
                   semantic    : + drop None params, fill documented defaults
                   temporal    : semantic key + freshness window
                   cache_aware : semantic key + cache lookup
             ──► DeduplicationPlan
                   unique_requests[i]   one per group
                   mapping[j]           original j → unique i
                   cached{i: value}     groups answered by the cache

STRATEGIES
──────────
- ``exact`` never fills defaults; ``{a: 1}`` and ``{a: 1, b: None}`` differ.
- ``semantic`` treats an absent optional parameter as its documented
  default, so ``{a: 1}`` and ``{a: 1, b: <default>}`` collide.
- ``temporal`` only merges otherwise-equal requests whose timestamps are
  within ``freshness_threshold`` of the group representative.
- ``cache_aware`` consults the cache first; hits never execute.

Example::

    engine = DeduplicationEngine()
    plan = engine.deduplicate(requests, DedupStrategy.SEMANTIC)
    plan.duplicates_found   # 9
    plan.groups()           # {0: [0, 5, 10, ...], 1: [1], ...}
"""

from __future__ import annotations

import threading
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from adaptive_engine.core.cache import CacheBackend
from adaptive_engine.core.clock import Clock, default_clock
from adaptive_engine.core.errors import InvariantViolation, ValidationError
from adaptive_engine.core.hashing import stable_digest
from adaptive_engine.core.logging import get_logger

from .models import CanonicalKey, Request

logger = get_logger(__name__)


class DedupStrategy(str, Enum):
    """How request identity is computed."""

    EXACT = "exact"
    SEMANTIC = "semantic"
    TEMPORAL = "temporal"
    CACHE_AWARE = "cache_aware"


# Documented defaults for optional parameters, per (service, operation).
DEFAULT_OPERATION_DEFAULTS: dict[tuple[str, str], dict[str, Any]] = {
    ("s3", "list_objects_v2"): {"max_keys": 1000, "fetch_owner": False, "delimiter": ""},
    ("s3", "head_object"): {"checksum_mode": "DISABLED"},
    ("ec2", "describe_instances"): {"dry_run": False, "max_results": 1000, "filters": []},
    ("ec2", "describe_regions"): {"all_regions": False, "dry_run": False},
    ("dynamodb", "get_item"): {"consistent_read": False, "return_consumed_capacity": "NONE"},
    ("dynamodb", "query"): {"consistent_read": False, "scan_index_forward": True, "select": "ALL_ATTRIBUTES"},
    ("lambda", "invoke"): {"invocation_type": "RequestResponse", "log_type": "None", "qualifier": "$LATEST"},
    ("lambda", "list_functions"): {"function_version": "ALL", "max_items": 50},
    ("sqs", "receive_message"): {"max_number_of_messages": 1, "wait_time_seconds": 0, "visibility_timeout": 30},
    ("stepfunctions", "list_executions"): {"status_filter": None, "max_results": 100},
    ("stepfunctions", "describe_execution"): {"included_data": "ALL_DATA"},
    ("cloudformation", "describe_stacks"): {"next_token": None},
    ("iam", "list_roles"): {"path_prefix": "/", "max_items": 100},
}


class OperationDefaults:
    """Registry of documented default values per (service, operation).

    Thread-safe; the built-in table is copied so registrations never leak
    between instances.
    """

    def __init__(self, table: Mapping[tuple[str, str], Mapping[str, Any]] | None = None):
        source = DEFAULT_OPERATION_DEFAULTS if table is None else table
        self._table: dict[tuple[str, str], dict[str, Any]] = {
            key: dict(value) for key, value in source.items()
        }
        self._lock = threading.Lock()

    def register(self, service: str, operation: str, defaults: Mapping[str, Any]) -> None:
        """Add or extend the defaults for one operation."""
        with self._lock:
            self._table.setdefault((service, operation), {}).update(defaults)

    def defaults_for(self, service: str, operation: str) -> dict[str, Any]:
        with self._lock:
            return dict(self._table.get((service, operation), {}))

    def __contains__(self, item: tuple[str, str]) -> bool:
        return item in self._table


@dataclass(frozen=True)
class PlanEntry:
    """Where one original batch index gets its result from."""

    original_index: int
    maps_to_index: int
    was_deduplicated: bool


@dataclass(frozen=True)
class DeduplicationPlan:
    """Outcome of deduplicating one batch.

    Invariants (checked on construction):
      - every original index appears exactly once in ``mapping``, in order
      - every ``maps_to_index`` references ``unique_requests``
      - exactly one entry per group (its representative) has
        ``was_deduplicated=False``
    """

    strategy: DedupStrategy
    unique_requests: tuple[Request, ...]
    keys: tuple[CanonicalKey, ...]
    mapping: tuple[PlanEntry, ...]
    representatives: tuple[int, ...]
    cached: Mapping[int, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        n_unique = len(self.unique_requests)
        if len(self.keys) != n_unique or len(self.representatives) != n_unique:
            raise InvariantViolation("Plan keys/representatives do not match unique requests")
        for position, entry in enumerate(self.mapping):
            if entry.original_index != position:
                raise InvariantViolation(
                    f"Plan mapping out of order at {position}: {entry.original_index}"
                )
            if not 0 <= entry.maps_to_index < n_unique:
                raise InvariantViolation(
                    f"Plan maps index {position} to missing group {entry.maps_to_index}"
                )
            is_rep = self.representatives[entry.maps_to_index] == position
            if is_rep == entry.was_deduplicated:
                raise InvariantViolation(f"Representative flag wrong for index {position}")
        for unique_index in self.cached:
            if not 0 <= unique_index < n_unique:
                raise InvariantViolation(f"Cached entry for missing group {unique_index}")

    @property
    def total_requests(self) -> int:
        return len(self.mapping)

    @property
    def duplicates_found(self) -> int:
        return len(self.mapping) - len(self.unique_requests)

    @property
    def cache_hits(self) -> int:
        return len(self.cached)

    def groups(self) -> dict[int, list[int]]:
        """unique index → every original index served by it."""
        result: dict[int, list[int]] = {i: [] for i in range(len(self.unique_requests))}
        for entry in self.mapping:
            result[entry.maps_to_index].append(entry.original_index)
        return result

    def pending(self) -> list[int]:
        """Unique indices that still need a physical execution."""
        return [i for i in range(len(self.unique_requests)) if i not in self.cached]

    def to_dict(self) -> dict[str, Any]:
        return {
            "strategy": self.strategy.value,
            "total_requests": self.total_requests,
            "unique_requests": len(self.unique_requests),
            "duplicates_found": self.duplicates_found,
            "cache_hits": self.cache_hits,
        }


class DeduplicationEngine:
    """Computes canonical keys and builds deduplication plans."""

    def __init__(
        self,
        defaults: OperationDefaults | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._defaults = defaults or OperationDefaults()
        self._clock = clock or default_clock()

    @property
    def defaults(self) -> OperationDefaults:
        return self._defaults

    # ── Validation ───────────────────────────────────────────────────

    @staticmethod
    def validate(requests: Sequence[Request]) -> None:
        """Reject malformed requests before any key is computed.

        Raises:
            ValidationError: naming the first offending index.
        """
        for index, request in enumerate(requests):
            for attr in ("service", "operation"):
                value = getattr(request, attr, None)
                if not isinstance(value, str) or not value:
                    raise ValidationError(
                        f"Request {index} is missing '{attr}'",
                        field=attr,
                        value=value,
                        constraint="non-empty string",
                    ).with_context(request_index=index)
            if not isinstance(getattr(request, "params", None), Mapping):
                raise ValidationError(
                    f"Request {index} params must be a mapping",
                    field="params",
                    value=getattr(request, "params", None),
                ).with_context(request_index=index)

    # ── Keys ─────────────────────────────────────────────────────────

    def normalize_params(self, request: Request, strategy: DedupStrategy) -> dict[str, Any]:
        """Parameters as they participate in the canonical key."""
        params = dict(request.params)
        if strategy is DedupStrategy.EXACT:
            return params

        params = {k: v for k, v in params.items() if v is not None}
        for name, default in self._defaults.defaults_for(request.service, request.operation).items():
            params.setdefault(name, default)
        return params

    def canonical_key(
        self,
        request: Request,
        strategy: DedupStrategy = DedupStrategy.SEMANTIC,
    ) -> CanonicalKey:
        strategy = DedupStrategy(strategy)
        digest = stable_digest(
            {
                "service": request.service,
                "operation": request.operation,
                "params": self.normalize_params(request, strategy),
            }
        )
        return CanonicalKey(request.service, request.operation, digest)

    # ── Planning ─────────────────────────────────────────────────────

    def deduplicate(
        self,
        requests: Sequence[Request],
        strategy: DedupStrategy | str = DedupStrategy.SEMANTIC,
        *,
        freshness_threshold: float | None = None,
        cache: CacheBackend | None = None,
    ) -> DeduplicationPlan:
        """Group equivalent requests.

        Args:
            requests: The batch, in caller order.
            strategy: Identity rule (see module docs).
            freshness_threshold: Seconds; required for ``temporal``.
            cache: Cache collaborator; required for ``cache_aware``.

        Raises:
            ValidationError: malformed request or missing strategy input.
        """
        try:
            strategy = DedupStrategy(strategy)
        except ValueError as e:
            raise ValidationError(
                f"Unknown dedup strategy {strategy!r}", field="strategy", value=strategy, cause=e
            ) from e

        self.validate(requests)

        if strategy is DedupStrategy.TEMPORAL:
            if freshness_threshold is None or freshness_threshold < 0:
                raise ValidationError(
                    "temporal deduplication needs a non-negative freshness_threshold",
                    field="freshness_threshold",
                    value=freshness_threshold,
                )
        if strategy is DedupStrategy.CACHE_AWARE and cache is None:
            raise ValidationError(
                "cache_aware deduplication needs a cache", field="cache"
            )

        key_strategy = DedupStrategy.EXACT if strategy is DedupStrategy.EXACT else DedupStrategy.SEMANTIC
        now = self._clock.now()

        unique: list[Request] = []
        keys: list[CanonicalKey] = []
        representatives: list[int] = []
        rep_times: list[float] = []
        mapping: list[PlanEntry] = []
        by_key: dict[CanonicalKey, list[int]] = {}

        for index, request in enumerate(requests):
            key = self.canonical_key(request, key_strategy)
            ts = request.timestamp if request.timestamp is not None else now

            match: int | None = None
            for candidate in by_key.get(key, ()):
                if strategy is not DedupStrategy.TEMPORAL:
                    match = candidate
                    break
                if abs(ts - rep_times[candidate]) <= freshness_threshold:
                    match = candidate
                    break

            if match is None:
                match = len(unique)
                unique.append(request)
                keys.append(key)
                representatives.append(index)
                rep_times.append(ts)
                by_key.setdefault(key, []).append(match)
                mapping.append(PlanEntry(index, match, False))
            else:
                mapping.append(PlanEntry(index, match, True))

        cached: dict[int, Any] = {}
        if strategy is DedupStrategy.CACHE_AWARE:
            for unique_index, key in enumerate(keys):
                value = cache.get(str(key))
                if value is not None:
                    cached[unique_index] = value

        plan = DeduplicationPlan(
            strategy=strategy,
            unique_requests=tuple(unique),
            keys=tuple(keys),
            mapping=tuple(mapping),
            representatives=tuple(representatives),
            cached=cached,
        )

        logger.debug(
            "dedup.plan_built",
            strategy=strategy.value,
            total=plan.total_requests,
            unique=len(plan.unique_requests),
            duplicates=plan.duplicates_found,
            cache_hits=plan.cache_hits,
        )
        return plan


def deduplicate(
    requests: Sequence[Request],
    strategy: DedupStrategy | str = DedupStrategy.SEMANTIC,
    **kwargs: Any,
) -> DeduplicationPlan:
    """Deduplicate with a default engine (built-in operation defaults)."""
    return DeduplicationEngine().deduplicate(requests, strategy, **kwargs)


__all__ = [
    "DedupStrategy",
    "DEFAULT_OPERATION_DEFAULTS",
    "OperationDefaults",
    "PlanEntry",
    "DeduplicationPlan",
    "DeduplicationEngine",
    "deduplicate",
]

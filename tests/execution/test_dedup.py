"""Tests for the deduplication engine."""

from __future__ import annotations

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from adaptive_engine.core.errors import InvariantViolation, ValidationError
from adaptive_engine.execution.dedup import (
    DedupStrategy,
    DeduplicationEngine,
    DeduplicationPlan,
    OperationDefaults,
    PlanEntry,
    deduplicate,
)
from adaptive_engine.execution.models import Request


def req(service="ec2", operation="describe_instances", timestamp=None, **params) -> Request:
    return Request(service=service, operation=operation, params=params, timestamp=timestamp)


@pytest.fixture
def engine(clock) -> DeduplicationEngine:
    return DeduplicationEngine(clock=clock)


# ── Strategies ───────────────────────────────────────────────────────────


class TestExact:
    def test_param_order_does_not_matter(self, engine):
        a = req(instance_ids=["i-1"], region="us-east-1")
        b = Request("ec2", "describe_instances", {"region": "us-east-1", "instance_ids": ["i-1"]})
        assert engine.canonical_key(a, "exact") == engine.canonical_key(b, "exact")

    def test_explicit_none_differs(self, engine):
        plan = engine.deduplicate([req(a=1), req(a=1, b=None)], DedupStrategy.EXACT)
        assert plan.duplicates_found == 0

    def test_defaults_not_filled(self, engine):
        plan = engine.deduplicate([req(), req(dry_run=False)], DedupStrategy.EXACT)
        assert plan.duplicates_found == 0


class TestSemantic:
    def test_absent_equals_documented_default(self, engine):
        plan = engine.deduplicate([req(), req(dry_run=False), req(max_results=1000)])
        assert plan.duplicates_found == 2
        assert len(plan.unique_requests) == 1

    def test_none_is_absent(self, engine):
        plan = engine.deduplicate([req(a=1), req(a=1, b=None)], "semantic")
        assert plan.duplicates_found == 1

    def test_non_default_value_differs(self, engine):
        plan = engine.deduplicate([req(), req(dry_run=True)])
        assert plan.duplicates_found == 0

    def test_service_and_operation_are_part_of_identity(self, engine):
        plan = engine.deduplicate([req(service="s3"), req(service="ec2"), req(operation="describe_regions")])
        assert plan.duplicates_found == 0

    def test_registered_defaults(self, clock):
        defaults = OperationDefaults({})
        defaults.register("custom", "fetch", {"page": 1})
        engine = DeduplicationEngine(defaults, clock=clock)
        plan = engine.deduplicate([req("custom", "fetch"), req("custom", "fetch", page=1)])
        assert plan.duplicates_found == 1
        assert ("custom", "fetch") in defaults

    def test_defaults_are_not_shared_between_instances(self):
        first = OperationDefaults()
        first.register("ec2", "describe_instances", {"extra": 1})
        assert "extra" not in OperationDefaults().defaults_for("ec2", "describe_instances")


class TestTemporal:
    def test_within_window_collide(self, engine):
        plan = engine.deduplicate(
            [req("s3", "list_objects_v2", timestamp=0.0), req("s3", "list_objects_v2", timestamp=20.0)],
            "temporal",
            freshness_threshold=30,
        )
        assert plan.duplicates_found == 1

    def test_outside_window_distinct(self, engine):
        plan = engine.deduplicate(
            [req("s3", "list_objects_v2", timestamp=0.0), req("s3", "list_objects_v2", timestamp=45.0)],
            "temporal",
            freshness_threshold=30,
        )
        assert plan.duplicates_found == 0

    def test_window_measured_from_representative(self, engine):
        plan = engine.deduplicate(
            [req(timestamp=0.0), req(timestamp=25.0), req(timestamp=50.0)],
            "temporal",
            freshness_threshold=30,
        )
        assert [e.maps_to_index for e in plan.mapping] == [0, 0, 1]

    def test_missing_timestamp_uses_clock(self, engine, clock):
        plan = engine.deduplicate(
            [req(), req(timestamp=clock.now() + 5)], "temporal", freshness_threshold=10
        )
        assert plan.duplicates_found == 1

    @pytest.mark.parametrize("threshold", [None, -1])
    def test_requires_threshold(self, engine, threshold):
        with pytest.raises(ValidationError):
            engine.deduplicate([req()], "temporal", freshness_threshold=threshold)


class TestCacheAware:
    def test_hits_are_recorded(self, engine, cache):
        key = engine.canonical_key(req(), DedupStrategy.SEMANTIC)
        cache.set(str(key), {"Reservations": []})
        plan = engine.deduplicate([req(), req(dry_run=False), req(service="s3")], "cache_aware", cache=cache)
        assert plan.cache_hits == 1
        assert plan.cached == {0: {"Reservations": []}}
        assert plan.pending() == [1]

    def test_requires_cache(self, engine):
        with pytest.raises(ValidationError):
            engine.deduplicate([req()], DedupStrategy.CACHE_AWARE)


# ── Validation ───────────────────────────────────────────────────────────


class TestValidation:
    def test_missing_service_names_index(self, engine):
        with pytest.raises(ValidationError) as exc_info:
            engine.deduplicate([req(), Request("", "describe_instances")])
        assert exc_info.value.context.request_index == 1
        assert exc_info.value.field == "service"

    def test_non_mapping_params(self, engine):
        bad = Request("ec2", "describe_instances", params=["not", "a", "mapping"])
        with pytest.raises(ValidationError):
            engine.deduplicate([bad])

    def test_unknown_strategy(self, engine):
        with pytest.raises(ValidationError):
            engine.deduplicate([req()], "fuzzy")

    def test_from_dict_requires_fields(self):
        with pytest.raises(ValidationError):
            Request.from_dict({"service": "s3"})
        assert Request.from_dict({"service": "s3", "operation": "list_buckets"}).params == {}


# ── Plan invariants ──────────────────────────────────────────────────────


class TestPlan:
    def test_end_to_end_shape(self, engine):
        requests = [
            req(instance_ids=["shared"]) if i % 5 == 0 else req(instance_ids=[f"i-{i}"])
            for i in range(50)
        ]
        plan = engine.deduplicate(requests)
        assert plan.total_requests == 50
        assert plan.duplicates_found == 9
        assert plan.groups()[0] == list(range(0, 50, 5))
        assert plan.to_dict()["unique_requests"] == 41

    def test_rejects_out_of_order_mapping(self):
        r = req()
        with pytest.raises(InvariantViolation):
            DeduplicationPlan(
                strategy=DedupStrategy.EXACT,
                unique_requests=(r,),
                keys=(DeduplicationEngine().canonical_key(r),),
                mapping=(PlanEntry(1, 0, False),),
                representatives=(1,),
            )

    def test_rejects_wrong_representative_flag(self):
        r = req()
        with pytest.raises(InvariantViolation):
            DeduplicationPlan(
                strategy=DedupStrategy.EXACT,
                unique_requests=(r,),
                keys=(DeduplicationEngine().canonical_key(r),),
                mapping=(PlanEntry(0, 0, True),),
                representatives=(0,),
            )

    def test_module_helper(self):
        assert deduplicate([req(), req()]).duplicates_found == 1


_params = st.dictionaries(
    st.sampled_from(["a", "b", "c", "dry_run"]),
    st.one_of(st.none(), st.integers(0, 2), st.booleans()),
    max_size=3,
)
_requests = st.lists(
    st.builds(
        lambda service, params: Request(service, "describe_instances", params),
        st.sampled_from(["ec2", "s3"]),
        _params,
    ),
    max_size=25,
)


@settings(max_examples=100, deadline=None)
@given(_requests, st.sampled_from([DedupStrategy.EXACT, DedupStrategy.SEMANTIC]))
def test_every_index_lands_in_exactly_one_group(requests, strategy):
    engine = DeduplicationEngine()
    plan = engine.deduplicate(requests, strategy)

    seen = sorted(i for members in plan.groups().values() for i in members)
    assert seen == list(range(len(requests)))

    for unique_index, members in plan.groups().items():
        assert members, "every group has its representative"
        key = plan.keys[unique_index]
        assert all(engine.canonical_key(requests[i], strategy) == key for i in members)
        assert sum(not plan.mapping[i].was_deduplicated for i in members) == 1

    assert len(set(plan.keys)) == len(plan.unique_requests)

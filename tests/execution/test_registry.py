"""Tests for per-service state persistence."""

from dataclasses import replace

import pytest

from adaptive_engine.execution.controller import ConcurrencyConfig
from adaptive_engine.execution.pool import PoolConfig
from adaptive_engine.execution.registry import ServiceStateRegistry, get_registry, set_registry


class TestServiceStateRegistry:
    def test_lazy_and_stable(self, registry):
        assert registry.services() == []
        entry = registry.get("s3")
        assert registry.get("s3") is entry
        assert registry.services() == ["s3"]

    def test_profile_derived_bounds(self, registry):
        entry = registry.get("stepfunctions")
        assert entry.controller.config.max_concurrency == 5
        assert entry.pool.max_connections == 5
        assert entry.profile.name == "stepfunctions"

    def test_unknown_service_uses_default_profile(self, registry):
        entry = registry.get("textract")
        assert entry.profile.name == "textract"
        assert entry.controller.config.max_concurrency == 20

    def test_without_profiles(self, clock):
        registry = ServiceStateRegistry(use_profiles=False, concurrency_overrides={"max_concurrency": 8}, clock=clock)
        assert registry.get("stepfunctions").controller.config.max_concurrency == 8

    def test_overrides_on_top_of_profile(self, clock):
        registry = ServiceStateRegistry(concurrency_overrides={"error_threshold": 0.3}, clock=clock)
        config = registry.get("stepfunctions").controller.config
        assert (config.max_concurrency, config.error_threshold) == (5, 0.3)

    def test_dispatch_limit_is_min_of_pool_and_ceiling(self, clock):
        registry = ServiceStateRegistry(
            pool_config=PoolConfig(max_connections=2, min_connections=0),
            concurrency_config=ConcurrencyConfig(initial_concurrency=6),
            clock=clock,
        )
        entry = registry.get("ec2")
        assert entry.dispatch_limit() == 2
        assert entry.limiter.limit == 2

    def test_commit_resizes_limiter(self, registry):
        entry = registry.get("s3")
        entry.commit(replace(entry.state, current_concurrency=3))
        assert entry.limiter.limit == 3

    def test_configure_pins_service(self, registry):
        entry = registry.configure("ec2", concurrency_config=ConcurrencyConfig(max_concurrency=4))
        assert registry.get("ec2") is entry
        assert entry.controller.config.max_concurrency == 4
        assert entry.pool.max_connections == 4

    def test_reset(self, registry):
        first = registry.get("s3")
        registry.get("ec2")
        registry.reset("s3")
        assert registry.services() == ["ec2"]
        assert registry.get("s3") is not first
        registry.reset()
        assert registry.services() == []

    def test_snapshot(self, registry):
        registry.get("sqs")
        snap = registry.snapshot()
        assert snap["sqs"]["state"]["current_concurrency"] == registry.get("sqs").state.current_concurrency
        assert snap["sqs"]["limiter"]["in_flight"] == 0


class TestMaintain:
    @pytest.fixture
    def entry(self, registry):
        return registry.configure(
            "s3", pool_config=PoolConfig(max_connections=4, min_connections=1, health_check_interval=30)
        )

    @pytest.mark.asyncio
    async def test_waits_for_interval(self, clock, entry):
        clock.advance(29)
        assert await entry.maintain() is False
        clock.advance(1)
        assert await entry.maintain() is True
        assert entry.last_maintenance == clock.now()
        assert await entry.maintain() is False

    @pytest.mark.asyncio
    async def test_force_runs_immediately(self, entry):
        assert await entry.maintain(force=True) is True

    @pytest.mark.asyncio
    async def test_releases_idle_surplus(self, clock, entry):
        leases = [await entry.pool.acquire() for _ in range(3)]
        for lease in leases:
            await entry.pool.release(lease.connection_id)
        assert entry.pool.current_connections == 3

        clock.advance(30)
        await entry.maintain()
        assert entry.pool.current_connections == 1


def test_default_registry_singleton():
    assert get_registry() is get_registry()
    custom = ServiceStateRegistry()
    set_registry(custom)
    assert get_registry() is custom

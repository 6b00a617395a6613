"""Tests for resource-pressure capping."""

import pytest

from adaptive_engine.core.errors import ConfigError
from adaptive_engine.execution.resources import (
    ResourceLimits,
    ResourceSnapshot,
    apply_resource_cap,
    limiting_resources,
    sample_resources,
)

LIMITS = ResourceLimits()
CALM = ResourceSnapshot(cpu_percent=20.0, memory_percent=40.0)


class TestLimiting:
    def test_none_when_calm(self):
        assert limiting_resources(CALM, LIMITS) == ()

    def test_stable_order(self):
        snapshot = ResourceSnapshot(cpu_percent=99.0, memory_percent=99.0, fd_headroom=0.01)
        assert limiting_resources(snapshot, LIMITS) == ("cpu", "memory", "file_descriptors")


class TestCap:
    @pytest.mark.parametrize("value, expected", [(10, 7), (3, 2), (2, 1), (1, 1)])
    def test_cap_under_cpu_pressure(self, value, expected):
        hot = ResourceSnapshot(cpu_percent=95.0, memory_percent=40.0)
        capped, limiting = apply_resource_cap(value, hot, LIMITS, min_concurrency=1)
        assert capped == expected
        assert limiting == ("cpu",)

    def test_respects_min(self):
        hot = ResourceSnapshot(cpu_percent=95.0, memory_percent=40.0)
        assert apply_resource_cap(4, hot, LIMITS, min_concurrency=4)[0] == 4

    def test_unchanged_without_snapshot_or_pressure(self):
        assert apply_resource_cap(10, None, LIMITS, 1) == (10, ())
        assert apply_resource_cap(10, CALM, LIMITS, 1) == (10, ())


@pytest.mark.parametrize(
    "overrides",
    [{"cpu_high_water": 0}, {"memory_high_water": 120}, {"fd_min_headroom": 1.0}, {"cap_factor": 1.0}],
)
def test_limits_reject_invalid(overrides):
    with pytest.raises(ConfigError):
        ResourceLimits(**overrides)


def test_sample_resources_reads_host():
    snapshot = sample_resources()
    assert 0.0 <= snapshot.cpu_percent <= 100.0
    assert 0.0 <= snapshot.memory_percent <= 100.0
    assert 0.0 <= snapshot.fd_headroom <= 1.0

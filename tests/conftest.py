"""
Shared pytest fixtures for adaptive-engine tests.

This module provides:
- A ``ManualClock`` so cooldowns, recovery timeouts and lifetimes can be
  stepped without sleeping
- Fresh service-state and metrics registries per test
"""

from __future__ import annotations

from collections.abc import Generator

import pytest

from adaptive_engine.core.cache import InMemoryCache
from adaptive_engine.core.clock import ManualClock
from adaptive_engine.execution.registry import ServiceStateRegistry, set_registry
from adaptive_engine.observability.metrics import EngineMetrics, MetricsRegistry


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(start=1_000.0)


@pytest.fixture
def cache(clock: ManualClock) -> InMemoryCache:
    return InMemoryCache(max_size=100, default_ttl_seconds=60, clock=clock)


@pytest.fixture
def metrics() -> EngineMetrics:
    """Engine metrics on a private registry (no cross-test bleed)."""
    return EngineMetrics(MetricsRegistry())


@pytest.fixture
def registry(clock: ManualClock) -> ServiceStateRegistry:
    return ServiceStateRegistry(clock=clock)


@pytest.fixture(autouse=True)
def reset_default_registry() -> Generator[None, None, None]:
    """Drop the process-wide registry so no test inherits another's state."""
    set_registry(None)
    yield
    set_registry(None)


"""Tests for the injectable clocks."""

import pytest

from adaptive_engine.core.clock import ManualClock, SystemClock, default_clock


def test_manual_clock_advances():
    clock = ManualClock(start=10.0)
    assert clock.now() == 10.0
    assert clock.advance(2.5) == 12.5
    clock.set(20.0)
    assert clock.now() == 20.0


def test_manual_clock_never_goes_backwards():
    clock = ManualClock(start=5.0)
    with pytest.raises(ValueError):
        clock.advance(-1)
    with pytest.raises(ValueError):
        clock.set(4.0)


def test_system_clock_is_monotonic():
    clock = SystemClock()
    first = clock.now()
    assert clock.now() >= first


def test_default_clock_is_shared():
    assert default_clock() is default_clock()

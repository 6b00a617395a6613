"""Injectable time sources.

Every time-dependent decision in the engine (cooldowns, circuit recovery,
connection lifetimes, burst windows) reads ``clock.now()`` instead of calling
``time`` directly, so the feedback loop can be driven deterministically in
tests.

Example:
    >>> clock = ManualClock(start=100.0)
    >>> clock.now()
    100.0
    >>> clock.advance(2.5)
    102.5
"""

from __future__ import annotations

import time
from typing import Protocol


class Clock(Protocol):
    """Monotonic seconds source."""

    def now(self) -> float:
        """Return the current time in seconds."""
        ...


class SystemClock:
    """Clock backed by ``time.monotonic``."""

    def now(self) -> float:
        return time.monotonic()

    def __repr__(self) -> str:
        return "SystemClock()"


class ManualClock:
    """Clock that only moves when told to.

    Used by tests to step through cooldowns and timeouts without sleeping.
    """

    def __init__(self, start: float = 0.0):
        self._now = float(start)

    def now(self) -> float:
        return self._now

    def advance(self, seconds: float) -> float:
        """Move the clock forward and return the new time."""
        if seconds < 0:
            raise ValueError("ManualClock cannot move backwards")
        self._now += seconds
        return self._now

    def set(self, value: float) -> None:
        """Jump to an absolute time (never backwards)."""
        if value < self._now:
            raise ValueError("ManualClock cannot move backwards")
        self._now = float(value)

    def __repr__(self) -> str:
        return f"ManualClock(now={self._now})"


_default_clock = SystemClock()


def default_clock() -> Clock:
    """Return the process-wide system clock."""
    return _default_clock


__all__ = ["Clock", "SystemClock", "ManualClock", "default_clock"]

"""Resizable async concurrency gate.

``asyncio.Semaphore`` has a fixed size; the controller changes the
ceiling while work is queued. ``AdaptiveLimiter`` admits waiters FIFO
whenever ``in_flight < limit`` and re-checks on every release and every
``set_limit``. Shrinking never interrupts calls already in flight; it
only delays new admissions until enough of them finish.

Example::

    limiter = AdaptiveLimiter(4)
    async with limiter.slot():
        await do_call()
    limiter.set_limit(2)
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from adaptive_engine.core.errors import ConfigError, InvariantViolation


class AdaptiveLimiter:
    """FIFO gate with a mutable limit."""

    def __init__(self, limit: int):
        if limit < 1:
            raise ConfigError("limit must be >= 1", field="limit", value=limit)
        self._limit = limit
        self._in_flight = 0
        self._waiters: deque[asyncio.Future[None]] = deque()

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def waiting(self) -> int:
        return sum(1 for w in self._waiters if not w.done())

    def set_limit(self, limit: int) -> None:
        """Change the ceiling; values below 1 are raised to 1."""
        self._limit = max(1, int(limit))
        self._wake()

    def _wake(self) -> None:
        while self._waiters and self._in_flight < self._limit:
            waiter = self._waiters.popleft()
            if waiter.done():
                continue
            self._in_flight += 1
            waiter.set_result(None)

    async def acquire(self) -> None:
        if self._in_flight < self._limit and not self._waiters:
            self._in_flight += 1
            return

        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # Admitted just as we were cancelled; hand the slot on.
                self.release()
            else:
                try:
                    self._waiters.remove(waiter)
                except ValueError:
                    pass
            raise

    def release(self) -> None:
        if self._in_flight <= 0:
            raise InvariantViolation("limiter released more times than acquired")
        self._in_flight -= 1
        self._wake()

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        await self.acquire()
        try:
            yield
        finally:
            self.release()


__all__ = ["AdaptiveLimiter"]

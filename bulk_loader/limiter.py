"""Concurrency limiter bounding in-flight bulk transfers per loader."""

from __future__ import annotations

import asyncio


class ConcurrencyLimiter:
    """
    A counting limiter built on :class:`asyncio.Condition`.

    A slot is held for the whole lifetime of a transfer session, so with a
    limit of one the next batch cannot start before the previous
    connection is released.
    """

    def __init__(self, initial: int) -> None:
        """Initialize the limiter.

        Parameters
        ----------
        initial:
            Starting concurrency value. Must be non-negative.
        """
        if initial < 0:
            raise ValueError("initial must be >= 0")
        self._limit = initial
        self._active = 0
        self._cond = asyncio.Condition()

    async def acquire(self) -> None:
        """Wait until fewer than ``limit`` slots are active, then take one."""
        async with self._cond:
            while self._active >= self._limit:
                await self._cond.wait()
            self._active += 1

    async def release(self) -> None:
        """Release a previously acquired slot and wake one waiter."""
        async with self._cond:
            self._active -= 1
            if self._active < 0:
                self._active = 0
            self._cond.notify()

    @property
    def active(self) -> int:
        """Return the number of slots currently held."""
        return self._active

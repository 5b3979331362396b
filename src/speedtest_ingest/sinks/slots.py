"""Process-wide pool of in-flight write permits."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager


class WriteSlotPool:
    """Counting semaphore shared by every sink instance of the job.

    Exactly ``size`` write requests may be outstanding at once. A dispatch
    holds one slot from acquisition until its last attempt has finished.
    """

    def __init__(self, size: int) -> None:
        if size < 1:
            msg = f"slot pool size must be >= 1, got {size}"
            raise ValueError(msg)
        self._size = size
        self._semaphore = asyncio.Semaphore(size)
        self._in_flight = 0
        self._peak = 0

    @property
    def size(self) -> int:
        return self._size

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def peak(self) -> int:
        """Highest number of simultaneously held slots so far."""
        return self._peak

    @property
    def available(self) -> int:
        return self._size - self._in_flight

    async def acquire(self) -> None:
        await self._semaphore.acquire()
        self._in_flight += 1
        self._peak = max(self._peak, self._in_flight)

    def release(self) -> None:
        if self._in_flight <= 0:
            msg = "release() called with no slot held"
            raise RuntimeError(msg)
        self._in_flight -= 1
        self._semaphore.release()

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        await self.acquire()
        try:
            yield
        finally:
            self.release()

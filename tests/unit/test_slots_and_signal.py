"""Unit tests for the write slot pool and the abort signal."""

from __future__ import annotations

import asyncio

import pytest

from speedtest_ingest.pipeline.signal import AbortSignal
from speedtest_ingest.sinks.slots import WriteSlotPool


@pytest.mark.asyncio
class TestWriteSlotPool:
    async def test_acquire_release(self):
        pool = WriteSlotPool(2)
        await pool.acquire()
        assert pool.in_flight == 1
        assert pool.available == 1
        pool.release()
        assert pool.in_flight == 0
        assert pool.peak == 1

    async def test_blocks_when_exhausted(self):
        pool = WriteSlotPool(1)
        await pool.acquire()
        waiter = asyncio.create_task(pool.acquire())
        await asyncio.sleep(0.01)
        assert not waiter.done()
        pool.release()
        await asyncio.wait_for(waiter, timeout=1)
        assert pool.in_flight == 1

    async def test_context_manager(self):
        pool = WriteSlotPool(1)
        async with pool.slot():
            assert pool.in_flight == 1
        assert pool.in_flight == 0

    async def test_release_without_acquire(self):
        pool = WriteSlotPool(1)
        with pytest.raises(RuntimeError):
            pool.release()


class TestWriteSlotPoolSize:
    def test_size_must_be_positive(self):
        with pytest.raises(ValueError):
            WriteSlotPool(0)


@pytest.mark.asyncio
class TestAbortSignal:
    async def test_first_trigger_wins(self):
        signal = AbortSignal()
        first = RuntimeError("first")
        signal.trigger("a", first)
        signal.trigger("b", RuntimeError("second"))
        assert signal.is_set()
        assert signal.reason == "a"
        assert signal.error is first

    async def test_wait_returns_after_trigger(self):
        signal = AbortSignal()
        waiter = asyncio.create_task(signal.wait())
        await asyncio.sleep(0)
        assert not waiter.done()
        signal.trigger("stop")
        await asyncio.wait_for(waiter, timeout=1)

"""Unit tests for the batching Timestream sink."""

from __future__ import annotations

import asyncio
import warnings

import pytest

from speedtest_ingest.config.models import (
    BatchingConfig,
    FailureHandlerConfig,
    SinkConfig,
    WriteClientConfig,
)
from speedtest_ingest.errors import (
    RejectedRecordsError,
    RetryBudgetExhausted,
    TransientWriteError,
    WriteFailure,
)
from speedtest_ingest.model.converter import WriteRequest
from speedtest_ingest.model.speedtest import Speedtest
from speedtest_ingest.pipeline.signal import AbortSignal
from speedtest_ingest.sinks.base import RecordSink
from speedtest_ingest.sinks.slots import WriteSlotPool
from speedtest_ingest.sinks.timestream import TimestreamSink


class FakeWriter:
    """Records calls; pops one scripted outcome (exception or None) per call."""

    def __init__(
        self,
        outcomes: list[BaseException | None] | None = None,
        *,
        delay: float = 0.0,
        gate: asyncio.Event | None = None,
        fail_always: BaseException | None = None,
    ) -> None:
        self.outcomes = list(outcomes or [])
        self.delay = delay
        self.gate = gate
        self.fail_always = fail_always
        self.calls: list[WriteRequest] = []
        self.written: list[WriteRequest] = []
        self.active = 0
        self.peak = 0

    async def write(self, request: WriteRequest) -> dict:
        self.calls.append(request)
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            if self.gate is not None:
                await self.gate.wait()
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.fail_always is not None:
                raise self.fail_always
            if self.outcomes:
                outcome = self.outcomes.pop(0)
                if outcome is not None:
                    raise outcome
            self.written.append(request)
            return {}
        finally:
            self.active -= 1


def _record(i: int) -> Speedtest:
    return Speedtest(
        device_id=f"device-{i}",
        timestamp=1_700_000_000_000 + i,
        download_bps=1e8,
        upload_bps=1e7,
        ping_ms=10.0,
    )


def _config(
    *,
    batch_size: int = 100,
    buffered: int = 10000,
    in_flight: int = 1000,
    max_time_ms: int = 60_000,
    max_error_retry: int = 10,
    **failure_flags: bool,
) -> SinkConfig:
    return SinkConfig(
        batching=BatchingConfig(
            max_batch_size=batch_size,
            max_buffered_requests=buffered,
            max_in_flight_requests=in_flight,
            max_time_in_buffer_ms=max_time_ms,
        ),
        write_client=WriteClientConfig(
            max_error_retry=max_error_retry,
            request_timeout_seconds=1,
            initial_backoff_seconds=0.001,
            max_backoff_seconds=0.005,
            backoff_jitter_seconds=0,
        ),
        failure_handler=FailureHandlerConfig(**failure_flags),
    )


async def _make_sink(
    writer: FakeWriter,
    config: SinkConfig | None = None,
    slots: WriteSlotPool | None = None,
    abort: AbortSignal | None = None,
) -> TimestreamSink:
    cfg = config or _config()
    sink = TimestreamSink(
        "ts-test",
        cfg,
        writer,
        slots or WriteSlotPool(cfg.batching.max_in_flight_requests),
        abort or AbortSignal(),
    )
    await sink.start()
    return sink


@pytest.mark.asyncio
class TestBatching:
    async def test_satisfies_record_sink_protocol(self):
        sink = await _make_sink(FakeWriter())
        assert isinstance(sink, RecordSink)
        await sink.stop(drain=False)

    async def test_write_before_start_raises(self):
        cfg = _config()
        sink = TimestreamSink(
            "ts", cfg, FakeWriter(), WriteSlotPool(1), AbortSignal()
        )
        with pytest.raises(RuntimeError, match="not started"):
            await sink.write(_record(0))

    async def test_250_records_make_100_100_50(self):
        writer = FakeWriter()
        sink = await _make_sink(writer)
        for i in range(250):
            await sink.write(_record(i))
        await sink.flush()

        sizes = sorted((len(r) for r in writer.written), reverse=True)
        assert sizes == [100, 100, 50]
        assert sink.metrics.records_written == 250
        assert sink.buffered_records == 0
        await sink.stop()

    async def test_batch_never_exceeds_max_size(self):
        writer = FakeWriter()
        sink = await _make_sink(writer, _config(batch_size=7))
        for i in range(30):
            await sink.write(_record(i))
        await sink.flush()
        assert all(len(r) <= 7 for r in writer.written)
        assert sum(len(r) for r in writer.written) == 30
        await sink.stop()

    async def test_records_keep_order_within_request(self):
        writer = FakeWriter()
        sink = await _make_sink(writer, _config(batch_size=10))
        for i in range(10):
            await sink.write(_record(i))
        await sink.flush()
        times = [int(r["Time"]) for r in writer.written[0].records]
        assert times == sorted(times)
        await sink.stop()

    async def test_time_triggered_flush(self):
        writer = FakeWriter()
        sink = await _make_sink(writer, _config(max_time_ms=50))
        for i in range(10):
            await sink.write(_record(i))
        assert writer.calls == []

        await asyncio.sleep(0.3)
        assert len(writer.written) == 1
        assert len(writer.written[0]) == 10
        await sink.stop()

    async def test_in_flight_cap_respected(self):
        writer = FakeWriter(delay=0.02)
        slots = WriteSlotPool(2)
        sink = await _make_sink(writer, _config(batch_size=1), slots=slots)
        for i in range(10):
            await sink.write(_record(i))
        await sink.flush()

        assert len(writer.written) == 10
        assert slots.peak <= 2
        assert writer.peak <= 2
        assert slots.in_flight == 0
        await sink.stop()

    async def test_shared_pool_caps_across_sinks(self):
        writer = FakeWriter(delay=0.02)
        slots = WriteSlotPool(3)
        abort = AbortSignal()
        cfg = _config(batch_size=1)
        sinks = [await _make_sink(writer, cfg, slots, abort) for _ in range(3)]
        for i in range(6):
            for sink in sinks:
                await sink.write(_record(i))
        await asyncio.gather(*(s.flush() for s in sinks))
        assert len(writer.written) == 18
        assert slots.peak <= 3
        for sink in sinks:
            await sink.stop()

    async def test_backpressure_blocks_writer(self):
        # One slot: record 0 is in flight, records 1 and 2 wait for dispatch.
        gate = asyncio.Event()
        writer = FakeWriter(gate=gate)
        sink = await _make_sink(
            writer, _config(batch_size=1, buffered=2, in_flight=1)
        )
        for i in range(3):
            await asyncio.wait_for(sink.write(_record(i)), timeout=1)

        blocked = asyncio.create_task(sink.write(_record(3)))
        await asyncio.sleep(0.05)
        assert not blocked.done()
        assert sink.buffered_records == 2
        assert writer.active == 1

        gate.set()
        await asyncio.wait_for(blocked, timeout=1)
        await sink.flush()
        assert len(writer.written) == 4
        await sink.stop()

    async def test_in_flight_requests_not_bounded_by_buffer(self):
        gate = asyncio.Event()
        writer = FakeWriter(gate=gate)
        slots = WriteSlotPool(10)
        sink = await _make_sink(
            writer, _config(batch_size=1, buffered=2, in_flight=10), slots=slots
        )
        for i in range(6):
            await asyncio.wait_for(sink.write(_record(i)), timeout=1)
        await asyncio.sleep(0.05)

        assert writer.active == 6
        assert slots.in_flight == 6
        assert sink.buffered_records == 0

        gate.set()
        await sink.flush()
        assert len(writer.written) == 6
        assert slots.in_flight == 0
        await sink.stop()


@pytest.mark.asyncio
class TestRetriesAndFailures:
    async def test_two_transient_failures_then_success(self):
        writer = FakeWriter(
            [TransientWriteError("throttled"), TransientWriteError("throttled"), None]
        )
        abort = AbortSignal()
        sink = await _make_sink(writer, _config(batch_size=1), abort=abort)
        await sink.write(_record(0))
        await sink.flush()

        assert not abort.is_set()
        assert len(writer.calls) == 3
        assert sink.metrics.retries == 2
        assert sink.metrics.records_written == 1
        await sink.stop()

    async def test_backoff_configuration_emits_no_deprecation_warning(self):
        writer = FakeWriter([TransientWriteError("throttled"), None])
        abort = AbortSignal()
        sink = await _make_sink(writer, _config(batch_size=1), abort=abort)
        with warnings.catch_warnings():
            warnings.simplefilter("error", DeprecationWarning)
            await sink.write(_record(0))
            await sink.flush()

        assert not abort.is_set()
        assert sink.metrics.retries == 1
        assert len(writer.written) == 1
        await sink.stop()

    async def test_timeout_is_retried(self):
        writer = FakeWriter([TimeoutError(), None])
        abort = AbortSignal()
        sink = await _make_sink(writer, _config(batch_size=1), abort=abort)
        await sink.write(_record(0))
        await sink.flush()
        assert not abort.is_set()
        assert len(writer.written) == 1
        await sink.stop()

    async def test_retry_exhaustion_aborts(self):
        writer = FakeWriter(fail_always=TransientWriteError("throttled"))
        abort = AbortSignal()
        sink = await _make_sink(
            writer, _config(batch_size=1, max_error_retry=2), abort=abort
        )
        await sink.write(_record(0))
        await sink.flush()

        assert abort.is_set()
        assert len(writer.calls) == 3
        assert isinstance(abort.error, WriteFailure)
        assert isinstance(abort.error.__cause__, RetryBudgetExhausted)
        assert sink.metrics.requests_failed == 1

        # Nothing further is dispatched after the abort.
        await sink.write(_record(1))
        await asyncio.sleep(0.05)
        assert len(writer.calls) == 3
        assert sink.metrics.records_discarded == 1
        await sink.stop()

    async def test_rejected_records_abort_by_default(self):
        rejected = [{"RecordIndex": 0, "Reason": "Duplicate"}]
        writer = FakeWriter([RejectedRecordsError("1 rejected", rejected)])
        abort = AbortSignal()
        sink = await _make_sink(writer, _config(batch_size=1), abort=abort)
        await sink.write(_record(0))
        await sink.flush()

        assert abort.is_set()
        assert len(writer.calls) == 1
        assert isinstance(abort.error.__cause__, RejectedRecordsError)
        await sink.stop()

    async def test_drop_policy_keeps_running(self):
        writer = FakeWriter([RuntimeError("validation"), None])
        abort = AbortSignal()
        sink = await _make_sink(
            writer,
            _config(batch_size=1, fail_processing_on_error_default=False),
            abort=abort,
        )
        await sink.write(_record(0))
        await sink.write(_record(1))
        await sink.flush()

        assert not abort.is_set()
        assert sink.metrics.requests_dropped == 1
        assert sink.metrics.records_dropped == 1
        assert sink.metrics.records_written == 1
        await sink.stop()

    async def test_conversion_failure_aborts(self):
        def bad_converter(record: Speedtest) -> dict:
            raise ValueError("cannot convert")

        abort = AbortSignal()
        cfg = _config(batch_size=1)
        writer = FakeWriter()
        sink = TimestreamSink(
            "ts",
            cfg,
            writer,
            WriteSlotPool(1),
            abort,
            converter=bad_converter,
        )
        await sink.start()
        await sink.write(_record(0))
        await sink.flush()
        assert abort.is_set()
        assert writer.calls == []
        await sink.stop()


@pytest.mark.asyncio
class TestStop:
    async def test_drain_flushes_open_batch(self):
        writer = FakeWriter()
        sink = await _make_sink(writer)
        for i in range(5):
            await sink.write(_record(i))
        await sink.stop(drain=True)
        assert sum(len(r) for r in writer.written) == 5

    async def test_no_drain_discards(self):
        writer = FakeWriter()
        sink = await _make_sink(writer)
        for i in range(5):
            await sink.write(_record(i))
        await sink.stop(drain=False)
        assert writer.calls == []
        assert sink.metrics.records_discarded == 5
        assert sink.buffered_records == 0

    async def test_stop_releases_slots_of_cancelled_requests(self):
        gate = asyncio.Event()
        writer = FakeWriter(gate=gate)
        slots = WriteSlotPool(4)
        sink = await _make_sink(writer, _config(batch_size=1), slots=slots)
        for i in range(3):
            await sink.write(_record(i))
        await asyncio.sleep(0.05)
        assert slots.in_flight == 3

        await sink.stop(drain=False)
        assert slots.in_flight == 0

    async def test_health(self):
        sink = await _make_sink(FakeWriter())
        await sink.write(_record(0))
        health = await sink.health()
        assert health["status"] == "running"
        assert health["open_batch_size"] == 1
        await sink.stop(drain=False)
        assert (await sink.health())["status"] == "stopped"

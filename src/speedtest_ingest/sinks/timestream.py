"""Batching Timestream sink."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Sequence
from contextlib import suppress
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Protocol

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential_jitter,
)

from speedtest_ingest.config.models import SinkConfig, TimestreamConfig
from speedtest_ingest.errors import RetryBudgetExhausted, WriteFailure
from speedtest_ingest.model.converter import (
    WriteRequest,
    build_write_request,
    convert,
)
from speedtest_ingest.model.speedtest import Speedtest
from speedtest_ingest.observability.metrics import SinkMetrics
from speedtest_ingest.pipeline.signal import AbortSignal
from speedtest_ingest.sinks.failure import Decision, FailurePolicy, WriteAttempt
from speedtest_ingest.sinks.slots import WriteSlotPool

logger = structlog.get_logger()

Converter = Callable[[Speedtest], dict[str, Any]]
RequestBuilder = Callable[[Sequence[dict[str, Any]]], WriteRequest]


class Writer(Protocol):
    async def write(self, request: WriteRequest) -> Any: ...


@dataclass
class _Batch:
    opened_at: float
    records: list[Speedtest] = field(default_factory=list)


class TimestreamSink:
    """Accumulates records into batches and writes them to Timestream.

    A batch is sealed when it holds ``max_batch_size`` records or its oldest
    record has waited ``max_time_in_buffer_ms``. Sealed batches are
    dispatched in order, one WriteRequest each, holding one slot of the
    shared WriteSlotPool until the request's last attempt completes.

    ``write`` blocks while ``max_buffered_requests`` records are waiting
    for dispatch (open or sealed). A batch leaves the buffer once its
    request holds a slot, so in-flight requests are bounded by the slot
    pool alone. Once the job's AbortSignal is set, nothing more is
    dispatched and new records are discarded.
    """

    def __init__(
        self,
        sink_id: str,
        config: SinkConfig,
        writer: Writer,
        slots: WriteSlotPool,
        abort: AbortSignal,
        *,
        timestream: TimestreamConfig | None = None,
        converter: Converter = convert,
        request_builder: RequestBuilder | None = None,
    ) -> None:
        self._sink_id = sink_id
        self._batching = config.batching
        self._write_client = config.write_client
        self._writer = writer
        self._slots = slots
        self._abort = abort
        self._converter = converter
        if request_builder is None:
            ts = timestream or TimestreamConfig()
            request_builder = partial(
                build_write_request, ts.database_name, ts.table_name
            )
        self._request_builder = request_builder
        self._policy = FailurePolicy(
            config.failure_handler, config.write_client.max_error_retry
        )
        self._metrics = SinkMetrics()

        self._open: _Batch | None = None
        self._sealed: asyncio.Queue[_Batch] = asyncio.Queue()
        self._buffered = 0
        self._space_available = asyncio.Event()
        self._space_available.set()
        self._batch_opened = asyncio.Event()
        self._in_flight: set[asyncio.Task[None]] = set()
        self._timer_task: asyncio.Task[None] | None = None
        self._dispatch_task: asyncio.Task[None] | None = None
        self._closing = False

    @property
    def sink_id(self) -> str:
        return self._sink_id

    @property
    def metrics(self) -> SinkMetrics:
        return self._metrics

    @property
    def buffered_records(self) -> int:
        """Records accepted but not yet dispatched (open or sealed)."""
        return self._buffered

    async def start(self) -> None:
        self._timer_task = asyncio.create_task(self._flush_timer_loop())
        self._dispatch_task = asyncio.create_task(self._dispatch_loop())
        logger.info(
            "timestream_sink.started",
            sink_id=self.sink_id,
            max_batch_size=self._batching.max_batch_size,
            max_buffered_requests=self._batching.max_buffered_requests,
            max_time_in_buffer_ms=self._batching.max_time_in_buffer_ms,
        )

    async def write(self, record: Speedtest) -> None:
        if self._dispatch_task is None:
            msg = "TimestreamSink not started; call start() first"
            raise RuntimeError(msg)
        self._metrics.records_received += 1

        while (
            self._buffered >= self._batching.max_buffered_requests
            and not self._abort.is_set()
            and not self._closing
        ):
            self._space_available.clear()
            await self._space_available.wait()

        if self._abort.is_set() or self._closing:
            self._metrics.records_discarded += 1
            return

        if self._open is None:
            self._open = _Batch(opened_at=time.monotonic())
            self._batch_opened.set()
        self._open.records.append(record)
        self._buffered += 1

        if len(self._open.records) >= self._batching.max_batch_size:
            self._seal()

    def _seal(self) -> None:
        batch = self._open
        self._open = None
        if batch is not None and batch.records:
            self._sealed.put_nowait(batch)

    def _release(self, count: int) -> None:
        self._buffered -= count
        self._space_available.set()

    async def _flush_timer_loop(self) -> None:
        """Seal the open batch once its oldest record reaches max age."""
        max_age = self._batching.max_time_in_buffer_ms / 1000
        while True:
            batch = self._open
            if batch is None:
                self._batch_opened.clear()
                await self._batch_opened.wait()
                continue
            delay = batch.opened_at + max_age - time.monotonic()
            if delay > 0:
                await asyncio.sleep(delay)
                continue
            if self._open is batch:
                logger.debug(
                    "timestream_sink.time_flush",
                    sink_id=self.sink_id,
                    records=len(batch.records),
                )
                self._seal()

    async def _dispatch_loop(self) -> None:
        """Convert sealed batches in order and send each under a slot."""
        while True:
            batch = await self._sealed.get()
            try:
                if self._abort.is_set():
                    self._discard(batch)
                    continue
                try:
                    request = self._request_builder(
                        [self._converter(r) for r in batch.records]
                    )
                except Exception as exc:
                    logger.exception(
                        "timestream_sink.convert_failed", sink_id=self.sink_id
                    )
                    self._discard(batch)
                    self._abort.trigger(
                        f"{self.sink_id}: record conversion failed", exc
                    )
                    continue

                await self._slots.acquire()
                if self._abort.is_set():
                    self._slots.release()
                    self._discard(batch)
                    continue
                self._release(len(batch.records))
                task = asyncio.create_task(self._send(request))
                self._in_flight.add(task)
                task.add_done_callback(self._send_done)
            finally:
                self._sealed.task_done()

    def _send_done(self, task: asyncio.Task[None]) -> None:
        # Runs even when the task was cancelled before it started.
        self._in_flight.discard(task)
        self._slots.release()

    def _discard(self, batch: _Batch) -> None:
        self._metrics.records_discarded += len(batch.records)
        self._release(len(batch.records))

    async def _send(self, request: WriteRequest) -> None:
        """Send one request with retries and apply the failure policy."""
        attempt = self._policy.new_attempt(request)
        wc = self._write_client

        def _before_sleep(state: Any) -> None:
            exc = state.outcome.exception() if state.outcome else None
            self._policy.retrying(attempt, exc)
            self._metrics.retries += 1

        t0 = time.monotonic()
        try:
            async for retry_state in AsyncRetrying(
                stop=stop_after_attempt(self._policy.max_error_retry + 1),
                wait=wait_exponential_jitter(
                    multiplier=wc.initial_backoff_seconds,
                    max=wc.max_backoff_seconds,
                    jitter=wc.backoff_jitter_seconds,
                ),
                retry=retry_if_exception(self._policy.is_retryable),
                before_sleep=_before_sleep,
                reraise=True,
            ):
                with retry_state:
                    self._policy.dispatched(attempt)
                    await asyncio.wait_for(
                        self._writer.write(request),
                        timeout=wc.request_timeout_seconds,
                    )
        except Exception as exc:
            failure: BaseException = exc
            if self._policy.is_retryable(exc):
                failure = RetryBudgetExhausted(
                    f"Request {request.request_id} failed after "
                    f"{attempt.attempts} attempt(s): {exc}"
                )
                failure.__cause__ = exc
            self._on_failure(attempt, failure)
            return

        self._policy.succeeded(attempt)
        elapsed_ms = (time.monotonic() - t0) * 1000
        self._metrics.requests_succeeded += 1
        self._metrics.records_written += len(request)
        self._metrics.last_write_latency_ms = round(elapsed_ms, 2)
        logger.debug(
            "timestream_sink.flushed",
            sink_id=self.sink_id,
            request_id=request.request_id,
            records=len(request),
            attempts=attempt.attempts,
            latency_ms=round(elapsed_ms, 2),
        )

    def _on_failure(self, attempt: WriteAttempt, failure: BaseException) -> None:
        request = attempt.request
        decision = self._policy.resolve_failure(attempt, failure)
        if decision == Decision.DROP:
            self._metrics.requests_dropped += 1
            self._metrics.records_dropped += len(request)
            return
        self._metrics.requests_failed += 1
        error = WriteFailure(
            f"Write request {request.request_id} failed: {failure}",
            request.request_id,
        )
        error.__cause__ = failure
        self._abort.trigger(f"{self.sink_id}: write request failed", error)

    async def flush(self) -> None:
        """Seal the open batch and wait for every queued and in-flight request."""
        if self._dispatch_task is None:
            msg = "TimestreamSink not started; call start() first"
            raise RuntimeError(msg)
        self._seal()
        await self._sealed.join()
        if self._in_flight:
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)

    async def stop(self, *, drain: bool = True) -> None:
        """Stop the sink.

        ``drain=True`` flushes everything buffered first; ``drain=False``
        (or an aborted job) discards open and queued batches and cancels
        in-flight requests. Either way all held slots are released.
        """
        if self._timer_task is not None:
            self._timer_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._timer_task
            self._timer_task = None

        if drain and not self._abort.is_set() and self._dispatch_task is not None:
            await self.flush()

        self._closing = True
        self._space_available.set()

        if self._open is not None:
            self._discard(self._open)
            self._open = None
        while not self._sealed.empty():
            self._discard(self._sealed.get_nowait())
            self._sealed.task_done()

        tasks = list(self._in_flight)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        if self._dispatch_task is not None:
            self._dispatch_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._dispatch_task
            self._dispatch_task = None

        logger.info(
            "timestream_sink.stopped",
            sink_id=self.sink_id,
            drained=drain and not self._abort.is_set(),
            **self._metrics.as_dict(),
        )

    async def health(self) -> dict[str, Any]:
        return {
            "sink_id": self.sink_id,
            "type": "timestream",
            "status": "running" if self._dispatch_task is not None else "stopped",
            "buffered_records": self._buffered,
            "open_batch_size": len(self._open.records) if self._open else 0,
            "queued_batches": self._sealed.qsize(),
            "in_flight_requests": len(self._in_flight),
            **self._metrics.as_dict(),
        }

"""Job orchestrator: provisioning, then Kinesis sources feeding batching sinks."""

from __future__ import annotations

import asyncio
import signal
from collections.abc import Callable, Sequence
from contextlib import suppress
from typing import Any

import structlog

from speedtest_ingest.aws import create_client
from speedtest_ingest.config.models import JobConfig
from speedtest_ingest.errors import JobAborted
from speedtest_ingest.observability.metrics import MetricsReporter, SinkMetrics
from speedtest_ingest.pipeline.signal import AbortSignal
from speedtest_ingest.sinks.base import RecordSink
from speedtest_ingest.sinks.provisioner import TimestreamProvisioner
from speedtest_ingest.sinks.slots import WriteSlotPool
from speedtest_ingest.sinks.timestream import TimestreamSink
from speedtest_ingest.sinks.writer import TimestreamWriter
from speedtest_ingest.sources.base import EventSource, SourceRecord
from speedtest_ingest.sources.kinesis.source import KinesisSpeedtestSource

logger = structlog.get_logger()

SourceFactory = Callable[[int, int], EventSource]
SinkFactory = Callable[[int, WriteSlotPool, AbortSignal], RecordSink]


class SpeedtestJob:
    """Runs one source and one sink per consumer index.

    All sinks share a single WriteSlotPool. The job runs until an external
    stop, or until any stage triggers the AbortSignal (decode failure,
    terminal write failure). On stop the sinks are drained; on abort
    buffered records are discarded and ``JobAborted`` is raised.
    """

    def __init__(
        self,
        config: JobConfig,
        *,
        consumer_indices: Sequence[int] | None = None,
        provisioner: Any = None,
        source_factory: SourceFactory | None = None,
        sink_factory: SinkFactory | None = None,
        cloudwatch_client: Any = None,
    ) -> None:
        self._config = config
        total = config.parallelism
        indices = list(consumer_indices) if consumer_indices else list(range(total))
        for idx in indices:
            if not 0 <= idx < total:
                msg = f"consumer index {idx} out of range for parallelism {total}"
                raise ValueError(msg)
        self._indices = sorted(set(indices))
        self._provisioner = provisioner or TimestreamProvisioner(
            config.timestream, aws=config.aws
        )
        self._writer: TimestreamWriter | None = None
        self._source_factory = source_factory or self._default_source
        self._sink_factory = sink_factory or self._default_sink
        self._cloudwatch_client = cloudwatch_client

        self._abort: AbortSignal | None = None
        self._stop_event: asyncio.Event | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._slots: WriteSlotPool | None = None
        self._sources: dict[int, EventSource] = {}
        self._sinks: dict[int, RecordSink] = {}
        self._source_tasks: dict[int, asyncio.Task[None]] = {}
        self._reporter: MetricsReporter | None = None

    @property
    def abort_signal(self) -> AbortSignal | None:
        return self._abort

    def _default_source(self, index: int, total: int) -> EventSource:
        return KinesisSpeedtestSource(
            self._config.source, index, total, aws=self._config.aws
        )

    def _default_sink(
        self, index: int, slots: WriteSlotPool, abort: AbortSignal
    ) -> RecordSink:
        if self._writer is None:
            self._writer = TimestreamWriter(
                self._config.sink.write_client,
                self._config.timestream,
                aws=self._config.aws,
            )
        return TimestreamSink(
            f"timestream-{index}",
            self._config.sink,
            self._writer,
            slots,
            abort,
            timestream=self._config.timestream,
        )

    def run(self) -> None:
        """Run the job (blocking)."""
        asyncio.run(self.run_async())

    async def run_async(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._abort = AbortSignal()
        self._stop_event = asyncio.Event()
        self._install_signal_handlers()

        try:
            # 1. Provision database and table
            result = await self._provisioner.provision()
            logger.info("job.provisioned", **result)

            # 2. Shared in-flight slot pool
            self._slots = WriteSlotPool(
                self._config.sink.batching.max_in_flight_requests
            )

            # 3. One sink + source per consumer index
            for idx in self._indices:
                sink = self._sink_factory(idx, self._slots, self._abort)
                await sink.start()
                self._sinks[idx] = sink
                self._sources[idx] = self._source_factory(idx, self._config.parallelism)

            # 4. Metrics
            if self._config.metrics.enabled:
                self._reporter = MetricsReporter(
                    self._config.metrics,
                    self.metrics_snapshot,
                    job_name=self._config.job_name,
                    cloudwatch_client=self._get_cloudwatch_client(),
                )
                await self._reporter.start()

            for idx, source in self._sources.items():
                self._source_tasks[idx] = asyncio.create_task(
                    source.start(self._make_handler(self._sinks[idx]))
                )

            logger.info(
                "job.started",
                job_name=self._config.job_name,
                parallelism=self._config.parallelism,
                consumer_indices=self._indices,
                stream=self._config.source.stream_name,
                database=self._config.timestream.database_name,
                table=self._config.timestream.table_name,
            )

            await self._wait_for_end()
        finally:
            await self._shutdown()
            self._remove_signal_handlers()

        if self._abort.is_set():
            msg = f"Job aborted: {self._abort.reason}"
            raise JobAborted(msg) from self._abort.error

    @staticmethod
    def _make_handler(sink: RecordSink) -> Callable[[SourceRecord], Any]:
        async def _handle(item: SourceRecord) -> None:
            await sink.write(item.record)

        return _handle

    async def _wait_for_end(self) -> None:
        """Block until stop, abort, or a consumer failure."""
        assert self._abort is not None
        assert self._stop_event is not None
        abort_wait = asyncio.create_task(self._abort.wait())
        stop_wait = asyncio.create_task(self._stop_event.wait())
        pending: set[asyncio.Task[Any]] = set(self._source_tasks.values())
        try:
            while True:
                done, _ = await asyncio.wait(
                    pending | {abort_wait, stop_wait},
                    return_when=asyncio.FIRST_COMPLETED,
                )
                for idx, task in self._source_tasks.items():
                    if task in done and not task.cancelled() and task.exception():
                        self._abort.trigger(
                            f"consumer {idx} failed", task.exception()
                        )
                if abort_wait in done or stop_wait in done or self._abort.is_set():
                    return
                pending -= done
        finally:
            abort_wait.cancel()
            stop_wait.cancel()

    async def _shutdown(self) -> None:
        """Stop sources, then drain (stop) or discard (abort) the sinks."""
        aborted = self._abort is not None and self._abort.is_set()

        for source in self._sources.values():
            source.stop()
        for task in self._source_tasks.values():
            task.cancel()
        for task in self._source_tasks.values():
            with suppress(asyncio.CancelledError, Exception):
                await task

        for sink in self._sinks.values():
            try:
                await sink.stop(drain=not aborted)
            except Exception as exc:
                logger.error(
                    "job.sink_stop_error", sink_id=sink.sink_id, error=str(exc)
                )

        if self._reporter is not None:
            await self._reporter.stop()
        if self._writer is not None:
            self._writer.close()

        logger.info(
            "job.stopped",
            aborted=aborted,
            reason=self._abort.reason if self._abort else None,
            slots_in_flight=self._slots.in_flight if self._slots else 0,
        )

    def _install_signal_handlers(self) -> None:
        assert self._loop is not None
        for sig in (signal.SIGINT, signal.SIGTERM):
            # Not available on Windows or outside the main thread.
            with suppress(NotImplementedError, RuntimeError, ValueError):
                self._loop.add_signal_handler(sig, self.stop)

    def _remove_signal_handlers(self) -> None:
        if self._loop is None:
            return
        for sig in (signal.SIGINT, signal.SIGTERM):
            with suppress(NotImplementedError, RuntimeError, ValueError):
                self._loop.remove_signal_handler(sig)

    def _get_cloudwatch_client(self) -> Any:
        if self._cloudwatch_client is None and self._config.metrics.emit_to_cloudwatch:
            self._cloudwatch_client = create_client("cloudwatch", self._config.aws)
        return self._cloudwatch_client

    def stop(self) -> None:
        """Request a graceful stop (safe to call from any thread)."""
        if self._stop_event is None or self._loop is None:
            return
        logger.info("job.stop_requested")
        self._loop.call_soon_threadsafe(self._stop_event.set)

    def watermarks(self) -> dict[int, int]:
        return {idx: s.current_watermark() for idx, s in self._sources.items()}

    def metrics_snapshot(self) -> dict[str, Any]:
        sink_metrics = [
            s.metrics for s in self._sinks.values() if isinstance(s, TimestreamSink)
        ]
        return {
            "sink": SinkMetrics.combine(sink_metrics),
            "slots_in_flight": self._slots.in_flight if self._slots else 0,
            "slots_peak": self._slots.peak if self._slots else 0,
            "watermarks": self.watermarks(),
        }

    async def health(self) -> dict[str, Any]:
        """Aggregate health from every source and sink."""
        sources = []
        for source in self._sources.values():
            try:
                sources.append(await source.health())
            except Exception as exc:
                sources.append({"status": "error", "error": str(exc)})
        sinks = []
        for sink in self._sinks.values():
            try:
                sinks.append(await sink.health())
            except Exception as exc:
                sinks.append(
                    {"sink_id": sink.sink_id, "status": "error", "error": str(exc)}
                )
        return {
            "job_name": self._config.job_name,
            "aborted": self._abort.is_set() if self._abort else False,
            "sources": sources,
            "sinks": sinks,
            "slots_in_flight": self._slots.in_flight if self._slots else 0,
        }

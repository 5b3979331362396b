"""Kinesis source that reads the shards one consumer instance owns."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from contextlib import suppress
from functools import partial
from typing import Any

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential_jitter,
)

from speedtest_ingest.aws import create_client, error_code, is_transient_aws_error
from speedtest_ingest.config.models import (
    AwsConfig,
    IteratorType,
    KinesisSourceConfig,
)
from speedtest_ingest.errors import DecodeError
from speedtest_ingest.model.speedtest import Speedtest, decode
from speedtest_ingest.sources.base import RecordHandler, SourceRecord
from speedtest_ingest.sources.kinesis.adaptive import (
    ADAPTIVE_IDLE_INTERVAL_SECONDS,
    AdaptiveReadLimiter,
)
from speedtest_ingest.streaming.assigner import owned_partitions
from speedtest_ingest.streaming.watermark import MonotonousWatermarkGenerator

logger = structlog.get_logger()

Decoder = Callable[[bytes], Speedtest]


class KinesisSpeedtestSource:
    """Polls the Kinesis shards assigned to one consumer index.

    One reader task per owned shard. A discovery task re-lists the stream
    every ``shard_discovery_interval_ms`` and starts readers for new owned
    shards, such as the children of a reshard. Records of a shard are
    handed to the handler in arrival order; the handler is awaited, so a
    blocked sink slows the reader down. A decode error ends the source
    with DecodeError.
    """

    def __init__(
        self,
        config: KinesisSourceConfig,
        consumer_index: int,
        total_consumers: int,
        *,
        aws: AwsConfig | None = None,
        decoder: Decoder = decode,
        client: Any = None,
    ) -> None:
        if not 0 <= consumer_index < total_consumers:
            msg = (
                f"consumer_index {consumer_index} out of range for "
                f"{total_consumers} consumer(s)"
            )
            raise ValueError(msg)
        self._config = config
        self._aws = aws or AwsConfig()
        self._consumer_index = consumer_index
        self._total_consumers = total_consumers
        self._decoder = decoder
        self._client = client
        self._running = False
        self._stopped = asyncio.Event()
        self._failed = asyncio.Event()
        self._failure: BaseException | None = None
        # Every shard id a reader was started for, closed ones included.
        self._shard_tasks: dict[str, asyncio.Task[None]] = {}
        self._discovery_task: asyncio.Task[None] | None = None
        self._owned_shards: list[str] = []
        self._last_sequence: dict[str, str] = {}
        self._watermarks = MonotonousWatermarkGenerator()
        self._records_read = 0

    def _get_client(self):  # noqa: ANN202
        if self._client is None:
            self._client = create_client("kinesis", self._aws)
        return self._client

    @property
    def consumer_index(self) -> int:
        return self._consumer_index

    @property
    def owned_shards(self) -> list[str]:
        return list(self._owned_shards)

    @property
    def records_read(self) -> int:
        return self._records_read

    def current_watermark(self) -> int:
        return self._watermarks.current_watermark()

    async def list_shards(self) -> list[str]:
        """Return every shard id of the stream (paginated ListShards)."""
        client = self._get_client()
        shard_ids: list[str] = []
        kwargs: dict[str, Any] = {"StreamName": self._config.stream_name}
        while True:
            resp = await self._call_with_retry(client.list_shards, **kwargs)
            shard_ids.extend(s["ShardId"] for s in resp.get("Shards", []))
            next_token = resp.get("NextToken")
            if not next_token:
                return shard_ids
            # StreamName must not be combined with NextToken.
            kwargs = {"NextToken": next_token}

    def _owned(self, shard_ids: list[str]) -> list[str]:
        return [
            str(s)
            for s in owned_partitions(
                shard_ids, self._consumer_index, self._total_consumers
            )
        ]

    async def start(self, handler: RecordHandler) -> None:
        """Start per-shard readers and block until stopped.

        Re-raises the first reader or discovery failure (e.g. DecodeError)
        after cancelling the other tasks.
        """
        self._running = True
        all_shards = await self.list_shards()
        self._owned_shards = self._owned(all_shards)

        logger.info(
            "kinesis_source.started",
            stream=self._config.stream_name,
            consumer_index=self._consumer_index,
            total_consumers=self._total_consumers,
            owned_shards=self._owned_shards,
            total_shards=len(all_shards),
            adaptive_reads=self._config.adaptive_reads,
        )

        for shard_id in self._owned_shards:
            self._start_reader(shard_id, handler)
        if self._config.shard_discovery_interval_ms > 0:
            self._discovery_task = asyncio.create_task(self._discover_loop(handler))
            self._discovery_task.add_done_callback(self._task_done)

        stop_wait = asyncio.create_task(self._stopped.wait())
        fail_wait = asyncio.create_task(self._failed.wait())
        try:
            await asyncio.wait(
                {stop_wait, fail_wait}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            stop_wait.cancel()
            fail_wait.cancel()
            tasks = list(self._shard_tasks.values())
            if self._discovery_task is not None:
                tasks.append(self._discovery_task)
            for task in tasks:
                task.cancel()
            for task in tasks:
                with suppress(asyncio.CancelledError, Exception):
                    await task

        if self._failure is not None:
            raise self._failure

    def _start_reader(self, shard_id: str, handler: RecordHandler) -> None:
        task = asyncio.create_task(self._read_shard(shard_id, handler))
        task.add_done_callback(self._task_done)
        self._shard_tasks[shard_id] = task

    def _task_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled() or task.exception() is None:
            return
        if self._failure is None:
            self._failure = task.exception()
            self._failed.set()

    async def _discover_loop(self, handler: RecordHandler) -> None:
        interval = self._config.shard_discovery_interval_ms / 1000
        while self._running:
            await asyncio.sleep(interval)
            await self.discover_shards(handler)

    async def discover_shards(self, handler: RecordHandler) -> list[str]:
        """Re-list the stream and start readers for newly owned shards.

        Shards seen before (including closed ones) are left alone, so a
        reshard's children are picked up exactly once.
        """
        all_shards = await self.list_shards()
        new_shards = [
            s for s in self._owned(all_shards) if s not in self._shard_tasks
        ]
        if not self._running or not new_shards:
            return []
        for shard_id in new_shards:
            self._owned_shards.append(shard_id)
            self._start_reader(shard_id, handler)
        logger.info(
            "kinesis_source.shards_discovered",
            stream=self._config.stream_name,
            consumer_index=self._consumer_index,
            new_shards=new_shards,
            total_shards=len(all_shards),
        )
        return new_shards

    async def _read_shard(self, shard_id: str, handler: RecordHandler) -> None:
        """Poll a single shard until the source stops or the shard closes."""
        cfg = self._config
        iterator = await self._shard_iterator(shard_id)
        limiter = AdaptiveReadLimiter() if cfg.adaptive_reads else None
        last_poll = time.monotonic()

        while self._running and iterator:
            limit = limiter.limit if limiter else cfg.max_records_per_poll
            try:
                resp = await self._get_records(iterator, limit)
            except Exception as exc:
                if error_code(exc) != "ExpiredIteratorException":
                    raise
                logger.warning("kinesis_source.iterator_expired", shard_id=shard_id)
                iterator = await self._shard_iterator(
                    shard_id, after_sequence=self._last_sequence.get(shard_id)
                )
                continue

            records = resp.get("Records", [])
            batch_bytes = 0
            for raw in records:
                data = raw["Data"]
                sequence_number = raw["SequenceNumber"]
                batch_bytes += len(data)
                try:
                    record = self._decoder(data)
                except DecodeError:
                    logger.error(
                        "kinesis_source.decode_failed",
                        shard_id=shard_id,
                        sequence_number=sequence_number,
                        consumer_index=self._consumer_index,
                    )
                    raise
                self._watermarks.on_record(record.timestamp)
                self._last_sequence[shard_id] = sequence_number
                self._records_read += 1
                await handler(
                    SourceRecord(
                        record=record,
                        timestamp=record.timestamp,
                        shard_id=shard_id,
                        sequence_number=sequence_number,
                    )
                )

            iterator = resp.get("NextShardIterator")

            if limiter is not None:
                now = time.monotonic()
                limiter.update(now - last_poll, len(records), batch_bytes)
                last_poll = now
                if not records:
                    await asyncio.sleep(ADAPTIVE_IDLE_INTERVAL_SECONDS)
            else:
                await asyncio.sleep(cfg.poll_interval_ms / 1000)

        if not iterator:
            logger.info(
                "kinesis_source.shard_closed",
                shard_id=shard_id,
                consumer_index=self._consumer_index,
            )

    async def _shard_iterator(
        self, shard_id: str, after_sequence: str | None = None
    ) -> str | None:
        cfg = self._config
        kwargs: dict[str, Any] = {
            "StreamName": cfg.stream_name,
            "ShardId": shard_id,
        }
        if after_sequence is not None:
            kwargs["ShardIteratorType"] = "AFTER_SEQUENCE_NUMBER"
            kwargs["StartingSequenceNumber"] = after_sequence
        else:
            kwargs["ShardIteratorType"] = cfg.iterator_type.value
            if cfg.iterator_type == IteratorType.AT_TIMESTAMP:
                kwargs["Timestamp"] = cfg.initial_timestamp

        resp = await self._call_with_retry(
            self._get_client().get_shard_iterator, **kwargs
        )
        return resp.get("ShardIterator")

    async def _get_records(self, iterator: str, limit: int) -> dict[str, Any]:
        return await self._call_with_retry(
            self._get_client().get_records, ShardIterator=iterator, Limit=limit
        )

    async def _call_with_retry(self, fn: Any, **kwargs: Any) -> dict[str, Any]:
        """Run a blocking Kinesis call, retrying throttling with backoff."""
        cfg = self._config
        loop = asyncio.get_running_loop()
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(cfg.get_records_max_retries + 1),
            wait=wait_exponential_jitter(
                multiplier=cfg.backoff_base_ms / 1000,
                max=cfg.backoff_max_ms / 1000,
                exp_base=cfg.backoff_exponent,
                jitter=cfg.backoff_base_ms / 1000,
            ),
            retry=retry_if_exception(is_transient_aws_error),
            before_sleep=lambda state: logger.warning(
                "kinesis_source.read_throttled",
                attempt=state.attempt_number,
                error=str(state.outcome.exception()) if state.outcome else None,
            ),
            reraise=True,
        ):
            with attempt:
                return await loop.run_in_executor(None, partial(fn, **kwargs))
        raise AssertionError("unreachable")

    def stop(self) -> None:
        """Signal the source to stop consuming."""
        self._running = False
        self._stopped.set()
        for task in self._shard_tasks.values():
            task.cancel()
        if self._discovery_task is not None:
            self._discovery_task.cancel()

    async def health(self) -> dict[str, Any]:
        return {
            "status": "running" if self._running else "stopped",
            "stream": self._config.stream_name,
            "consumer_index": self._consumer_index,
            "owned_shards": self._owned_shards,
            "records_read": self._records_read,
            "watermark": self.current_watermark(),
            "late_records": self._watermarks.late_records,
        }

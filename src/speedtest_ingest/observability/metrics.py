"""Sink metrics and the periodic metrics reporter."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from contextlib import suppress
from dataclasses import asdict, dataclass, fields
from datetime import datetime, timezone
from typing import Any

import structlog

from speedtest_ingest.config.models import MetricsConfig

logger = structlog.get_logger()


@dataclass
class SinkMetrics:
    records_received: int = 0
    records_written: int = 0
    records_dropped: int = 0
    records_discarded: int = 0
    requests_succeeded: int = 0
    requests_failed: int = 0
    requests_dropped: int = 0
    retries: int = 0
    last_write_latency_ms: float = 0.0

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def combine(cls, items: list[SinkMetrics]) -> SinkMetrics:
        """Sum counters across sinks; latency is the max of the last values."""
        total = cls()
        for m in items:
            for f in fields(cls):
                if f.name == "last_write_latency_ms":
                    total.last_write_latency_ms = max(
                        total.last_write_latency_ms, m.last_write_latency_ms
                    )
                else:
                    setattr(total, f.name, getattr(total, f.name) + getattr(m, f.name))
        return total


# Counter name -> CloudWatch metric name
_CLOUDWATCH_METRICS: dict[str, tuple[str, str]] = {
    "records_written": ("RecordsWritten", "Count"),
    "records_dropped": ("RecordsDropped", "Count"),
    "requests_succeeded": ("RequestsSucceeded", "Count"),
    "requests_failed": ("RequestsFailed", "Count"),
    "retries": ("WriteRetries", "Count"),
    "last_write_latency_ms": ("WriteLatency", "Milliseconds"),
}

Snapshot = Callable[[], dict[str, Any]]


class MetricsReporter:
    """Periodically logs a job metrics snapshot and publishes it to CloudWatch.

    *snapshot* returns ``{"sink": SinkMetrics, ...extra gauges}``. Counters
    are published as deltas since the previous report.
    """

    def __init__(
        self,
        config: MetricsConfig,
        snapshot: Snapshot,
        *,
        job_name: str,
        cloudwatch_client: Any = None,
    ) -> None:
        self._config = config
        self._snapshot = snapshot
        self._job_name = job_name
        self._client = cloudwatch_client
        self._previous = SinkMetrics()
        self._task: asyncio.Task[None] | None = None

    async def start(self) -> None:
        self._task = asyncio.create_task(self._report_loop())

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            with suppress(asyncio.CancelledError):
                await self._task
            self._task = None

    async def _report_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.interval_seconds)
            try:
                await self.report()
            except Exception as exc:
                logger.warning("metrics.report_failed", error=str(exc))

    async def report(self) -> dict[str, Any]:
        snap = self._snapshot()
        sink: SinkMetrics = snap["sink"]
        gauges = {k: v for k, v in snap.items() if k != "sink"}
        logger.info("metrics.snapshot", **sink.as_dict(), **gauges)
        if self._config.emit_to_cloudwatch and self._client is not None:
            loop = asyncio.get_running_loop()
            data = self._metric_data(sink)
            await loop.run_in_executor(
                None,
                lambda: self._client.put_metric_data(
                    Namespace=self._config.namespace, MetricData=data
                ),
            )
        self._previous = SinkMetrics(**sink.as_dict())
        return snap

    def _metric_data(self, current: SinkMetrics) -> list[dict[str, Any]]:
        now = datetime.now(timezone.utc)
        data: list[dict[str, Any]] = []
        for attr, (name, unit) in _CLOUDWATCH_METRICS.items():
            value = getattr(current, attr)
            if unit == "Count":
                value = value - getattr(self._previous, attr)
            data.append(
                {
                    "MetricName": name,
                    "Dimensions": [{"Name": "Job", "Value": self._job_name}],
                    "Timestamp": now,
                    "Value": float(value),
                    "Unit": unit,
                }
            )
        return data

"""Health checks for the stream and the time-series store."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

import structlog

from speedtest_ingest.aws import create_client
from speedtest_ingest.config.models import JobConfig

logger = structlog.get_logger()


class Status(StrEnum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


@dataclass
class ComponentHealth:
    name: str
    status: Status = Status.UNKNOWN
    detail: str = ""


@dataclass
class JobHealth:
    components: list[ComponentHealth] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return all(c.status == Status.HEALTHY for c in self.components)

    @property
    def summary(self) -> dict[str, str]:
        return {c.name: c.status.value for c in self.components}


def check_kinesis(stream_name: str, client: Any) -> ComponentHealth:
    """Check the input stream."""
    try:
        resp = client.describe_stream_summary(StreamName=stream_name)
        summary = resp["StreamDescriptionSummary"]
        status = summary.get("StreamStatus", "UNKNOWN")
        shards = summary.get("OpenShardCount", 0)
        healthy = status in ("ACTIVE", "UPDATING")
        return ComponentHealth(
            name="kinesis",
            status=Status.HEALTHY if healthy else Status.UNHEALTHY,
            detail=f"{stream_name}: {status}, {shards} open shard(s)",
        )
    except Exception as exc:
        return ComponentHealth(name="kinesis", status=Status.UNHEALTHY, detail=str(exc))


def check_timestream(database_name: str, table_name: str, client: Any) -> ComponentHealth:
    """Check the target table."""
    try:
        resp = client.describe_table(DatabaseName=database_name, TableName=table_name)
        table = resp["Table"]
        status = table.get("TableStatus", "UNKNOWN")
        return ComponentHealth(
            name="timestream",
            status=Status.HEALTHY if status == "ACTIVE" else Status.UNHEALTHY,
            detail=f"{database_name}.{table_name}: {status}",
        )
    except Exception as exc:
        return ComponentHealth(
            name="timestream", status=Status.UNHEALTHY, detail=str(exc)
        )


def check_job_health(
    config: JobConfig,
    *,
    kinesis_client: Any = None,
    timestream_client: Any = None,
) -> JobHealth:
    """Run all health checks and return the aggregated result."""
    kinesis = kinesis_client or create_client("kinesis", config.aws)
    timestream = timestream_client or create_client(
        "timestream-write",
        config.aws,
        endpoint_url=config.timestream.endpoint_override,
    )
    components = [
        check_kinesis(config.source.stream_name, kinesis),
        check_timestream(
            config.timestream.database_name, config.timestream.table_name, timestream
        ),
    ]
    result = JobHealth(components=components)
    logger.info("health.checked", **result.summary)
    return result

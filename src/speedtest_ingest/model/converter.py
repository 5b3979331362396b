"""Speedtest -> Timestream record conversion and write request building."""

from __future__ import annotations

import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from speedtest_ingest.model.speedtest import Speedtest

MEASURE_NAME = "speedtest"

# Record attribute -> Timestream measure name
_MEASURES: tuple[tuple[str, str], ...] = (
    ("download_bps", "download"),
    ("upload_bps", "upload"),
    ("ping_ms", "ping"),
    ("jitter_ms", "jitter"),
    ("packet_loss", "packet_loss"),
)

_DIMENSIONS: tuple[tuple[str, str], ...] = (
    ("device_id", "device_id"),
    ("isp", "isp"),
    ("server_id", "server_id"),
    ("server_name", "server_name"),
)


def convert(record: Speedtest) -> dict[str, Any]:
    """Convert one Speedtest into a single multi-measure Timestream record."""
    dimensions = [
        {"Name": name, "Value": str(getattr(record, attr))}
        for attr, name in _DIMENSIONS
        if getattr(record, attr) is not None
    ]
    measures = [
        {"Name": name, "Value": repr(float(getattr(record, attr))), "Type": "DOUBLE"}
        for attr, name in _MEASURES
        if getattr(record, attr) is not None
    ]
    return {
        "Dimensions": dimensions,
        "MeasureName": MEASURE_NAME,
        "MeasureValueType": "MULTI",
        "MeasureValues": measures,
        "Time": str(record.timestamp),
        "TimeUnit": "MILLISECONDS",
    }


@dataclass(frozen=True, slots=True)
class WriteRequest:
    """One WriteRecords call. Built from exactly one sealed batch."""

    database_name: str
    table_name: str
    records: tuple[dict[str, Any], ...]
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def __len__(self) -> int:
        return len(self.records)

    def to_api_kwargs(self) -> dict[str, Any]:
        return {
            "DatabaseName": self.database_name,
            "TableName": self.table_name,
            "Records": list(self.records),
        }


def build_write_request(
    database_name: str, table_name: str, rows: Sequence[dict[str, Any]]
) -> WriteRequest:
    """Wrap converted rows into a WriteRequest, preserving their order."""
    return WriteRequest(
        database_name=database_name,
        table_name=table_name,
        records=tuple(rows),
    )

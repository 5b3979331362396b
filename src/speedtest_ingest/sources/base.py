"""Source-side record envelope and event source protocol."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from speedtest_ingest.model.speedtest import Speedtest


@dataclass(slots=True)
class SourceRecord:
    """A decoded record with its event timestamp and stream position."""

    record: Speedtest
    timestamp: int  # event time, epoch milliseconds
    shard_id: str
    sequence_number: str


RecordHandler = Callable[[SourceRecord], Awaitable[None]]


@runtime_checkable
class EventSource(Protocol):
    """Protocol every stream source must satisfy."""

    async def start(self, handler: RecordHandler) -> None:
        """Consume until stopped; call *handler(record)* for each record."""
        ...

    def stop(self) -> None:
        """Signal the source to stop consuming."""
        ...

    def current_watermark(self) -> int:
        """Lower bound on event timestamps still to come from this source."""
        ...

    async def health(self) -> dict[str, Any]:
        """Return source health information."""
        ...

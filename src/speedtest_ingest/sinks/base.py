"""Sink protocol used by the job runner."""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from speedtest_ingest.model.speedtest import Speedtest


@runtime_checkable
class RecordSink(Protocol):
    """Protocol every record sink must satisfy."""

    @property
    def sink_id(self) -> str:
        """Unique identifier for this sink instance."""
        ...

    async def start(self) -> None:
        """Start background tasks (flush timer, dispatcher)."""
        ...

    async def write(self, record: Speedtest) -> None:
        """Buffer one record; may block under backpressure."""
        ...

    async def flush(self) -> None:
        """Dispatch everything buffered and wait for completion."""
        ...

    async def stop(self, *, drain: bool = True) -> None:
        """Drain (or discard) buffered records and release resources."""
        ...

    async def health(self) -> dict[str, Any]:
        """Return a health-check status dict."""
        ...

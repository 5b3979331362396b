"""Error taxonomy for the ingestion job.

Only ``TransientWriteError`` is recovered locally (retry with backoff).
Everything else ends in a job-level abort.
"""

from __future__ import annotations

from typing import Any


class IngestError(Exception):
    """Base class for all ingestion errors."""


class ConfigurationError(IngestError, ValueError):
    """Invalid or missing startup parameter."""


class DecodeError(IngestError):
    """Raw stream bytes could not be decoded into a Speedtest record."""

    def __init__(self, message: str, payload: bytes | None = None) -> None:
        super().__init__(message)
        self.payload = payload


class TransientWriteError(IngestError):
    """Retryable store or network failure (throttling, 5xx, timeouts)."""


class RejectedRecordsError(IngestError):
    """The store rejected individual records of an otherwise valid request."""

    def __init__(self, message: str, rejected: list[dict[str, Any]]) -> None:
        super().__init__(message)
        self.rejected = rejected


class RetryBudgetExhausted(IngestError):
    """A write request used up its retry budget."""


class WriteFailure(IngestError):
    """Terminal write failure for one request."""

    def __init__(self, message: str, request_id: str) -> None:
        super().__init__(message)
        self.request_id = request_id


class JobAborted(IngestError):
    """Raised by the job runner after a fail-fast abort."""

"""Write request state machine and failure policy.

Per request: PENDING -> DISPATCHED -> {SUCCEEDED | RETRYING | FAILED}, with
RETRYING -> DISPATCHED while retry budget remains. A FAILED request either
aborts the job or is dropped, depending on FailureHandlerConfig. Under the
shipped defaults every failure aborts.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum

import structlog

from speedtest_ingest.config.models import FailureHandlerConfig
from speedtest_ingest.errors import (
    RejectedRecordsError,
    RetryBudgetExhausted,
    TransientWriteError,
)
from speedtest_ingest.model.converter import WriteRequest

logger = structlog.get_logger()


class WriteState(StrEnum):
    PENDING = "pending"
    DISPATCHED = "dispatched"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    DROPPED = "dropped"


class Decision(StrEnum):
    """What to do with a request that cannot be completed."""

    ABORT = "abort"
    DROP = "drop"


class InvalidTransition(RuntimeError):
    pass


@dataclass
class WriteAttempt:
    """Mutable attempt bookkeeping for one immutable WriteRequest."""

    request: WriteRequest
    retries_remaining: int
    state: WriteState = WriteState.PENDING
    attempts: int = 0
    last_error: BaseException | None = None

    @property
    def finished(self) -> bool:
        return self.state in (
            WriteState.SUCCEEDED,
            WriteState.FAILED,
            WriteState.DROPPED,
        )


_ALLOWED: dict[WriteState, frozenset[WriteState]] = {
    WriteState.PENDING: frozenset({WriteState.DISPATCHED}),
    WriteState.DISPATCHED: frozenset(
        {WriteState.SUCCEEDED, WriteState.RETRYING, WriteState.FAILED}
    ),
    WriteState.RETRYING: frozenset({WriteState.DISPATCHED, WriteState.FAILED}),
    WriteState.FAILED: frozenset({WriteState.DROPPED}),
    WriteState.SUCCEEDED: frozenset(),
    WriteState.DROPPED: frozenset(),
}


class FailurePolicy:
    """Decides retry / drop / abort for each write outcome."""

    def __init__(self, config: FailureHandlerConfig, max_error_retry: int) -> None:
        self._config = config
        self._max_error_retry = max_error_retry

    @property
    def max_error_retry(self) -> int:
        return self._max_error_retry

    def new_attempt(self, request: WriteRequest) -> WriteAttempt:
        return WriteAttempt(request=request, retries_remaining=self._max_error_retry)

    @staticmethod
    def is_retryable(exc: BaseException) -> bool:
        return isinstance(exc, (TransientWriteError, TimeoutError))

    @staticmethod
    def _transition(attempt: WriteAttempt, target: WriteState) -> None:
        if target not in _ALLOWED[attempt.state]:
            msg = f"Invalid write state transition {attempt.state} -> {target}"
            raise InvalidTransition(msg)
        attempt.state = target

    def dispatched(self, attempt: WriteAttempt) -> None:
        self._transition(attempt, WriteState.DISPATCHED)
        attempt.attempts += 1

    def succeeded(self, attempt: WriteAttempt) -> None:
        self._transition(attempt, WriteState.SUCCEEDED)

    def retrying(self, attempt: WriteAttempt, exc: BaseException) -> None:
        """Record a retryable error; consumes one unit of retry budget."""
        if attempt.retries_remaining <= 0:
            msg = (
                f"Request {attempt.request.request_id} exhausted "
                f"{self._max_error_retry} retries"
            )
            raise RetryBudgetExhausted(msg) from exc
        self._transition(attempt, WriteState.RETRYING)
        attempt.retries_remaining -= 1
        attempt.last_error = exc
        logger.warning(
            "failure_policy.retrying",
            request_id=attempt.request.request_id,
            attempt=attempt.attempts,
            retries_remaining=attempt.retries_remaining,
            error=str(exc),
        )

    def resolve_failure(self, attempt: WriteAttempt, exc: BaseException) -> Decision:
        """Move a request to FAILED and decide between abort and drop."""
        self._transition(attempt, WriteState.FAILED)
        attempt.last_error = exc

        if isinstance(exc, RejectedRecordsError):
            abort = self._config.fail_processing_on_rejected_records
        else:
            abort = self._config.fail_processing_on_error_default
        decision = Decision.ABORT if abort else Decision.DROP

        request = attempt.request
        log_fields: dict[str, object] = {
            "request_id": request.request_id,
            "records": len(request),
            "attempts": attempt.attempts,
            "decision": decision.value,
            "error": str(exc),
            "error_type": type(exc).__name__,
        }
        if isinstance(exc, RejectedRecordsError):
            log_fields["rejected"] = exc.rejected
        if self._config.print_failed_requests:
            log_fields["request"] = request.to_api_kwargs()
        logger.error("failure_policy.request_failed", **log_fields)

        if decision == Decision.DROP:
            self._transition(attempt, WriteState.DROPPED)
        return decision

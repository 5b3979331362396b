"""Job-wide abort signal."""

from __future__ import annotations

import asyncio

import structlog

logger = structlog.get_logger()


class AbortSignal:
    """Cancellation channel from any pipeline stage to the job runner.

    The first trigger wins: its reason and error are kept, later triggers
    are logged and ignored.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None
        self._error: BaseException | None = None

    def trigger(self, reason: str, error: BaseException | None = None) -> None:
        if self._event.is_set():
            logger.debug("abort_signal.already_set", reason=reason)
            return
        self._reason = reason
        self._error = error
        self._event.set()
        logger.error(
            "abort_signal.triggered",
            reason=reason,
            error=str(error) if error else None,
            error_type=type(error).__name__ if error else None,
        )

    def is_set(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()

    @property
    def reason(self) -> str | None:
        return self._reason

    @property
    def error(self) -> BaseException | None:
        return self._error

"""Timestream WriteRecords client wrapper."""

from __future__ import annotations

import asyncio
from concurrent.futures import ThreadPoolExecutor
from functools import partial
from typing import Any

import structlog
from botocore.config import Config

from speedtest_ingest.aws import create_client, error_code, is_transient_aws_error
from speedtest_ingest.config.models import AwsConfig, TimestreamConfig, WriteClientConfig
from speedtest_ingest.errors import RejectedRecordsError, TransientWriteError
from speedtest_ingest.model.converter import WriteRequest

logger = structlog.get_logger()


def build_client_config(config: WriteClientConfig) -> Config:
    """botocore client config: connection pool sized for the in-flight cap.

    botocore's own retries are disabled; the sink retries whole requests.
    """
    return Config(
        max_pool_connections=config.max_concurrency,
        read_timeout=config.request_timeout_seconds,
        connect_timeout=config.request_timeout_seconds,
        retries={"total_max_attempts": 1, "mode": "standard"},
    )


class TimestreamWriter:
    """Sends WriteRequests with ``timestream-write:WriteRecords``.

    Blocking boto3 calls run in a dedicated thread pool sized to
    ``max_concurrency``. Errors are mapped onto the ingest error taxonomy:
    transient failures become TransientWriteError, partial rejections
    RejectedRecordsError; anything else is raised unchanged.
    """

    def __init__(
        self,
        write_config: WriteClientConfig,
        timestream: TimestreamConfig,
        *,
        aws: AwsConfig | None = None,
        client: Any = None,
    ) -> None:
        self._config = write_config
        self._timestream = timestream
        self._aws = aws or AwsConfig()
        self._client = client
        self._executor: ThreadPoolExecutor | None = None

    def _get_client(self):  # noqa: ANN202
        if self._client is None:
            self._client = create_client(
                "timestream-write",
                self._aws,
                endpoint_url=self._timestream.endpoint_override,
                client_config=build_client_config(self._config),
            )
        return self._client

    def _get_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self._config.max_concurrency,
                thread_name_prefix="timestream-write",
            )
        return self._executor

    async def write(self, request: WriteRequest) -> dict[str, Any]:
        client = self._get_client()
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(
                self._get_executor(),
                partial(client.write_records, **request.to_api_kwargs()),
            )
        except Exception as exc:
            if error_code(exc) == "RejectedRecordsException":
                rejected = exc.response.get("RejectedRecords", [])  # type: ignore[attr-defined]
                msg = (
                    f"{len(rejected)} record(s) rejected in request "
                    f"{request.request_id}"
                )
                raise RejectedRecordsError(msg, rejected) from exc
            if is_transient_aws_error(exc):
                raise TransientWriteError(str(exc)) from exc
            raise

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None

"""Unit tests for the Timestream WriteRecords wrapper and AWS helpers."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from speedtest_ingest.aws import error_code, is_transient_aws_error
from speedtest_ingest.config.models import TimestreamConfig, WriteClientConfig
from speedtest_ingest.errors import RejectedRecordsError, TransientWriteError
from speedtest_ingest.model.converter import build_write_request
from speedtest_ingest.sinks.writer import TimestreamWriter, build_client_config


def _client_error(code: str, status: int = 400, **extra: object) -> ClientError:
    response: dict = {
        "Error": {"Code": code, "Message": code},
        "ResponseMetadata": {"HTTPStatusCode": status},
    }
    response.update(extra)
    return ClientError(response, "WriteRecords")


def _writer(client: MagicMock) -> TimestreamWriter:
    return TimestreamWriter(WriteClientConfig(), TimestreamConfig(), client=client)


def _request():
    return build_write_request("faster", "speedtests", [{"Time": "1"}])


class TestAwsErrors:
    def test_error_code(self):
        assert error_code(_client_error("ThrottlingException")) == "ThrottlingException"
        assert error_code(RuntimeError()) is None

    def test_throttling_is_transient(self):
        assert is_transient_aws_error(_client_error("ThrottlingException"))

    def test_5xx_is_transient(self):
        assert is_transient_aws_error(_client_error("Unknown", status=503))

    def test_connection_error_is_transient(self):
        assert is_transient_aws_error(EndpointConnectionError(endpoint_url="x"))

    def test_validation_is_not_transient(self):
        assert not is_transient_aws_error(_client_error("ValidationException"))


class TestBuildClientConfig:
    def test_pool_sized_for_concurrency(self):
        cfg = build_client_config(WriteClientConfig(max_concurrency=50))
        assert cfg.max_pool_connections == 50
        assert cfg.retries["total_max_attempts"] == 1


@pytest.mark.asyncio
class TestTimestreamWriter:
    async def test_write_passes_request(self):
        client = MagicMock()
        client.write_records.return_value = {"RecordsIngested": {"Total": 1}}
        writer = _writer(client)

        result = await writer.write(_request())

        assert result["RecordsIngested"]["Total"] == 1
        kwargs = client.write_records.call_args.kwargs
        assert kwargs["DatabaseName"] == "faster"
        assert kwargs["TableName"] == "speedtests"
        assert kwargs["Records"] == [{"Time": "1"}]
        writer.close()

    async def test_rejected_records_mapped(self):
        client = MagicMock()
        client.write_records.side_effect = _client_error(
            "RejectedRecordsException",
            RejectedRecords=[{"RecordIndex": 0, "Reason": "Duplicate"}],
        )
        writer = _writer(client)

        with pytest.raises(RejectedRecordsError) as exc_info:
            await writer.write(_request())
        assert exc_info.value.rejected == [{"RecordIndex": 0, "Reason": "Duplicate"}]
        writer.close()

    async def test_throttling_mapped_to_transient(self):
        client = MagicMock()
        client.write_records.side_effect = _client_error("ThrottlingException")
        writer = _writer(client)

        with pytest.raises(TransientWriteError):
            await writer.write(_request())
        writer.close()

    async def test_other_errors_propagate(self):
        client = MagicMock()
        client.write_records.side_effect = _client_error("ValidationException")
        writer = _writer(client)

        with pytest.raises(ClientError):
            await writer.write(_request())
        writer.close()

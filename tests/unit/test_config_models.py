"""Unit tests for job configuration models."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from speedtest_ingest.config.models import (
    AwsConfig,
    BatchingConfig,
    CredentialsProvider,
    IteratorType,
    JobConfig,
    KinesisSourceConfig,
    TimestreamConfig,
)


class TestJobConfigDefaults:
    def test_defaults(self):
        cfg = JobConfig()
        assert cfg.aws.region == "us-east-1"
        assert cfg.source.stream_name == "SpeedtestStream"
        assert cfg.timestream.database_name == "faster"
        assert cfg.timestream.table_name == "speedtests"
        assert cfg.timestream.memory_retention_hours == 168
        assert cfg.timestream.magnetic_retention_days == 365
        assert cfg.timestream.endpoint_override is None
        assert cfg.source.adaptive_reads is False
        assert cfg.source.poll_interval_ms == 1000
        assert cfg.source.max_records_per_poll == 10000
        assert cfg.parallelism == 1

    def test_sink_defaults(self):
        sink = JobConfig().sink
        assert sink.batching.max_batch_size == 100
        assert sink.batching.max_buffered_requests == 10000
        assert sink.batching.max_in_flight_requests == 1000
        assert sink.batching.max_time_in_buffer_ms == 15000
        assert sink.write_client.max_concurrency == 1000
        assert sink.write_client.max_error_retry == 10
        assert sink.write_client.request_timeout_seconds == 20
        assert sink.failure_handler.fail_processing_on_error_default is True
        assert sink.failure_handler.fail_processing_on_rejected_records is True
        assert sink.failure_handler.print_failed_requests is True

    def test_unknown_top_level_key_rejected(self):
        with pytest.raises(ValidationError):
            JobConfig.model_validate({"pipeline_id": "x"})

    def test_parallelism_must_be_positive(self):
        with pytest.raises(ValidationError):
            JobConfig(parallelism=0)


class TestBatchingConfig:
    def test_batch_size_capped_at_100(self):
        with pytest.raises(ValidationError):
            BatchingConfig(max_batch_size=101)

    def test_buffer_must_hold_a_batch(self):
        with pytest.raises(ValidationError, match="max_buffered_requests"):
            BatchingConfig(max_batch_size=50, max_buffered_requests=10)


class TestKinesisSourceConfig:
    def test_at_timestamp_requires_initial_timestamp(self):
        with pytest.raises(ValidationError, match="initial_timestamp"):
            KinesisSourceConfig(iterator_type=IteratorType.AT_TIMESTAMP)

    def test_max_records_per_poll_bounded(self):
        with pytest.raises(ValidationError):
            KinesisSourceConfig(max_records_per_poll=10001)

    def test_shard_discovery_interval(self):
        assert KinesisSourceConfig().shard_discovery_interval_ms == 10000
        disabled = KinesisSourceConfig(shard_discovery_interval_ms=0)
        assert disabled.shard_discovery_interval_ms == 0
        with pytest.raises(ValidationError):
            KinesisSourceConfig(shard_discovery_interval_ms=-1)

    def test_string_flags_coerced(self):
        cfg = KinesisSourceConfig.model_validate(
            {"adaptive_reads": "true", "poll_interval_ms": "250"}
        )
        assert cfg.adaptive_reads is True
        assert cfg.poll_interval_ms == 250


class TestTimestreamConfig:
    def test_blank_endpoint_override_is_none(self):
        assert TimestreamConfig(endpoint_override="  ").endpoint_override is None

    def test_endpoint_override_kept(self):
        cfg = TimestreamConfig(endpoint_override="https://ingest.example.com")
        assert cfg.endpoint_override == "https://ingest.example.com"

    def test_retention_must_be_positive(self):
        with pytest.raises(ValidationError):
            TimestreamConfig(memory_retention_hours=0)


class TestAwsConfig:
    def test_profile_requires_name(self):
        with pytest.raises(ValidationError, match="profile_name"):
            AwsConfig(credentials_provider=CredentialsProvider.PROFILE)

    def test_basic_requires_keys(self):
        with pytest.raises(ValidationError, match="access_key_id"):
            AwsConfig(credentials_provider=CredentialsProvider.BASIC)

    def test_secret_is_masked(self):
        cfg = AwsConfig(
            credentials_provider=CredentialsProvider.BASIC,
            access_key_id="AKIA",
            secret_access_key="s3cr3t",
        )
        assert "s3cr3t" not in cfg.model_dump_json()
        assert cfg.secret_access_key is not None
        assert cfg.secret_access_key.get_secret_value() == "s3cr3t"

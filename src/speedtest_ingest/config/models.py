"""Pydantic configuration models for the speedtest ingestion job."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Self

from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator

# Timestream accepts at most 100 records in a single WriteRecords request.
MAX_TIMESTREAM_RECORDS_PER_REQUEST = 100
MAX_CONCURRENT_WRITES = 1000


class CredentialsProvider(StrEnum):
    """How AWS credentials are obtained."""

    AUTO = "AUTO"
    PROFILE = "PROFILE"
    BASIC = "BASIC"


class IteratorType(StrEnum):
    """Where a shard reader starts when the job starts."""

    LATEST = "LATEST"
    TRIM_HORIZON = "TRIM_HORIZON"
    AT_TIMESTAMP = "AT_TIMESTAMP"


class AwsConfig(BaseModel):
    """Region and credentials shared by every AWS client of the job."""

    region: str = "us-east-1"
    credentials_provider: CredentialsProvider = CredentialsProvider.AUTO
    profile_name: str | None = None
    access_key_id: str | None = None
    secret_access_key: SecretStr | None = None

    @model_validator(mode="after")
    def check_credentials(self) -> Self:
        if self.credentials_provider == CredentialsProvider.PROFILE and not (
            self.profile_name
        ):
            msg = "profile_name is required when credentials_provider is 'PROFILE'"
            raise ValueError(msg)
        if self.credentials_provider == CredentialsProvider.BASIC and (
            not self.access_key_id or self.secret_access_key is None
        ):
            msg = (
                "access_key_id and secret_access_key are required "
                "when credentials_provider is 'BASIC'"
            )
            raise ValueError(msg)
        return self


class KinesisSourceConfig(BaseModel):
    """Kinesis stream and shard polling settings."""

    stream_name: str = Field(default="SpeedtestStream", min_length=1)
    iterator_type: IteratorType = IteratorType.LATEST
    initial_timestamp: datetime | None = None
    # Fixed-interval polling; ignored when adaptive_reads is enabled.
    adaptive_reads: bool = False
    poll_interval_ms: int = Field(default=1000, ge=0)
    max_records_per_poll: int = Field(default=10000, ge=1, le=10000)
    # Backoff for throttled GetRecords calls.
    get_records_max_retries: int = Field(default=3, ge=0)
    backoff_base_ms: int = Field(default=300, ge=0)
    backoff_max_ms: int = Field(default=1000, ge=0)
    backoff_exponent: float = Field(default=1.5, ge=1.0)
    # Re-list shards this often to pick up resharded children; 0 disables.
    shard_discovery_interval_ms: int = Field(default=10000, ge=0)

    @model_validator(mode="after")
    def check_initial_timestamp(self) -> Self:
        if self.iterator_type == IteratorType.AT_TIMESTAMP and (
            self.initial_timestamp is None
        ):
            msg = "initial_timestamp is required when iterator_type is 'AT_TIMESTAMP'"
            raise ValueError(msg)
        return self


class TimestreamConfig(BaseModel):
    """Target database/table and retention tiers."""

    database_name: str = Field(default="faster", min_length=1)
    table_name: str = Field(default="speedtests", min_length=1)
    memory_retention_hours: int = Field(default=168, ge=1)
    magnetic_retention_days: int = Field(default=365, ge=1)
    endpoint_override: str | None = None

    @field_validator("endpoint_override")
    @classmethod
    def empty_endpoint_is_none(cls, v: str | None) -> str | None:
        if v is not None and not v.strip():
            return None
        return v


class WriteClientConfig(BaseModel):
    """Timestream write client: concurrency, retries and timeouts."""

    max_concurrency: int = Field(default=MAX_CONCURRENT_WRITES, ge=1)
    max_error_retry: int = Field(default=10, ge=0)
    request_timeout_seconds: float = Field(default=20.0, gt=0)
    initial_backoff_seconds: float = Field(default=0.1, gt=0)
    max_backoff_seconds: float = Field(default=20.0, gt=0)
    backoff_jitter_seconds: float = Field(default=0.1, ge=0)


class FailureHandlerConfig(BaseModel):
    """What happens when a write request cannot be completed."""

    fail_processing_on_error_default: bool = True
    fail_processing_on_rejected_records: bool = True
    print_failed_requests: bool = True


class BatchingConfig(BaseModel):
    """Sink buffering thresholds."""

    max_batch_size: int = Field(
        default=MAX_TIMESTREAM_RECORDS_PER_REQUEST,
        ge=1,
        le=MAX_TIMESTREAM_RECORDS_PER_REQUEST,
    )
    max_buffered_requests: int = Field(
        default=100 * MAX_TIMESTREAM_RECORDS_PER_REQUEST, ge=1
    )
    max_in_flight_requests: int = Field(default=MAX_CONCURRENT_WRITES, ge=1)
    max_time_in_buffer_ms: int = Field(default=15000, ge=1)

    @model_validator(mode="after")
    def check_buffer_holds_a_batch(self) -> Self:
        if self.max_buffered_requests < self.max_batch_size:
            msg = "max_buffered_requests must be >= max_batch_size"
            raise ValueError(msg)
        return self


class SinkConfig(BaseModel):
    """Batching sink settings."""

    batching: BatchingConfig = BatchingConfig()
    write_client: WriteClientConfig = WriteClientConfig()
    failure_handler: FailureHandlerConfig = FailureHandlerConfig()


class MetricsConfig(BaseModel):
    """Periodic sink metrics reporting."""

    enabled: bool = True
    interval_seconds: float = Field(default=60.0, gt=0)
    emit_to_cloudwatch: bool = True
    namespace: str = "SpeedtestIngest"


class JobConfig(BaseModel, extra="forbid"):
    """Root configuration of the streaming job."""

    job_name: str = "Speedtest Streaming Job"
    parallelism: int = Field(default=1, ge=1)
    aws: AwsConfig = AwsConfig()
    source: KinesisSourceConfig = KinesisSourceConfig()
    timestream: TimestreamConfig = TimestreamConfig()
    sink: SinkConfig = SinkConfig()
    metrics: MetricsConfig = MetricsConfig()

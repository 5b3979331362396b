"""boto3 session and client construction from job configuration."""

from __future__ import annotations

from typing import Any

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError, HTTPClientError
from botocore.exceptions import ConnectionError as BotoConnectionError

from speedtest_ingest.config.models import AwsConfig, CredentialsProvider


def create_session(config: AwsConfig) -> boto3.session.Session:
    """Create a boto3 session for the configured credentials provider.

    ``AUTO`` uses the default provider chain (environment, profile, instance
    metadata).
    """
    if config.credentials_provider == CredentialsProvider.PROFILE:
        return boto3.session.Session(
            profile_name=config.profile_name, region_name=config.region
        )
    if config.credentials_provider == CredentialsProvider.BASIC:
        assert config.secret_access_key is not None
        return boto3.session.Session(
            aws_access_key_id=config.access_key_id,
            aws_secret_access_key=config.secret_access_key.get_secret_value(),
            region_name=config.region,
        )
    return boto3.session.Session(region_name=config.region)


def create_client(
    service: str,
    config: AwsConfig,
    *,
    endpoint_url: str | None = None,
    client_config: Config | None = None,
) -> Any:
    """Create a boto3 client for *service* in the configured region."""
    session = create_session(config)
    return session.client(
        service,
        region_name=config.region,
        endpoint_url=endpoint_url,
        config=client_config,
    )


# Error codes that signal throttling or a transient service-side failure.
TRANSIENT_ERROR_CODES = frozenset(
    {
        "ProvisionedThroughputExceededException",
        "KMSThrottlingException",
        "LimitExceededException",
        "ThrottlingException",
        "Throttling",
        "InternalFailure",
        "InternalServerException",
        "ServiceUnavailable",
        "ServiceUnavailableException",
    }
)


def error_code(exc: BaseException) -> str | None:
    """Return the AWS error code of a ClientError, or None."""
    if isinstance(exc, ClientError):
        return exc.response.get("Error", {}).get("Code")
    return None


def is_transient_aws_error(exc: BaseException) -> bool:
    """True for throttling, 5xx responses and transport-level failures."""
    if isinstance(exc, (HTTPClientError, BotoConnectionError)):
        return True
    if isinstance(exc, ClientError):
        if error_code(exc) in TRANSIENT_ERROR_CODES:
            return True
        status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
        return status >= 500
    return False

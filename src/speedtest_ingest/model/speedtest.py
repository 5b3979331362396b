"""Speedtest measurement record and its wire decoder."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from speedtest_ingest.errors import DecodeError


class Speedtest(BaseModel):
    """One speed-test measurement reported by a device.

    ``timestamp`` is epoch milliseconds. Payload keys may be snake_case or
    camelCase (``deviceId``, ``downloadBps``).
    """

    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )

    device_id: str = Field(min_length=1)
    timestamp: int = Field(ge=0)
    download_bps: float = Field(ge=0)
    upload_bps: float = Field(ge=0)
    ping_ms: float = Field(ge=0)
    jitter_ms: float | None = Field(default=None, ge=0)
    packet_loss: float | None = Field(default=None, ge=0)
    isp: str | None = None
    server_id: str | None = None
    server_name: str | None = None

    @field_validator("timestamp", mode="before")
    @classmethod
    def parse_timestamp(cls, v: Any) -> Any:
        """Accept ISO-8601 strings and convert them to epoch milliseconds."""
        if isinstance(v, str) and not v.isdigit():
            parsed = datetime.fromisoformat(v.replace("Z", "+00:00"))
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return int(parsed.timestamp() * 1000)
        return v

    @field_validator("server_id", mode="before")
    @classmethod
    def server_id_as_str(cls, v: Any) -> Any:
        if isinstance(v, int):
            return str(v)
        return v


def decode(data: bytes) -> Speedtest:
    """Decode one raw Kinesis record payload into a Speedtest.

    Raises DecodeError on malformed JSON or a payload that fails validation.
    """
    try:
        return Speedtest.model_validate_json(data)
    except ValidationError as exc:
        msg = f"Invalid speedtest record: {exc.error_count()} validation error(s): {exc}"
        raise DecodeError(msg, payload=data) from exc
    except ValueError as exc:
        raise DecodeError(f"Invalid speedtest record: {exc}", payload=data) from exc

"""Shard -> consumer assignment.

Ownership is a pure function of (partition id, consumer count): no shared
table and no coordination between consumers. Restarting with the same
consumer count yields the same ownership; changing the count may move
shards.
"""

from __future__ import annotations

import re
import zlib
from collections.abc import Iterable

_TRAILING_DIGITS = re.compile(r"(\d+)$")


def partition_ordinal(partition_id: str | int) -> int:
    """Stable non-negative ordinal for a partition id.

    Kinesis shard ids (``shardId-000000000007``) use their trailing number,
    so consecutive shards spread round-robin. Ids without one fall back to
    CRC32 of their UTF-8 bytes.
    """
    if isinstance(partition_id, bool):
        msg = f"Invalid partition id: {partition_id!r}"
        raise TypeError(msg)
    if isinstance(partition_id, int):
        if partition_id < 0:
            msg = f"Partition id must be non-negative, got {partition_id}"
            raise ValueError(msg)
        return partition_id
    match = _TRAILING_DIGITS.search(partition_id)
    if match:
        return int(match.group(1))
    return zlib.crc32(partition_id.encode("utf-8"))


def assign(partition_id: str | int, total_consumers: int) -> int:
    """Return the index in ``[0, total_consumers)`` that owns *partition_id*."""
    if total_consumers < 1:
        msg = f"total_consumers must be >= 1, got {total_consumers}"
        raise ValueError(msg)
    return partition_ordinal(partition_id) % total_consumers


def owned_partitions(
    partition_ids: Iterable[str | int],
    consumer_index: int,
    total_consumers: int,
) -> list[str | int]:
    """Filter *partition_ids* down to those owned by *consumer_index*."""
    if not 0 <= consumer_index < total_consumers:
        msg = (
            f"consumer_index {consumer_index} out of range for "
            f"{total_consumers} consumer(s)"
        )
        raise ValueError(msg)
    return [
        pid for pid in partition_ids if assign(pid, total_consumers) == consumer_index
    ]

"""Adaptive GetRecords sizing.

Kinesis allows 2 MiB/s of reads per shard. After every poll the limit is
re-derived from the observed average record size and how often the reader
loop runs, so a reader uses the shard's read budget without being
throttled.
"""

from __future__ import annotations

SHARD_BYTES_PER_SECOND_LIMIT = 2 * 1024 * 1024
MAX_RECORDS_PER_GET = 10000
# Sleep between polls that returned nothing, in adaptive mode.
ADAPTIVE_IDLE_INTERVAL_SECONDS = 0.2


class AdaptiveReadLimiter:
    """Tracks the per-call record limit for one shard reader."""

    def __init__(self, initial_limit: int = MAX_RECORDS_PER_GET) -> None:
        self._limit = max(1, min(initial_limit, MAX_RECORDS_PER_GET))

    @property
    def limit(self) -> int:
        return self._limit

    def update(self, loop_seconds: float, num_records: int, batch_bytes: int) -> int:
        """Recompute the limit from the last poll; returns the new limit.

        A poll that returned no records, or a zero-length loop, leaves the
        limit unchanged.
        """
        if num_records <= 0 or loop_seconds <= 0 or batch_bytes <= 0:
            return self._limit
        average_record_bytes = batch_bytes / num_records
        loop_frequency_hz = 1.0 / loop_seconds
        bytes_per_read = SHARD_BYTES_PER_SECOND_LIMIT / loop_frequency_hz
        limit = int(bytes_per_read / average_record_bytes)
        self._limit = max(1, min(limit, MAX_RECORDS_PER_GET))
        return self._limit

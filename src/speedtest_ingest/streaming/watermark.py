"""Event-time watermarks for the source stream."""

from __future__ import annotations

# Nothing observed yet.
MIN_WATERMARK = -(2**63)


class MonotonousWatermarkGenerator:
    """Watermark for streams whose timestamps are expected to be ascending.

    The watermark is the highest timestamp observed so far, with no allowance
    for lateness. Records behind the watermark are not dropped or reordered;
    they only leave the watermark where it is.
    """

    def __init__(self) -> None:
        self._watermark = MIN_WATERMARK
        self._late_records = 0

    def on_record(self, timestamp: int) -> None:
        if timestamp < self._watermark:
            self._late_records += 1
            return
        self._watermark = timestamp

    def current_watermark(self) -> int:
        return self._watermark

    @property
    def late_records(self) -> int:
        """Records seen with a timestamp behind the current watermark."""
        return self._late_records

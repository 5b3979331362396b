"""Unit tests for the monotonous watermark generator."""

from __future__ import annotations

from speedtest_ingest.streaming.watermark import (
    MIN_WATERMARK,
    MonotonousWatermarkGenerator,
)


class TestMonotonousWatermarkGenerator:
    def test_starts_at_minimum(self):
        gen = MonotonousWatermarkGenerator()
        assert gen.current_watermark() == MIN_WATERMARK

    def test_tracks_highest_timestamp(self):
        gen = MonotonousWatermarkGenerator()
        for ts in (1000, 2000, 3000):
            gen.on_record(ts)
        assert gen.current_watermark() == 3000

    def test_never_decreases(self):
        gen = MonotonousWatermarkGenerator()
        seen = []
        for ts in (5, 10, 3, 12, 12, 1, 20):
            gen.on_record(ts)
            seen.append(gen.current_watermark())
        assert seen == sorted(seen)
        assert gen.current_watermark() == 20

    def test_bounded_by_max_observed(self):
        gen = MonotonousWatermarkGenerator()
        timestamps = [7, 42, 13]
        for ts in timestamps:
            gen.on_record(ts)
            assert gen.current_watermark() <= max(timestamps)

    def test_late_records_counted_not_applied(self):
        gen = MonotonousWatermarkGenerator()
        gen.on_record(100)
        gen.on_record(50)
        gen.on_record(99)
        assert gen.current_watermark() == 100
        assert gen.late_records == 2

    def test_equal_timestamp_not_late(self):
        gen = MonotonousWatermarkGenerator()
        gen.on_record(100)
        gen.on_record(100)
        assert gen.late_records == 0

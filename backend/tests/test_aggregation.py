"""
Tests for chart aggregation: bucket width selection, bucket averages, store-backed aggregation.
"""

import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from powermate.aggregation import (
    Grouping,
    aggregate,
    aggregate_readings,
    bucket_start,
    day_diff,
    select_grouping,
)
from powermate.errors import AggregationError
from powermate.metrics import BATTERY, FUEL, POWER
from powermate.readings import save_reading


def ts(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def power(t, voltage, current, device="esp32-a"):
    return {"deviceId": device, "voltage": voltage, "current": current, "timestamp": t}


class TestSelectGrouping:
    @pytest.mark.parametrize(
        "days, expected",
        [
            (0, Grouping.HOUR),
            (1, Grouping.HOUR),
            (2, Grouping.HOUR),
            (3, Grouping.HOUR4),
            (7, Grouping.HOUR4),
            (14, Grouping.HOUR4),
            (15, Grouping.DAY),
            (90, Grouping.DAY),
        ],
    )
    def test_width_follows_range(self, days, expected):
        start = ts(2025, 4, 1)
        assert select_grouping(start, start + timedelta(days=days)) is expected

    def test_missing_bound_is_hourly(self):
        assert select_grouping(ts(2025, 1, 1), None) is Grouping.HOUR
        assert select_grouping(None, ts(2025, 6, 1)) is Grouping.HOUR
        assert select_grouping(None, None) is Grouping.HOUR

    def test_day_count_rounds_half_up(self):
        start = ts(2025, 4, 1)
        assert day_diff(start, start + timedelta(days=2, hours=12)) == 3
        assert select_grouping(start, start + timedelta(days=2, hours=12)) is Grouping.HOUR4
        assert day_diff(start, start + timedelta(days=14, hours=11)) == 14
        assert select_grouping(start, start + timedelta(days=14, hours=12)) is Grouping.DAY

    def test_reversed_range_is_hourly(self):
        assert select_grouping(ts(2025, 5, 1), ts(2025, 4, 1)) is Grouping.HOUR


class TestBucketStart:
    def test_hour(self):
        assert bucket_start(ts(2025, 4, 10, 13, 42, 7), Grouping.HOUR) == ts(2025, 4, 10, 13)

    def test_four_hour_block(self):
        assert bucket_start(ts(2025, 4, 10, 13, 42), Grouping.HOUR4) == ts(2025, 4, 10, 12)
        assert bucket_start(ts(2025, 4, 10, 3, 59), Grouping.HOUR4) == ts(2025, 4, 10, 0)

    def test_day(self):
        assert bucket_start(ts(2025, 4, 10, 23, 59), Grouping.DAY) == ts(2025, 4, 10)

    def test_offset_timestamps_bucket_in_utc(self):
        local = datetime(2025, 4, 10, 1, 30, tzinfo=timezone(timedelta(hours=3)))
        assert bucket_start(local, Grouping.DAY) == ts(2025, 4, 9)


class TestAggregateReadings:
    def test_power_is_product_of_averages(self):
        readings = [
            power(ts(2025, 4, 10, 13, 5), 11.0, 2.0),
            power(ts(2025, 4, 10, 13, 50), 13.0, 4.0),
        ]
        [bucket] = aggregate_readings(readings, POWER, Grouping.HOUR)

        assert bucket.values["voltage"] == 12.0
        assert bucket.values["current"] == 3.0
        assert bucket.values["power"] == 36.0
        assert bucket.sample_count == 2

    def test_mean_rounded_to_family_precision(self):
        readings = [
            {"deviceId": "b1", "voltage": 12.111, "current": 1.0, "percentage": 80, "timestamp": ts(2025, 4, 10, 8)},
            {"deviceId": "b1", "voltage": 12.222, "current": 2.0, "percentage": 81, "timestamp": ts(2025, 4, 10, 8, 30)},
            {"deviceId": "b1", "voltage": 12.333, "current": 3.0, "percentage": 83, "timestamp": ts(2025, 4, 10, 8, 59)},
        ]
        [bucket] = aggregate_readings(readings, BATTERY, Grouping.HOUR)

        assert bucket.values["voltage"] == 12.22
        assert bucket.values["current"] == 2.0
        assert bucket.values["percentage"] == 81.0

    def test_buckets_sorted_ascending(self):
        readings = [
            power(ts(2025, 4, 10, 15), 12.0, 1.0),
            power(ts(2025, 4, 10, 9), 12.0, 1.0),
            power(ts(2025, 4, 10, 12, 30), 12.0, 1.0),
        ]
        buckets = aggregate_readings(readings, POWER, Grouping.HOUR)
        starts = [b.bucket_start for b in buckets]

        assert starts == sorted(starts)
        assert starts == [ts(2025, 4, 10, 9), ts(2025, 4, 10, 12), ts(2025, 4, 10, 15)]

    def test_four_hour_blocks_merge_readings(self):
        readings = [power(ts(2025, 4, 10, h), 12.0, 1.0) for h in (8, 9, 11, 12)]
        buckets = aggregate_readings(readings, POWER, Grouping.HOUR4)

        assert [(b.bucket_start, b.sample_count) for b in buckets] == [
            (ts(2025, 4, 10, 8), 3),
            (ts(2025, 4, 10, 12), 1),
        ]

    def test_device_is_first_reading_in_bucket(self):
        readings = [
            power(ts(2025, 4, 10, 9, 40), 12.0, 1.0, device="late"),
            power(ts(2025, 4, 10, 9, 10), 12.0, 1.0, device="early"),
        ]
        [bucket] = aggregate_readings(readings, POWER, Grouping.HOUR)
        assert bucket.device_id == "early"

    def test_non_numeric_values_skipped_per_field(self):
        readings = [
            power(ts(2025, 4, 10, 9), 12.0, 2.0),
            power(ts(2025, 4, 10, 9, 15), "n/a", 4.0),
            {"deviceId": "esp32-a", "current": 6.0, "timestamp": ts(2025, 4, 10, 9, 30)},
        ]
        [bucket] = aggregate_readings(readings, POWER, Grouping.HOUR)

        assert bucket.sample_count == 3
        assert bucket.sample_counts == {"voltage": 1, "current": 3}
        assert bucket.values["voltage"] == 12.0
        assert bucket.values["current"] == 4.0
        assert bucket.values["power"] == 48.0

    def test_field_without_numbers_is_null(self):
        readings = [{"deviceId": "f1", "distance": None, "timestamp": ts(2025, 4, 10, 9)}]
        [bucket] = aggregate_readings(readings, FUEL, Grouping.HOUR)

        assert bucket.values["distance"] is None
        assert bucket.values["fuelLevelPercentage"] is None

    def test_fuel_level_from_average_distance(self):
        readings = [
            {"deviceId": "f1", "distance": 4.0, "timestamp": ts(2025, 4, 10, 9)},
            {"deviceId": "f1", "distance": 6.0, "timestamp": ts(2025, 4, 10, 9, 30)},
        ]
        [bucket] = aggregate_readings(readings, FUEL, Grouping.HOUR)

        assert bucket.values["distance"] == 5.0
        assert bucket.values["fuelLevelPercentage"] == 75.0

    def test_no_readings(self):
        assert aggregate_readings([], POWER, Grouping.DAY) == []

    def test_to_dict_shape(self):
        [bucket] = aggregate_readings([power(ts(2025, 4, 10, 9), 12.0, 2.0)], POWER, Grouping.HOUR)
        out = bucket.to_dict()

        assert out["bucketStart"] == ts(2025, 4, 10, 9)
        assert out["deviceId"] == "esp32-a"
        assert out["sampleCount"] == 1
        assert out["power"] == 24.0


class TestAggregateFromStore:
    def test_trailing_day_by_default(self, conn):
        now = ts(2025, 4, 10, 12)
        save_reading(conn, POWER, "esp32-a", {"voltage": 12.0, "current": 1.0}, now - timedelta(hours=30))
        save_reading(conn, POWER, "esp32-a", {"voltage": 11.0, "current": 2.0}, now - timedelta(hours=2))

        grouping, buckets = aggregate(conn, POWER, now=now)

        assert grouping is Grouping.HOUR
        assert len(buckets) == 1
        assert buckets[0].bucket_start == ts(2025, 4, 10, 10)

    def test_range_is_inclusive_and_filtered_by_device(self, conn):
        start, end = ts(2025, 4, 1), ts(2025, 4, 21)
        save_reading(conn, POWER, "esp32-a", {"voltage": 12.0, "current": 1.0}, start)
        save_reading(conn, POWER, "esp32-a", {"voltage": 12.0, "current": 3.0}, end)
        save_reading(conn, POWER, "esp32-b", {"voltage": 99.0, "current": 9.0}, ts(2025, 4, 5))
        save_reading(conn, POWER, "esp32-a", {"voltage": 12.0, "current": 1.0}, ts(2025, 4, 22))

        grouping, buckets = aggregate(conn, POWER, "esp32-a", start, end)

        assert grouping is Grouping.DAY
        assert [b.bucket_start for b in buckets] == [ts(2025, 4, 1), ts(2025, 4, 21)]
        assert all(b.device_id == "esp32-a" for b in buckets)

    def test_store_failure_is_single_error(self):
        class BrokenConn:
            def execute(self, *args, **kwargs):
                raise sqlite3.OperationalError("disk I/O error")

        with pytest.raises(AggregationError) as excinfo:
            aggregate(BrokenConn(), POWER, start=ts(2025, 4, 1), end=ts(2025, 4, 2))
        assert excinfo.value.message == "aggregation failed"

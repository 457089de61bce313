"""
Time-bucketed averages for charts.

The bucket width follows the requested range so the number of points stays
roughly bounded:

    both bounds given, dayDiff = round((end - start) / 1 day)
        dayDiff > 14       -> day
        2 < dayDiff <= 14  -> hour4 (hour truncated to a multiple of 4)
        otherwise          -> hour
    a bound missing        -> hour

Without any bound the window is the trailing 24 hours. Buckets are keyed on
UTC calendar fields. Derived values (power, fuel level) are computed from the
bucket averages, not averaged per sample.
"""
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Iterable

from .classifier import is_number
from .db import DB_ERRORS, utc
from .errors import AggregationError
from .metrics import MetricFamily
from .readings import readings_between

logger = logging.getLogger(__name__)

DEFAULT_WINDOW = timedelta(hours=24)


class Grouping(str, Enum):
    HOUR = "hour"
    HOUR4 = "hour4"
    DAY = "day"


def day_diff(start: datetime, end: datetime) -> int:
    """Whole days between start and end, halves rounded up."""
    days = (utc(end) - utc(start)) / timedelta(days=1)
    return math.floor(days + 0.5)


def select_grouping(start: datetime | None, end: datetime | None) -> Grouping:
    if start is None or end is None:
        return Grouping.HOUR
    days = day_diff(start, end)
    if days > 14:
        return Grouping.DAY
    if days > 2:
        return Grouping.HOUR4
    return Grouping.HOUR


def bucket_start(ts: datetime, grouping: Grouping) -> datetime:
    ts = utc(ts)
    if grouping is Grouping.DAY:
        return ts.replace(hour=0, minute=0, second=0, microsecond=0)
    hour = ts.hour - ts.hour % 4 if grouping is Grouping.HOUR4 else ts.hour
    return ts.replace(hour=hour, minute=0, second=0, microsecond=0)


@dataclass
class Bucket:
    bucket_start: datetime
    device_id: str | None
    values: dict[str, float | None] = field(default_factory=dict)
    sample_count: int = 0
    sample_counts: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "bucketStart": self.bucket_start,
            "deviceId": self.device_id,
            **self.values,
            "sampleCount": self.sample_count,
            "sampleCounts": dict(self.sample_counts),
        }


class _Accumulator:
    def __init__(self, family: MetricFamily, start: datetime, device_id: str | None):
        self.family = family
        self.start = start
        self.device_id = device_id
        self.count = 0
        self.sums = {f.name: 0.0 for f in family.fields}
        self.counts = {f.name: 0 for f in family.fields}

    def add(self, reading: dict[str, Any]) -> None:
        self.count += 1
        for f in self.family.fields:
            value = reading.get(f.name)
            if is_number(value):
                self.sums[f.name] += value
                self.counts[f.name] += 1

    def bucket(self) -> Bucket:
        means: dict[str, float | None] = {
            name: (self.sums[name] / n if n else None) for name, n in self.counts.items()
        }
        derived = self.family.derive(means)
        values: dict[str, float | None] = {}
        for f in self.family.fields:
            values[f.name] = _round(means[f.name], f.precision)
        for d in self.family.derived:
            values[d.name] = _round(derived[d.name], d.precision)
        return Bucket(
            bucket_start=self.start,
            device_id=self.device_id,
            values=values,
            sample_count=self.count,
            sample_counts=dict(self.counts),
        )


def _round(value: float | None, precision: int) -> float | None:
    if value is None:
        return None
    return float(round(value, precision))


def aggregate_readings(
    readings: Iterable[dict[str, Any]],
    family: MetricFamily,
    grouping: Grouping,
) -> list[Bucket]:
    """Average readings per bucket. Readings need a timestamp; order does not matter."""
    groups: dict[datetime, _Accumulator] = {}
    for reading in sorted(readings, key=lambda r: utc(r["timestamp"])):
        start = bucket_start(reading["timestamp"], grouping)
        acc = groups.get(start)
        if acc is None:
            acc = groups[start] = _Accumulator(family, start, reading.get("deviceId"))
        acc.add(reading)
    buckets = [acc.bucket() for acc in groups.values()]
    buckets.sort(key=lambda b: (b.bucket_start, b.device_id or ""))
    return buckets


def aggregate(
    conn: Any,
    family: MetricFamily,
    device_id: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    now: datetime | None = None,
) -> tuple[Grouping, list[Bucket]]:
    """Chart buckets for a family. Store failures become a single AggregationError."""
    grouping = select_grouping(start, end)
    if start is None and end is None:
        start = (now or datetime.now(timezone.utc)) - DEFAULT_WINDOW
    try:
        readings = readings_between(conn, family, device_id, start, end)
    except DB_ERRORS as e:
        logger.exception("Aggregation of %s readings failed", family.name.value)
        raise AggregationError() from e
    buckets = aggregate_readings(readings, family, grouping)
    logger.debug(
        "Aggregated %d %s readings into %d %s buckets",
        len(readings), family.name.value, len(buckets), grouping.value,
    )
    return grouping, buckets

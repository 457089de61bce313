"""
Metric families: which table a reading lives in, its numeric fields, the
fields derived from them, and how a record gets its status label.
"""
import math
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from .classifier import Severity, classify, is_number, worst
from .thresholds import ThresholdSet


def parse_tank_height(raw: str) -> float:
    height = float(raw)
    if not math.isfinite(height) or height <= 0:
        raise ValueError(f"POWERMATE_TANK_HEIGHT_CM must be a positive number of cm, got {raw!r}")
    return height


# Distance from the ultrasonic sensor to the bottom of an empty tank
TANK_HEIGHT_CM = parse_tank_height(os.environ.get("POWERMATE_TANK_HEIGHT_CM", "20"))


class MetricName(str, Enum):
    POWER = "power"
    BATTERY = "battery"
    FUEL = "fuel"
    TEMPERATURE = "temperature"


@dataclass(frozen=True)
class MetricField:
    name: str  # API name
    column: str  # table column
    precision: int  # decimals in chart buckets


@dataclass(frozen=True)
class DerivedField:
    name: str
    precision: int
    compute: Callable[[dict[str, Any]], float | None]


@dataclass(frozen=True)
class MetricFamily:
    name: MetricName
    table: str
    fields: tuple[MetricField, ...]
    derived: tuple[DerivedField, ...] = ()
    label: Callable[[dict[str, Any], ThresholdSet], dict[str, Any]] | None = field(default=None, compare=False)

    @property
    def current_table(self) -> str:
        return f"{self.table}_current"

    @property
    def history_table(self) -> str:
        return f"{self.table}_history"

    def derive(self, values: dict[str, Any]) -> dict[str, float | None]:
        return {d.name: d.compute(values) for d in self.derived}


def _product(a: str, b: str) -> Callable[[dict[str, Any]], float | None]:
    def compute(values: dict[str, Any]) -> float | None:
        x, y = values.get(a), values.get(b)
        if not (is_number(x) and is_number(y)):
            return None
        return x * y
    return compute


def fuel_percentage(distance: Any, tank_height: float | None = None) -> float | None:
    """Fuel level in percent from the sensor distance, clamped to 0..100."""
    if not is_number(distance):
        return None
    height = tank_height or TANK_HEIGHT_CM
    level = (height - distance) * 100 / height
    return max(0.0, min(100.0, level))


def _status_value(severity: Severity | None) -> str | None:
    return severity.value if severity is not None else None


def _label_power(record: dict[str, Any], t: ThresholdSet) -> dict[str, Any]:
    voltage_status = classify(record.get("voltage"), t.thresholds.voltage)
    current_status = classify(record.get("current"), t.thresholds.current)
    return {
        "status": _status_value(worst(voltage_status, current_status)),
        "voltageStatus": _status_value(voltage_status),
        "currentStatus": _status_value(current_status),
    }


def _label_battery(record: dict[str, Any], t: ThresholdSet) -> dict[str, Any]:
    return {"status": _status_value(classify(record.get("percentage"), t.thresholds.battery))}


def _label_fuel(record: dict[str, Any], t: ThresholdSet) -> dict[str, Any]:
    pct = record.get("fuelLevelPercentage")
    liters = round(pct * t.tankCapacity / 100, 2) if is_number(pct) else None
    return {
        "fuelLiters": liters,
        "status": _status_value(classify(pct, t.thresholds.fuel)),
    }


POWER = MetricFamily(
    name=MetricName.POWER,
    table="dc_power",
    fields=(
        MetricField("voltage", "voltage", 2),
        MetricField("current", "current", 2),
    ),
    derived=(DerivedField("power", 2, _product("voltage", "current")),),
    label=_label_power,
)

BATTERY = MetricFamily(
    name=MetricName.BATTERY,
    table="battery",
    fields=(
        MetricField("voltage", "voltage", 2),
        MetricField("current", "current", 2),
        MetricField("percentage", "percentage", 0),
    ),
    label=_label_battery,
)

FUEL = MetricFamily(
    name=MetricName.FUEL,
    table="fuel_distance",
    fields=(MetricField("distance", "distance", 2),),
    derived=(DerivedField("fuelLevelPercentage", 0, lambda v: fuel_percentage(v.get("distance"))),),
    label=_label_fuel,
)

TEMPERATURE = MetricFamily(
    name=MetricName.TEMPERATURE,
    table="temperature",
    fields=(
        MetricField("temperatureC", "temperature_c", 2),
        MetricField("temperatureF", "temperature_f", 2),
        MetricField("humidity", "humidity", 2),
    ),
)

FAMILIES: dict[MetricName, MetricFamily] = {f.name: f for f in (POWER, BATTERY, FUEL, TEMPERATURE)}


def get_family(name: MetricName | str) -> MetricFamily:
    return FAMILIES[MetricName(name)]


def present(family: MetricFamily, record: dict[str, Any], thresholds: ThresholdSet) -> dict[str, Any]:
    """A stored reading as returned by the API: derived fields plus its status label."""
    out = dict(record)
    for name, value in family.derive(record).items():
        out[name] = round(value, 2) if value is not None else None
    if family.label is not None:
        out.update(family.label(out, thresholds))
    return out

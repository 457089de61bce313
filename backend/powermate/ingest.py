"""
Device payload schemas.

Firmware revisions name the same value differently (voltage / v / volt ...).
Each field lists the names it accepts, in priority order, and resolves them
into one canonical reading here; nothing past this module sees an alias.
Keys that match no field are rejected.
"""
from datetime import datetime
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

from .db import utc
from .metrics import MetricName

_READING_CONFIG = ConfigDict(extra="forbid", allow_inf_nan=False, populate_by_name=False)


def _aliases(*names: str, default: Any = ..., **constraints: Any) -> Any:
    return Field(default, validation_alias=AliasChoices(*names), **constraints)


class _Reading(BaseModel):
    model_config = _READING_CONFIG

    deviceId: str | None = Field(None, min_length=1, max_length=128)
    timestamp: datetime | None = None

    @field_validator("*", mode="before")
    @classmethod
    def _no_booleans(cls, value: Any) -> Any:
        # float fields would otherwise take true/false as 1.0/0.0
        if isinstance(value, bool):
            raise ValueError("booleans are not readings")
        return value

    @field_validator("timestamp")
    @classmethod
    def _as_utc(cls, value: datetime | None) -> datetime | None:
        return utc(value) if value is not None else None

    def values(self) -> dict[str, float]:
        return self.model_dump(exclude={"deviceId", "timestamp"})


class DCPowerReading(_Reading):
    voltage: float = _aliases("voltage", "v", "volt", "dcVoltage", "dc_voltage", "dcV")
    current: float = _aliases("current", "i", "curr", "dcCurrent", "dc_current", "dcI")


class BatteryReading(_Reading):
    voltage: float = _aliases("voltage", "v", "volt", "batteryVoltage", "battery_voltage", "battV")
    current: float = _aliases("current", "i", "curr", "batteryCurrent", "battery_current", "battI")
    percentage: float = _aliases(
        "percentage", "soc", "pct", "batteryPercentage", "battery_percentage", "batteryLevel", "level",
        ge=0, le=100,
    )


class DistanceReading(_Reading):
    distance: float = _aliases("distance", "d", "value", "fuelLevel", "level")


class TemperatureReading(_Reading):
    temperatureC: float | None = _aliases("temperatureC", "temperature", "celsius", "temp_c", "tempC", default=None)
    temperatureF: float | None = _aliases("temperatureF", "fahrenheit", "temp_f", "tempF", default=None)
    humidity: float = _aliases("humidity", "humid", "hum", default=0.0)

    @model_validator(mode="after")
    def _convert_units(self) -> "TemperatureReading":
        if self.temperatureC is None and self.temperatureF is None:
            raise ValueError("temperatureC or temperatureF is required")
        if self.temperatureF is None:
            self.temperatureF = self.temperatureC * 9 / 5 + 32
        elif self.temperatureC is None:
            self.temperatureC = (self.temperatureF - 32) * 5 / 9
        return self


READING_MODELS: dict[MetricName, type[_Reading]] = {
    MetricName.POWER: DCPowerReading,
    MetricName.BATTERY: BatteryReading,
    MetricName.FUEL: DistanceReading,
    MetricName.TEMPERATURE: TemperatureReading,
}


class SensorDataPayload(BaseModel):
    """POST /api/sensor-data: any subset of families from one device."""
    model_config = ConfigDict(extra="forbid")

    deviceId: str | None = Field(None, min_length=1, max_length=128)
    timestamp: datetime | None = None
    dcPower: DCPowerReading | None = _aliases("dcPower", "dc", "dc_power", default=None)
    battery: BatteryReading | None = None
    distance: DistanceReading | None = None
    temperature: TemperatureReading | None = None

    @field_validator("distance", mode="before")
    @classmethod
    def _bare_distance(cls, value: Any) -> Any:
        # Older firmware posts the distance as a plain number
        if isinstance(value, (int, float, str)) and not isinstance(value, bool):
            return {"distance": value}
        return value

    @field_validator("dcPower", "battery", "distance", "temperature")
    @classmethod
    def _no_nested_device(cls, value: _Reading | None) -> _Reading | None:
        # One device per post; its id goes at the top level
        if value is not None and value.deviceId is not None:
            raise ValueError("deviceId belongs at the top level of the payload")
        return value

    @field_validator("timestamp")
    @classmethod
    def _as_utc(cls, value: datetime | None) -> datetime | None:
        return utc(value) if value is not None else None

    @model_validator(mode="after")
    def _not_empty(self) -> "SensorDataPayload":
        if not self.readings():
            raise ValueError("Provide at least one of dcPower, battery, distance, temperature")
        return self

    def readings(self) -> dict[MetricName, _Reading]:
        found = {
            MetricName.POWER: self.dcPower,
            MetricName.BATTERY: self.battery,
            MetricName.FUEL: self.distance,
            MetricName.TEMPERATURE: self.temperature,
        }
        return {name: reading for name, reading in found.items() if reading is not None}


def resolve_device_id(body_device_id: str | None, token_device_id: str | None) -> str:
    """Body deviceId wins, then the authenticated device, then "unknown"."""
    return body_device_id or token_device_id or "unknown"

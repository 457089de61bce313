"""
Threshold-based status classification.

Two threshold shapes are in use:

- level thresholds (battery charge, fuel level): low values are bad.
  value < criticalLevel is Critical, criticalLevel <= value < warningLevel is
  Warning, anything else is Normal. Reaching exactly warningLevel is Normal.
- range thresholds (voltage, current): Normal inside [warningMin, warningMax],
  Critical at or past the outer bounds (value <= min or value >= max),
  Warning in between.

classify() is a pure function of (value, thresholds). A missing or
non-numeric value gets no label (None) rather than an error.
"""
import math
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, model_validator


class Severity(str, Enum):
    NORMAL = "Normal"
    WARNING = "Warning"
    CRITICAL = "Critical"

    @property
    def rank(self) -> int:
        return _RANK[self]


_RANK = {Severity.NORMAL: 0, Severity.WARNING: 1, Severity.CRITICAL: 2}


class LevelThresholds(BaseModel):
    model_config = ConfigDict(extra="forbid", strict=True, frozen=True)

    warningLevel: float
    criticalLevel: float

    @model_validator(mode="after")
    def _ordered(self) -> "LevelThresholds":
        if self.criticalLevel > self.warningLevel:
            raise ValueError("criticalLevel must not exceed warningLevel")
        return self


class RangeThresholds(BaseModel):
    model_config = ConfigDict(extra="forbid", strict=True, frozen=True)

    min: float
    max: float
    warningMin: float
    warningMax: float

    @model_validator(mode="after")
    def _ordered(self) -> "RangeThresholds":
        if not (self.min <= self.warningMin <= self.warningMax <= self.max):
            raise ValueError("expected min <= warningMin <= warningMax <= max")
        return self


def is_number(value: Any) -> bool:
    """True for finite int/float values. bool is not a reading."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def classify_level(value: float, t: LevelThresholds) -> Severity:
    if value < t.criticalLevel:
        return Severity.CRITICAL
    if value < t.warningLevel:
        return Severity.WARNING
    return Severity.NORMAL


def classify_range(value: float, t: RangeThresholds) -> Severity:
    if value <= t.min or value >= t.max:
        return Severity.CRITICAL
    if t.warningMin <= value <= t.warningMax:
        return Severity.NORMAL
    return Severity.WARNING


def classify(value: Any, thresholds: LevelThresholds | RangeThresholds) -> Severity | None:
    if not is_number(value):
        return None
    if isinstance(thresholds, LevelThresholds):
        return classify_level(value, thresholds)
    if isinstance(thresholds, RangeThresholds):
        return classify_range(value, thresholds)
    raise TypeError(f"unsupported thresholds: {type(thresholds).__name__}")


def worst(*severities: Severity | None) -> Severity | None:
    """Most severe of the given labels, ignoring missing ones."""
    labelled = [s for s in severities if s is not None]
    if not labelled:
        return None
    return max(labelled, key=lambda s: s.rank)

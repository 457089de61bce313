"""
Threshold store: one settings row per owner (user id, or the global owner when
auth is disabled).

get_thresholds() is get-or-create: the first read persists the defaults.
update_thresholds() replaces the whole thresholds document plus tankCapacity;
fields left out of the payload fall back to their defaults, and so do fields
missing from an older stored row.

Writes are last-writer-wins. Two concurrent updates for the same owner can
overwrite each other; there is no version check.
"""
import json
import logging
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .classifier import LevelThresholds, RangeThresholds
from .db import DB_ERRORS, as_datetime
from .errors import StoreError, ValidationFailed, validation_fields

logger = logging.getLogger(__name__)

DEFAULT_TANK_CAPACITY = 200.0


class ThresholdValues(BaseModel):
    model_config = ConfigDict(extra="forbid")

    voltage: RangeThresholds = RangeThresholds(min=10, max=13, warningMin=10.5, warningMax=12.5)
    current: RangeThresholds = RangeThresholds(min=0.5, max=5, warningMin=1, warningMax=4.5)
    fuel: LevelThresholds = LevelThresholds(warningLevel=30, criticalLevel=15)
    battery: LevelThresholds = LevelThresholds(warningLevel=40, criticalLevel=20)


class ThresholdUpdate(BaseModel):
    """PUT /api/thresholds body."""
    model_config = ConfigDict(extra="forbid")

    thresholds: ThresholdValues = Field(default_factory=ThresholdValues)
    tankCapacity: float = Field(DEFAULT_TANK_CAPACITY, gt=0, strict=True)


class ThresholdSet(ThresholdUpdate):
    updatedAt: datetime | None = None


def _merge_defaults(stored: dict[str, Any], defaults: dict[str, Any]) -> dict[str, Any]:
    """Stored values over defaults, per section; unknown stored keys are dropped."""
    merged: dict[str, Any] = {}
    for section, default_values in defaults.items():
        values = stored.get(section)
        if isinstance(values, dict):
            merged[section] = {k: values.get(k, v) for k, v in default_values.items()}
        else:
            merged[section] = dict(default_values)
    return merged


def _from_row(row: dict[str, Any]) -> ThresholdSet:
    raw = row["thresholds"]
    stored = json.loads(raw) if isinstance(raw, str) else (raw or {})
    merged = _merge_defaults(stored, ThresholdValues().model_dump())
    try:
        thresholds = ThresholdValues.model_validate(merged)
    except ValidationError:
        logger.warning("Stored thresholds are invalid, serving defaults: %s", merged)
        thresholds = ThresholdValues()
    tank_capacity = row.get("tank_capacity")
    return ThresholdSet(
        thresholds=thresholds,
        tankCapacity=float(tank_capacity) if tank_capacity else DEFAULT_TANK_CAPACITY,
        updatedAt=as_datetime(row["updated_at"]) if row.get("updated_at") else None,
    )


def parse_update(payload: Any) -> ThresholdUpdate:
    """Validate a PUT body; any bad field becomes a ValidationFailed naming it."""
    if not isinstance(payload, dict) or not payload.get("thresholds"):
        raise ValidationFailed("No threshold data provided", ["thresholds"])
    sections = payload["thresholds"]
    if isinstance(sections, dict):
        # Fill omitted keys of each given section; unknown keys stay and are rejected
        defaults = ThresholdValues().model_dump()
        sections = {
            name: {**defaults[name], **values} if name in defaults and isinstance(values, dict) else values
            for name, values in sections.items()
        }
        payload = {**payload, "thresholds": sections}
    try:
        return ThresholdUpdate.model_validate(payload)
    except ValidationError as e:
        fields = validation_fields(e.errors())
        raise ValidationFailed(f"Invalid threshold values: {', '.join(fields)}", fields) from e


def get_thresholds(conn: Any, owner_id: str) -> ThresholdSet:
    try:
        row = conn.execute(
            "SELECT thresholds, tank_capacity, updated_at FROM threshold_settings WHERE owner_id = %s",
            (owner_id,),
        ).fetchone()
        if row:
            return _from_row(dict(row))
        now = datetime.now(timezone.utc)
        defaults = ThresholdSet(updatedAt=now)
        conn.execute(
            """
            INSERT INTO threshold_settings (owner_id, thresholds, tank_capacity, created_at, updated_at)
            VALUES (%s, %s, %s, %s, %s)
            ON CONFLICT (owner_id) DO NOTHING
            """,
            (owner_id, defaults.thresholds.model_dump_json(), defaults.tankCapacity, now, now),
        )
        conn.commit()
        logger.info("Created default thresholds for owner %s", owner_id)
        row = conn.execute(
            "SELECT thresholds, tank_capacity, updated_at FROM threshold_settings WHERE owner_id = %s",
            (owner_id,),
        ).fetchone()
    except DB_ERRORS as e:
        logger.exception("Threshold lookup failed for owner %s", owner_id)
        raise StoreError("Server error while fetching threshold settings") from e
    return _from_row(dict(row)) if row else defaults


def update_thresholds(conn: Any, owner_id: str, update: ThresholdUpdate) -> ThresholdSet:
    now = datetime.now(timezone.utc)
    try:
        conn.execute(
            """
            INSERT INTO threshold_settings (owner_id, thresholds, tank_capacity, created_at, updated_at)
            VALUES (%s, %s, %s, %s, %s)
            ON CONFLICT (owner_id) DO UPDATE SET
              thresholds = excluded.thresholds,
              tank_capacity = excluded.tank_capacity,
              updated_at = excluded.updated_at
            """,
            (owner_id, update.thresholds.model_dump_json(), update.tankCapacity, now, now),
        )
        conn.commit()
    except DB_ERRORS as e:
        logger.exception("Threshold update failed for owner %s", owner_id)
        raise StoreError("Server error while updating threshold settings") from e
    logger.info("Thresholds updated for owner %s", owner_id)
    return ThresholdSet(thresholds=update.thresholds, tankCapacity=update.tankCapacity, updatedAt=now)

"""
Reading store: one <family>_current row per device (upserted, last write wins)
and an append-only <family>_history table.

Column names come from the metric family definitions, never from requests.
"""
import logging
from datetime import datetime
from typing import Any

from .db import DB_ERRORS, as_datetime
from .errors import StoreError
from .metrics import MetricFamily

logger = logging.getLogger(__name__)


def _cols(family: MetricFamily) -> str:
    return ", ".join(f'"{f.column}"' for f in family.fields)


def _select_list(family: MetricFamily) -> str:
    return ", ".join(["device_id", *(f'"{f.column}"' for f in family.fields), "recorded_at"])


def _to_record(family: MetricFamily, row: dict[str, Any]) -> dict[str, Any]:
    record: dict[str, Any] = {"deviceId": row["device_id"]}
    for f in family.fields:
        value = row.get(f.column)
        record[f.name] = float(value) if value is not None else None
    record["timestamp"] = as_datetime(row["recorded_at"])
    return record


def _where(
    device_id: str | None,
    start: datetime | None,
    end: datetime | None,
) -> tuple[str, list[Any]]:
    conditions = []
    params: list[Any] = []
    if device_id:
        conditions.append("device_id = %s")
        params.append(device_id)
    if start is not None:
        conditions.append("recorded_at >= %s")
        params.append(start)
    if end is not None:
        conditions.append("recorded_at <= %s")
        params.append(end)
    where = " AND ".join(conditions) if conditions else "1=1"
    return where, params


def save_reading(
    conn: Any,
    family: MetricFamily,
    device_id: str,
    values: dict[str, float],
    recorded_at: datetime,
) -> dict[str, Any]:
    """Upsert the device's current row and append the reading to history."""
    cols = _cols(family)
    placeholders = ", ".join(["%s"] * (len(family.fields) + 2))
    updates = ", ".join(f'"{f.column}" = excluded."{f.column}"' for f in family.fields)
    params = [device_id, *(values[f.name] for f in family.fields), recorded_at]
    try:
        conn.execute(
            f"""
            INSERT INTO {family.current_table} (device_id, {cols}, recorded_at)
            VALUES ({placeholders})
            ON CONFLICT (device_id) DO UPDATE SET {updates}, recorded_at = excluded.recorded_at
            """,
            params,
        )
        conn.execute(
            f"INSERT INTO {family.history_table} (device_id, {cols}, recorded_at) VALUES ({placeholders})",
            params,
        )
        conn.commit()
    except DB_ERRORS as e:
        logger.exception("Saving %s reading for device %s failed", family.name.value, device_id)
        raise StoreError(f"Error saving {family.name.value} data") from e
    logger.debug("Stored %s reading for %s: %s", family.name.value, device_id, values)
    return {"deviceId": device_id, **values, "timestamp": recorded_at}


def latest_readings(conn: Any, family: MetricFamily, device_id: str | None = None) -> list[dict[str, Any]]:
    """Current rows, newest first."""
    where, params = _where(device_id, None, None)
    try:
        rows = conn.execute(
            f"""
            SELECT {_select_list(family)}
            FROM {family.current_table}
            WHERE {where}
            ORDER BY recorded_at DESC, device_id
            """,
            params,
        ).fetchall()
    except DB_ERRORS as e:
        logger.exception("Fetching current %s data failed", family.name.value)
        raise StoreError(f"Error fetching {family.name.value} data") from e
    return [_to_record(family, dict(r)) for r in rows]


def history_page(
    conn: Any,
    family: MetricFamily,
    device_id: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    page: int = 1,
    limit: int = 10,
) -> tuple[list[dict[str, Any]], int]:
    """One page of history, newest first, plus the total matching row count."""
    where, params = _where(device_id, start, end)
    offset = (page - 1) * limit
    try:
        rows = conn.execute(
            f"""
            SELECT {_select_list(family)}
            FROM {family.history_table}
            WHERE {where}
            ORDER BY recorded_at DESC, id DESC
            LIMIT %s OFFSET %s
            """,
            [*params, limit, offset],
        ).fetchall()
        total_row = conn.execute(
            f"SELECT COUNT(*) AS total FROM {family.history_table} WHERE {where}",
            params,
        ).fetchone()
    except DB_ERRORS as e:
        logger.exception("Fetching %s history failed", family.name.value)
        raise StoreError(f"Error fetching {family.name.value} history") from e
    total = int(total_row["total"]) if total_row else 0
    return [_to_record(family, dict(r)) for r in rows], total


def readings_between(
    conn: Any,
    family: MetricFamily,
    device_id: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
) -> list[dict[str, Any]]:
    """History rows in [start, end], oldest first. Raises the driver error as-is."""
    where, params = _where(device_id, start, end)
    rows = conn.execute(
        f"""
        SELECT {_select_list(family)}
        FROM {family.history_table}
        WHERE {where}
        ORDER BY recorded_at, id
        """,
        params,
    ).fetchall()
    return [_to_record(family, dict(r)) for r in rows]

"""
Database connection for PowerMate.
Readings live in the store named by POWERMATE_DSN (PostgreSQL, or a SQLite file
for local runs and tests). Loads POWERMATE_DSN from .env (gitignored) when present.

Optional: POWERMATE_APP_STATE_DSN for the thresholds table.
If unset, thresholds are kept in the same store as the readings.

A DSN like sqlite:///./powermate.db or file:powermate.db selects SQLite; anything
else is handed to psycopg.
"""
import logging
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Generator

import psycopg
from psycopg.rows import dict_row

from .errors import StoreError

logger = logging.getLogger(__name__)

# Load .env from backend directory so POWERMATE_DSN is set (file is gitignored)
_env_path = Path(__file__).resolve().parent.parent / ".env"
if _env_path.exists():
    from dotenv import load_dotenv
    load_dotenv(_env_path)

# When POWERMATE_DSN is not set, use this SQLite file so the API works without Postgres
_DEFAULT_SQLITE_PATH = Path(__file__).resolve().parent.parent / "powermate.db"

DEFAULT_DSN = os.environ.get("POWERMATE_DSN", "").strip() or f"sqlite:///{_DEFAULT_SQLITE_PATH}"

APP_STATE_DSN = os.environ.get("POWERMATE_APP_STATE_DSN", "").strip()

_SQLITE_SCHEMA = """
CREATE TABLE IF NOT EXISTS dc_power_current (
  device_id TEXT PRIMARY KEY,
  "voltage" REAL NOT NULL,
  "current" REAL NOT NULL,
  recorded_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS dc_power_history (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  device_id TEXT NOT NULL,
  "voltage" REAL NOT NULL,
  "current" REAL NOT NULL,
  recorded_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_dc_power_history_device ON dc_power_history(device_id, recorded_at);

CREATE TABLE IF NOT EXISTS battery_current (
  device_id TEXT PRIMARY KEY,
  "voltage" REAL NOT NULL,
  "current" REAL NOT NULL,
  "percentage" REAL NOT NULL,
  recorded_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS battery_history (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  device_id TEXT NOT NULL,
  "voltage" REAL NOT NULL,
  "current" REAL NOT NULL,
  "percentage" REAL NOT NULL,
  recorded_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_battery_history_device ON battery_history(device_id, recorded_at);

CREATE TABLE IF NOT EXISTS fuel_distance_current (
  device_id TEXT PRIMARY KEY,
  "distance" REAL NOT NULL,
  recorded_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS fuel_distance_history (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  device_id TEXT NOT NULL,
  "distance" REAL NOT NULL,
  recorded_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_fuel_distance_history_device ON fuel_distance_history(device_id, recorded_at);

CREATE TABLE IF NOT EXISTS temperature_current (
  device_id TEXT PRIMARY KEY,
  "temperature_c" REAL NOT NULL,
  "temperature_f" REAL NOT NULL,
  "humidity" REAL NOT NULL DEFAULT 0,
  recorded_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS temperature_history (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  device_id TEXT NOT NULL,
  "temperature_c" REAL NOT NULL,
  "temperature_f" REAL NOT NULL,
  "humidity" REAL NOT NULL DEFAULT 0,
  recorded_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_temperature_history_device ON temperature_history(device_id, recorded_at);

CREATE TABLE IF NOT EXISTS threshold_settings (
  owner_id TEXT PRIMARY KEY,
  thresholds TEXT NOT NULL,
  tank_capacity REAL NOT NULL,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL
);
"""

# Errors raised by either backend; callers wrap them into StoreError
DB_ERRORS = (psycopg.Error, sqlite3.Error)


def is_sqlite_dsn(dsn: str) -> bool:
    lower = dsn.strip().lower()
    return lower.startswith("sqlite:") or lower.startswith("file:")


def _sqlite_path(dsn: str) -> Path:
    s = dsn.strip()
    if s.startswith("file:"):
        s = s[5:]
    elif s.startswith("sqlite:"):
        s = s[7:]
    # sqlite:///relative.db and sqlite:////abs/path.db
    if s.startswith("///"):
        s = s[3:]
    if not s or s == ":memory:":
        raise ValueError(f"SQLite DSN needs a file path: {dsn!r}")
    path = Path(s)
    if not path.is_absolute():
        path = Path(__file__).resolve().parent.parent / path
    return path


def utc(value: datetime) -> datetime:
    """Aware UTC datetime; naive values are taken to be UTC already."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def as_datetime(value: Any) -> datetime:
    """Timestamp column value from either backend as an aware UTC datetime."""
    if isinstance(value, datetime):
        return utc(value)
    return utc(datetime.fromisoformat(str(value)))


def _adapt(value: Any) -> Any:
    # Fixed-width ISO text keeps SQLite string comparison in time order
    if isinstance(value, datetime):
        return utc(value).isoformat(timespec="microseconds")
    return value


class _SqliteCursorWrapper:
    def __init__(self, cursor: sqlite3.Cursor):
        self._cur = cursor

    def fetchone(self) -> dict[str, Any] | None:
        row = self._cur.fetchone()
        if row is None:
            return None
        return dict(zip([c[0] for c in self._cur.description], row))

    def fetchall(self) -> list[dict[str, Any]]:
        rows = self._cur.fetchall()
        if not rows:
            return []
        return [dict(zip([c[0] for c in self._cur.description], r)) for r in rows]


class _SqliteConnWrapper:
    """Wraps sqlite3 connection to use %s placeholders and return dict rows."""

    def __init__(self, conn: sqlite3.Connection):
        self._conn = conn
        conn.row_factory = sqlite3.Row

    def execute(self, sql: str, params: tuple[Any, ...] | list[Any] | None = None) -> _SqliteCursorWrapper:
        sqlite_sql = sql.replace("%s", "?")
        cur = self._conn.execute(sqlite_sql, tuple(_adapt(p) for p in (params or ())))
        return _SqliteCursorWrapper(cur)

    def commit(self) -> None:
        self._conn.commit()

    def close(self) -> None:
        self._conn.close()


def _open_sqlite(path: Path) -> _SqliteConnWrapper:
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path))
    conn.executescript(_SQLITE_SCHEMA)
    conn.commit()
    return _SqliteConnWrapper(conn)


@contextmanager
def get_conn(dsn: str) -> Generator[Any, None, None]:
    """
    Context manager for a single store connection. Caller closes via context.
    Yields a connection with execute(sql, params), commit() and dict rows,
    backed by psycopg for Postgres DSNs and by SQLite for sqlite:/file: DSNs.
    """
    try:
        if is_sqlite_dsn(dsn):
            conn = _open_sqlite(_sqlite_path(dsn))
        else:
            conn = psycopg.connect(dsn, row_factory=dict_row)
    except DB_ERRORS as e:
        logger.exception("Could not connect to the store at %s", mask_dsn(dsn))
        raise StoreError("Storage unavailable") from e
    try:
        yield conn
    finally:
        conn.close()


def app_state_dsn(main_dsn: str) -> str:
    """DSN for the thresholds table: POWERMATE_APP_STATE_DSN when set, else the readings store."""
    return APP_STATE_DSN or main_dsn


def mask_dsn(dsn: str) -> str:
    """DSN with the password hidden, for display."""
    if "@" not in dsn or "://" not in dsn:
        return dsn
    try:
        from urllib.parse import urlparse
        p = urlparse(dsn)
        if not p.password:
            return dsn
        netloc = p.hostname or ""
        if p.port:
            netloc += f":{p.port}"
        return f"{p.scheme}://{p.username}:***@{netloc}{p.path or '/'}"
    except ValueError:
        return dsn

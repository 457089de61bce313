"""
Pytest configuration for PowerMate tests.
Auth is off unless a test turns it on; every test gets its own SQLite store.
"""

import os

# Set these BEFORE the app modules are imported
os.environ.pop("JWT_SECRET", None)
os.environ.pop("POWERMATE_APP_STATE_DSN", None)
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest
from fastapi.testclient import TestClient

from powermate import auth, db
from powermate.db import get_conn
from powermate.main import app, store_dsn

TEST_SECRET = "test-secret-with-at-least-thirty-two-chars"


@pytest.fixture
def dsn(tmp_path):
    return f"sqlite:///{tmp_path / 'powermate.db'}"


@pytest.fixture
def conn(dsn):
    with get_conn(dsn) as c:
        yield c


@pytest.fixture
def client(dsn, monkeypatch):
    """API client against a fresh store, auth disabled."""
    monkeypatch.setattr(auth, "JWT_SECRET", "")
    monkeypatch.setattr(db, "APP_STATE_DSN", "")
    app.dependency_overrides[store_dsn] = lambda: dsn
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def enable_auth(monkeypatch):
    """Turn on JWT auth with one registered device."""
    monkeypatch.setattr(auth, "JWT_SECRET", TEST_SECRET)
    monkeypatch.setattr(auth, "ALLOWED_DEVICES", {"PowerMate-ESP32-001": "deviceSecret1"})
    yield

"""
PowerMate backend: device ingestion -> reading store -> current / history / chart
views with threshold status labels.
DSN: env POWERMATE_DSN (PostgreSQL, or sqlite:///file.db). Auth: JWT_SECRET, see auth.py.
Serves the dashboard GUI from backend/static when that folder exists (e.g. after build).
"""
import logging
import math
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from fastapi import Body, Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel

from .aggregation import aggregate
from .auth import (
    DEFAULT_OWNER,
    DeviceContext,
    RequestContext,
    check_device_credentials,
    create_device_token,
    get_device_context,
    get_request_context,
    is_auth_enabled,
)
from .db import DEFAULT_DSN, app_state_dsn, get_conn, mask_dsn
from .errors import AuthenticationError, NotFoundError, ValidationFailed, register_exception_handlers
from .ingest import (
    BatteryReading,
    DCPowerReading,
    DistanceReading,
    SensorDataPayload,
    TemperatureReading,
    resolve_device_id,
)
from .metrics import MetricName, get_family, present
from .readings import history_page, latest_readings, save_reading
from .thresholds import ThresholdSet, get_thresholds, parse_update, update_thresholds

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="PowerMate", version="0.1.0")
register_exception_handlers(app)

# CORS: with credentials (cookies, Bearer tokens) do not use allow_origins=["*"].
# Set CORS_ORIGINS to comma-separated origins (e.g. http://localhost:5173,https://dash.example.com).
_cors_origins_raw = os.environ.get("CORS_ORIGINS", "").strip()
CORS_ORIGINS = [o.strip() for o in _cors_origins_raw.split(",") if o.strip()]
if CORS_ORIGINS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type"],
    )
else:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

# Set ALLOW_FRAME_ORIGINS to allow embedding (comma-separated origins, or *).
# Default sends X-Frame-Options: DENY.
_ALLOW_FRAME_ORIGINS = os.environ.get("ALLOW_FRAME_ORIGINS", "").strip()


@app.middleware("http")
async def security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    if _ALLOW_FRAME_ORIGINS:
        origins = _ALLOW_FRAME_ORIGINS if _ALLOW_FRAME_ORIGINS == "*" else " ".join(o.strip() for o in _ALLOW_FRAME_ORIGINS.split(",") if o.strip())
        response.headers["Content-Security-Policy"] = f"frame-ancestors {origins}"
    else:
        response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    return response


# When the dashboard is built into backend/static, we serve the GUI from /
_STATIC_DIR = Path(__file__).resolve().parent.parent / "static"
_SERVE_GUI = _STATIC_DIR.exists() and (_STATIC_DIR / "index.html").exists()


def store_dsn() -> str:
    return DEFAULT_DSN


def _request_context(request: Request, dsn: str = Depends(store_dsn)) -> RequestContext:
    return get_request_context(request, dsn)


def _device_context(request: Request, dsn: str = Depends(store_dsn)) -> DeviceContext:
    return get_device_context(request, dsn)


def _parse_date(value: str | None, name: str) -> datetime | None:
    """ISO date or datetime from a query string; naive values are UTC."""
    if value is None or not value.strip():
        return None
    try:
        parsed = datetime.fromisoformat(value.strip())
    except ValueError:
        raise ValidationFailed(f"Invalid {name}: expected an ISO 8601 date", [name]) from None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _load_thresholds(ctx: RequestContext) -> ThresholdSet:
    with get_conn(app_state_dsn(ctx.dsn)) as conn:
        return get_thresholds(conn, ctx.owner_id)


# ---------- Pydantic models ----------

class DeviceAuthRequest(BaseModel):
    deviceId: str = ""
    deviceSecret: str = ""


# ---------- Service ----------

@app.get("/api/health")
def health():
    return {"success": True, "status": "ok"}


@app.get("/api/config")
def get_config(ctx: RequestContext = Depends(_request_context)):
    """Store DSN (password hidden) and auth mode for display in the dashboard."""
    return {
        "success": True,
        "dsn": mask_dsn(ctx.dsn),
        "authEnabled": is_auth_enabled(),
        "owner": ctx.owner_id,
        "defaultOwner": DEFAULT_OWNER,
    }


# ---------- Device auth ----------

@app.post("/api/auth/device")
def device_login(body: DeviceAuthRequest):
    """Exchange a deviceId/deviceSecret pair for a 7-day device token."""
    if not is_auth_enabled():
        raise HTTPException(
            status_code=501,
            detail="Device auth not configured (set JWT_SECRET with at least 32 characters)",
        )
    missing = [name for name in ("deviceId", "deviceSecret") if not getattr(body, name)]
    if missing:
        raise ValidationFailed("Device ID and secret are required", missing)
    if not check_device_credentials(body.deviceId, body.deviceSecret):
        logger.warning("Rejected credentials for device %s", body.deviceId)
        raise AuthenticationError("Invalid device credentials")
    logger.info("Issued token for device %s", body.deviceId)
    return {"success": True, "token": create_device_token(body.deviceId)}


# ---------- Thresholds ----------

@app.get("/api/thresholds")
def read_thresholds(ctx: RequestContext = Depends(_request_context)):
    return {"success": True, "data": _load_thresholds(ctx).model_dump(mode="json")}


@app.put("/api/thresholds")
def replace_thresholds(
    payload: Any = Body(None),
    ctx: RequestContext = Depends(_request_context),
):
    update = parse_update(payload)
    with get_conn(app_state_dsn(ctx.dsn)) as conn:
        saved = update_thresholds(conn, ctx.owner_id, update)
    return {
        "success": True,
        "message": "Threshold settings updated successfully",
        "data": saved.model_dump(mode="json"),
    }


# ---------- Ingestion ----------

def _ingest(ctx: DeviceContext, metric: MetricName, reading: Any, device_id: str | None, ts: datetime | None):
    family = get_family(metric)
    device = resolve_device_id(device_id, ctx.device_id)
    recorded_at = ts or datetime.now(timezone.utc)
    with get_conn(ctx.dsn) as conn:
        saved = save_reading(conn, family, device, reading.values(), recorded_at)
    logger.info("Stored %s reading from %s", metric.value, device)
    return saved


@app.post("/api/sensor-data", status_code=201)
def ingest_sensor_data(body: SensorDataPayload, ctx: DeviceContext = Depends(_device_context)):
    """Several metric families from one device in a single post, sharing one timestamp."""
    device = resolve_device_id(body.deviceId, ctx.device_id)
    recorded_at = body.timestamp or datetime.now(timezone.utc)
    results: dict[str, Any] = {}
    for metric, reading in body.readings().items():
        results[metric.value] = _ingest(ctx, metric, reading, device, reading.timestamp or recorded_at)
    return {"success": True, "deviceId": device, "timestamp": recorded_at, "results": results}


@app.post("/api/power", status_code=201)
def ingest_power(body: DCPowerReading, ctx: DeviceContext = Depends(_device_context)):
    return {"success": True, "data": _ingest(ctx, MetricName.POWER, body, body.deviceId, body.timestamp)}


@app.post("/api/battery", status_code=201)
def ingest_battery(body: BatteryReading, ctx: DeviceContext = Depends(_device_context)):
    return {"success": True, "data": _ingest(ctx, MetricName.BATTERY, body, body.deviceId, body.timestamp)}


@app.post("/api/fuel", status_code=201)
def ingest_fuel(body: DistanceReading, ctx: DeviceContext = Depends(_device_context)):
    return {"success": True, "data": _ingest(ctx, MetricName.FUEL, body, body.deviceId, body.timestamp)}


@app.post("/api/temperature", status_code=201)
def ingest_temperature(body: TemperatureReading, ctx: DeviceContext = Depends(_device_context)):
    return {"success": True, "data": _ingest(ctx, MetricName.TEMPERATURE, body, body.deviceId, body.timestamp)}


# ---------- Dashboard views ----------

@app.get("/api/{metric}/current")
def current_readings(
    metric: MetricName,
    deviceId: str | None = Query(None),
    ctx: RequestContext = Depends(_request_context),
):
    """Latest reading per device (or for one device), newest first, with status labels."""
    family = get_family(metric)
    with get_conn(ctx.dsn) as conn:
        records = latest_readings(conn, family, deviceId)
    if not records:
        suffix = f" for device {deviceId}" if deviceId else ""
        raise NotFoundError(f"No {metric.value} data found{suffix}")
    thresholds = _load_thresholds(ctx) if family.label else ThresholdSet()
    data = [present(family, r, thresholds) for r in records]
    return {"success": True, "count": len(data), "data": data}


@app.get("/api/{metric}/history")
def reading_history(
    metric: MetricName,
    deviceId: str | None = Query(None),
    startDate: str | None = Query(None),
    endDate: str | None = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=1000),
    ctx: RequestContext = Depends(_request_context),
):
    """Paginated raw readings, newest first, each with its status label."""
    family = get_family(metric)
    start = _parse_date(startDate, "startDate")
    end = _parse_date(endDate, "endDate")
    with get_conn(ctx.dsn) as conn:
        records, total = history_page(conn, family, deviceId, start, end, page, limit)
    thresholds = _load_thresholds(ctx) if family.label and records else ThresholdSet()
    data = [present(family, r, thresholds) for r in records]
    return {
        "success": True,
        "count": len(data),
        "totalPages": math.ceil(total / limit),
        "currentPage": page,
        "data": data,
    }


@app.get("/api/{metric}/chart")
def chart_data(
    metric: MetricName,
    deviceId: str | None = Query(None),
    startDate: str | None = Query(None),
    endDate: str | None = Query(None),
    ctx: RequestContext = Depends(_request_context),
):
    """Averaged chart points; bucket width (hour, hour4, day) follows the date range."""
    family = get_family(metric)
    start = _parse_date(startDate, "startDate")
    end = _parse_date(endDate, "endDate")
    with get_conn(ctx.dsn) as conn:
        grouping, buckets = aggregate(conn, family, deviceId, start, end)
    return {
        "success": True,
        "count": len(buckets),
        "grouping": grouping.value,
        "data": [b.to_dict() for b in buckets],
    }


# ---------- Serve dashboard GUI when backend/static exists ----------

if _SERVE_GUI:
    _assets_dir = _STATIC_DIR / "assets"
    if _assets_dir.exists():
        app.mount("/assets", StaticFiles(directory=str(_assets_dir)), name="assets")

    @app.get("/")
    def _serve_index():
        return FileResponse(str(_STATIC_DIR / "index.html"))

    @app.get("/{full_path:path}")
    def _serve_spa(full_path: str):
        if full_path in ("docs", "redoc", "openapi.json") or full_path.startswith(("api/", "docs/", "redoc/")):
            raise HTTPException(status_code=404, detail="Not Found")
        return FileResponse(str(_STATIC_DIR / "index.html"))
else:
    @app.get("/")
    def root():
        return {
            "name": "PowerMate API",
            "docs": "/docs",
            "message": "This is the API. Build the dashboard into backend/static to get the GUI at this URL.",
        }

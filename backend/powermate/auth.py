"""
JWT auth for devices and dashboard users.
When JWT_SECRET is set (at least 32 characters):
- POST /api/auth/device exchanges a deviceId/deviceSecret pair from POWERMATE_DEVICES for a device token.
- Ingestion routes require a device token (Bearer). Missing -> 401, invalid -> 403.
- Dashboard routes require a user token (Bearer or the "jwt" cookie); its userId owns the thresholds.
Without JWT_SECRET every route is open and thresholds belong to POWERMATE_DEFAULT_OWNER.
"""
import hmac
import logging
import os
import time
from dataclasses import dataclass
from typing import Any

import jwt
from fastapi import Request

from .errors import AuthenticationError, AuthorizationError

logger = logging.getLogger(__name__)

JWT_SECRET = os.environ.get("JWT_SECRET", "").strip()
JWT_ALGORITHM = "HS256"
USER_TOKEN_HOURS = 24
DEVICE_TOKEN_DAYS = 7

DEFAULT_OWNER = os.environ.get("POWERMATE_DEFAULT_OWNER", "global").strip() or "global"


def _parse_devices(raw: str) -> dict[str, str]:
    """POWERMATE_DEVICES="tower1:secret1,PowerMate-ESP32-001:secret2" -> {id: secret}."""
    devices: dict[str, str] = {}
    for item in raw.split(","):
        device_id, sep, secret = item.strip().partition(":")
        if sep and device_id.strip() and secret.strip():
            devices[device_id.strip()] = secret.strip()
    return devices


ALLOWED_DEVICES = _parse_devices(os.environ.get("POWERMATE_DEVICES", ""))


def is_auth_enabled() -> bool:
    return len(JWT_SECRET) >= 32


def _encode(payload: dict[str, Any], ttl_seconds: int) -> str:
    now = int(time.time())
    return jwt.encode({**payload, "iat": now, "exp": now + ttl_seconds}, JWT_SECRET, algorithm=JWT_ALGORITHM)


def create_user_token(user_id: str, email: str = "", role: str = "operator") -> str:
    """
    Dashboard user token. This service has no user login route; tokens come from
    the login service that shares JWT_SECRET, and this mints the same payload.
    """
    return _encode({"userId": user_id, "email": email, "role": role}, USER_TOKEN_HOURS * 3600)


def create_device_token(device_id: str) -> str:
    return _encode({"deviceId": device_id}, DEVICE_TOKEN_DAYS * 86400)


def verify_token(token: str) -> dict[str, Any] | None:
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
        return payload
    except jwt.PyJWTError:
        return None


def check_device_credentials(device_id: str, device_secret: str) -> bool:
    expected = ALLOWED_DEVICES.get(device_id)
    return expected is not None and hmac.compare_digest(expected, device_secret)


def _bearer(request: Request) -> str | None:
    auth_header = request.headers.get("authorization")
    if auth_header and auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None


@dataclass
class RequestContext:
    """Store DSN and threshold owner for a dashboard request."""
    dsn: str
    owner_id: str


@dataclass
class DeviceContext:
    """Store DSN and the authenticated device (None when auth is disabled)."""
    dsn: str
    device_id: str | None


def get_request_context(request: Request, dsn: str) -> RequestContext:
    """
    Resolve the threshold owner from a user token (Bearer header or jwt cookie).
    When auth is disabled every request belongs to DEFAULT_OWNER.
    """
    if not is_auth_enabled():
        return RequestContext(dsn=dsn, owner_id=DEFAULT_OWNER)
    token = _bearer(request) or request.cookies.get("jwt")
    if not token:
        raise AuthenticationError("Unauthorized - No token provided")
    payload = verify_token(token)
    if not payload or not payload.get("userId"):
        raise AuthenticationError("Unauthorized - Invalid token")
    return RequestContext(dsn=dsn, owner_id=str(payload["userId"]))


def get_device_context(request: Request, dsn: str) -> DeviceContext:
    """Ingestion auth: a device token is required once JWT_SECRET is configured."""
    if not is_auth_enabled():
        return DeviceContext(dsn=dsn, device_id=None)
    token = _bearer(request)
    if not token:
        raise AuthenticationError()
    payload = verify_token(token)
    if not payload or not payload.get("deviceId"):
        logger.warning("Rejected device token from %s", request.client.host if request.client else "?")
        raise AuthorizationError()
    return DeviceContext(dsn=dsn, device_id=str(payload["deviceId"]))

"""
Centralized error handling for the PowerMate API.

Every failure leaves the service as {"success": false, "message": ...} plus
optional details, with the status code carried by the exception.
"""
import logging
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

logger = logging.getLogger(__name__)


class PowermateError(Exception):
    """Base exception for PowerMate"""

    status_code = 500

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationFailed(PowermateError):
    """Missing or malformed request fields"""

    status_code = 400

    def __init__(self, message: str, fields: list[str] | None = None):
        super().__init__(message, {"fields": fields or []})
        self.fields = fields or []


class NotFoundError(PowermateError):
    status_code = 404


class AuthenticationError(PowermateError):
    status_code = 401

    def __init__(self, message: str = "Authentication required"):
        super().__init__(message)


class AuthorizationError(PowermateError):
    status_code = 403

    def __init__(self, message: str = "Invalid or expired token"):
        super().__init__(message)


class StoreError(PowermateError):
    """Reading or threshold store failure. The cause is logged, never returned."""

    status_code = 500

    def __init__(self, message: str = "Storage error"):
        super().__init__(message)


class AggregationError(StoreError):
    def __init__(self, message: str = "aggregation failed"):
        super().__init__(message)


def error_body(message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    body: dict[str, Any] = {"success": False, "message": message}
    if details:
        body.update(details)
    return body


def _field_name(loc: tuple[Any, ...]) -> str:
    # ("body", "battery", "voltage") -> "battery.voltage"
    parts = [str(p) for p in loc if p not in ("body", "query", "path", "header", "cookie")]
    return ".".join(parts) or "body"


def validation_fields(errors: list[dict[str, Any]]) -> list[str]:
    """Offending field names from pydantic error dicts, in first-seen order."""
    seen: list[str] = []
    for err in errors:
        name = _field_name(tuple(err.get("loc", ())))
        if name not in seen:
            seen.append(name)
    return seen


async def powermate_exception_handler(request: Request, exc: PowermateError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    else:
        logger.info("%s %s -> %d: %s", request.method, request.url.path, exc.status_code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=error_body(exc.message, exc.details))


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    fields = validation_fields(list(exc.errors()))
    logger.info("%s %s rejected, invalid fields: %s", request.method, request.url.path, fields)
    return JSONResponse(
        status_code=400,
        content=error_body(f"Invalid or missing fields: {', '.join(fields)}", {"fields": fields}),
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(str(exc.detail)),
        headers=getattr(exc, "headers", None),
    )


async def unexpected_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unexpected error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content=error_body("Internal server error"))


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(PowermateError, powermate_exception_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, unexpected_exception_handler)

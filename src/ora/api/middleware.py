"""API error handling middleware: consistent error responses.

Registers FastAPI exception handlers that convert domain exceptions into
standardised ``{"error": {"code": "...", "message": "...", "details": ...}}``
JSON responses.

Status code mapping:
- ``OraError`` → by ``code`` (see ``_STATUS_BY_CODE``), 500 when unmapped
- ``ValueError`` → 400 Bad Request
- Any other ``Exception`` → 500 Internal Server Error
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from ora.api.models import ErrorDetail, ErrorResponse
from ora.errors import OraError

logger = logging.getLogger(__name__)

_STATUS_BY_CODE: dict[str, int] = {
    "AUTH_REQUIRED": 401,
    "SESSION_EXPIRED": 401,
    "STATE_INVALID": 400,
    "TOKEN_EXCHANGE_FAILED": 400,
    "CONSENT_FAILED": 400,
    "SELF_REQUEST": 400,
    "USER_CANCELLED": 400,
    "STORAGE_PERMISSION_DENIED": 403,
    "FRIENDSHIP_NOT_FOUND": 404,
    "NOT_FOUND": 404,
    "INVALID_TRANSITION": 409,
    "CONFLICT_DETECTED": 409,
    "NO_CLIENT_CONFIG": 500,
    "PROVIDER_ERROR": 502,
}


def status_for(exc: OraError) -> int:
    return _STATUS_BY_CODE.get(exc.code, 500)


def error_response(
    status_code: int, code: str, message: str, details: dict | None = None
) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message, details=details))
    return JSONResponse(status_code=status_code, content=body.model_dump())


async def _handle_ora_error(
    request: Request,
    exc: OraError,
) -> JSONResponse:
    status_code = status_for(exc)
    if status_code >= 500:
        logger.warning("%s on %s: %s", exc.code, request.url.path, exc.message, exc_info=exc)
    else:
        logger.info("%s on %s: %s", exc.code, request.url.path, exc.message)
    return error_response(status_code, exc.code, exc.message, exc.details)


async def _handle_value_error(
    request: Request,
    exc: ValueError,
) -> JSONResponse:
    """Return 400 for validation / value errors."""
    logger.info("Validation error: %s", exc)
    return error_response(400, "VALIDATION_ERROR", str(exc))


class CatchAllErrorMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that catches any unhandled exception and returns a 500.

    Sits above the Starlette exception handler layer so that exceptions not
    caught by ``add_exception_handler`` still get the standard envelope.
    """

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception:
            logger.error(
                "Unhandled exception on %s %s",
                request.method,
                request.url.path,
                exc_info=True,
            )
            return error_response(500, "INTERNAL_ERROR", "Internal server error")


def register_error_handlers(app: FastAPI) -> None:
    """Attach all exception handlers to the FastAPI application."""
    app.add_exception_handler(OraError, _handle_ora_error)  # type: ignore[arg-type]
    app.add_exception_handler(ValueError, _handle_value_error)  # type: ignore[arg-type]
    app.add_middleware(CatchAllErrorMiddleware)

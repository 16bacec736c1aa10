"""API error handling middleware: consistent error responses.

Registers FastAPI exception handlers that convert calsync exceptions into
standardised ``{"error": {"code": "...", "message": "...", "source": "..."}}``
JSON responses.

Status code mapping:
- ``SyncInProgress``, ``AccountLimitExceeded``, ``AccountAlreadyConnected`` → 409
- ``InvalidCalendarFile`` (incl. path traversal), ``ValueError`` → 400
- ``AccountNotFound`` → 404
- ``AllSourcesFailed``, ``OAuthExchangeError`` → 502
- ``CloudNotConfigured`` → 503
- Any other ``CalendarError`` or ``Exception`` → 500
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from calsync.api.models import ErrorDetail, ErrorResponse
from calsync.errors import (
    AccountAlreadyConnected,
    AccountLimitExceeded,
    AccountNotFound,
    AllSourcesFailed,
    CalendarError,
    CloudNotConfigured,
    InvalidCalendarFile,
    OAuthExchangeError,
    SyncInProgress,
    sanitize_error_message,
)

logger = logging.getLogger(__name__)

_STATUS_BY_ERROR: tuple[tuple[type[CalendarError], int], ...] = (
    (SyncInProgress, 409),
    (AccountLimitExceeded, 409),
    (AccountAlreadyConnected, 409),
    (InvalidCalendarFile, 400),
    (AccountNotFound, 404),
    (AllSourcesFailed, 502),
    (OAuthExchangeError, 502),
    (CloudNotConfigured, 503),
)


def status_for(exc: CalendarError) -> int:
    for error_type, status in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status
    return 500


async def _handle_calendar_error(request: Request, exc: CalendarError) -> JSONResponse:
    status = status_for(exc)
    if status >= 500:
        logger.warning("%s on %s %s", exc.code, request.method, request.url.path)
    else:
        logger.info("%s on %s %s", exc.code, request.method, request.url.path)
    details = None
    if isinstance(exc, AllSourcesFailed):
        details = {
            "failures": [f.model_dump(mode="json", by_alias=True) for f in exc.failures]
        }
    body = ErrorResponse(
        error=ErrorDetail(
            code=exc.code,
            message=sanitize_error_message(exc.message),
            source=exc.source,
            details=details,
        )
    )
    return JSONResponse(status_code=status, content=body.model_dump())


async def _handle_value_error(request: Request, exc: ValueError) -> JSONResponse:
    """Return 400 for validation / value errors."""
    logger.info("Validation error: %s", exc)
    body = ErrorResponse(
        error=ErrorDetail(code="VALIDATION_ERROR", message=sanitize_error_message(str(exc)))
    )
    return JSONResponse(status_code=400, content=body.model_dump())


class CatchAllErrorMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that catches any unhandled exception and returns a 500."""

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
            body = ErrorResponse(
                error=ErrorDetail(code="INTERNAL_ERROR", message="Internal server error")
            )
            return JSONResponse(status_code=500, content=body.model_dump())


def register_error_handlers(app: FastAPI) -> None:
    """Attach all exception handlers to the FastAPI application."""
    app.add_exception_handler(CalendarError, _handle_calendar_error)  # type: ignore[arg-type]
    app.add_exception_handler(ValueError, _handle_value_error)  # type: ignore[arg-type]
    app.add_middleware(CatchAllErrorMiddleware)

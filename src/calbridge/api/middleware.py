"""API error handling: domain exceptions -> consistent JSON envelopes.

Status code mapping:
- ``ValidationError`` (and ``DateFormatError``) -> 400 Bad Request
- ``UpstreamAuthError`` -> 502 Bad Gateway
- ``UpstreamAPIError`` -> 502 Bad Gateway
- Any other ``Exception`` -> 500 Internal Server Error
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from calbridge.api.models import ErrorDetail, ErrorResponse
from calbridge.errors import (
    DateFormatError,
    UpstreamAPIError,
    UpstreamAuthError,
    ValidationError,
    safe_error_message,
)

logger = logging.getLogger(__name__)


def _envelope(status_code: int, code: str, message: str, details: dict | None = None) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message, details=details))
    return JSONResponse(status_code=status_code, content=body.model_dump())


async def _handle_validation_error(request: Request, exc: ValidationError) -> JSONResponse:
    """Return 400 for malformed payloads and unparseable dates."""
    logger.info("Rejected %s %s: %s", request.method, request.url.path, exc)
    code = "DATE_FORMAT_ERROR" if isinstance(exc, DateFormatError) else "VALIDATION_ERROR"
    return _envelope(400, code, safe_error_message(exc))


async def _handle_upstream_auth_error(request: Request, exc: UpstreamAuthError) -> JSONResponse:
    """Return 502 when either remote refuses the token refresh."""
    logger.error("Token refresh failed for %s: %s", exc.service, safe_error_message(exc))
    return _envelope(
        502,
        "UPSTREAM_AUTH_ERROR",
        safe_error_message(exc),
        details={"service": exc.service},
    )


async def _handle_upstream_api_error(request: Request, exc: UpstreamAPIError) -> JSONResponse:
    """Return 502 for unexpected remote statuses."""
    logger.error(
        "Upstream %s failed on %s %s: %s",
        exc.service,
        request.method,
        request.url.path,
        safe_error_message(exc),
    )
    return _envelope(
        502,
        "UPSTREAM_API_ERROR",
        safe_error_message(exc),
        details={"service": exc.service, "status_code": exc.status_code},
    )


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
            return _envelope(500, "INTERNAL_ERROR", "Internal server error")


def register_error_handlers(app: FastAPI) -> None:
    """Attach all exception handlers to the FastAPI application."""
    app.add_exception_handler(ValidationError, _handle_validation_error)  # type: ignore[arg-type]
    app.add_exception_handler(UpstreamAuthError, _handle_upstream_auth_error)  # type: ignore[arg-type]
    app.add_exception_handler(UpstreamAPIError, _handle_upstream_api_error)  # type: ignore[arg-type]
    app.add_middleware(CatchAllErrorMiddleware)

"""API error handling middleware: consistent error responses.

Registers FastAPI exception handlers that convert integration exceptions into
standardised ``{"error": {"code": "...", "message": "...", "provider": "..."}}``
JSON responses.

Status code mapping:
- ``NotConnectedError`` / ``AuthError`` → 409 Conflict (reconnect required)
- ``ScopeDeniedError`` → 403 Forbidden
- ``ValidationError`` / ``ValueError`` → 400 Bad Request
- ``KeyError`` (unknown provider) → 404 Not Found
- ``ProviderError`` → 502 Bad Gateway
- ``TransportError`` → 504 Gateway Timeout
- ``ReservationError`` → 503 Service Unavailable
- Any other ``Exception`` → 500 Internal Server Error
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from calbridge.api.models import ErrorDetail, ErrorResponse
from calbridge.errors import (
    AuthError,
    IntegrationError,
    NotConnectedError,
    ProviderError,
    ReservationError,
    ScopeDeniedError,
    TransportError,
    ValidationError,
    sanitize_error_message,
)

logger = logging.getLogger(__name__)


def _error_response(
    status_code: int,
    code: str,
    message: str,
    *,
    provider: str | None = None,
    details: dict | None = None,
) -> JSONResponse:
    body = ErrorResponse(
        error=ErrorDetail(
            code=code,
            message=sanitize_error_message(message),
            provider=provider,
            details=details,
        )
    )
    return JSONResponse(status_code=status_code, content=body.model_dump())


async def _handle_not_connected(
    request: Request,
    exc: NotConnectedError | AuthError,
) -> JSONResponse:
    """Return 409 when the integration needs to be (re)connected."""
    logger.info("Integration not connected: %s", exc)
    return _error_response(
        409,
        "INTEGRATION_NOT_CONNECTED",
        f"{exc} Please reconnect the integration.",
    )


async def _handle_scope_denied(request: Request, exc: ScopeDeniedError) -> JSONResponse:
    logger.info("Scope denied: %s", exc)
    return _error_response(
        403,
        "SCOPE_DENIED",
        str(exc),
        provider=exc.provider,
        details={"scope": exc.scope},
    )


async def _handle_provider_error(request: Request, exc: ProviderError) -> JSONResponse:
    """Return 502 when the provider answered with a non-2xx status."""
    logger.warning("Provider error from %s (HTTP %s): %s", exc.provider, exc.status_code, exc)
    return _error_response(
        502,
        "PROVIDER_ERROR",
        str(exc),
        provider=exc.provider,
        details={"status_code": exc.status_code},
    )


async def _handle_transport_error(request: Request, exc: TransportError) -> JSONResponse:
    logger.warning("Provider unreachable: %s", exc)
    return _error_response(504, "PROVIDER_UNREACHABLE", str(exc))


async def _handle_reservation_error(request: Request, exc: ReservationError) -> JSONResponse:
    """Return 503 so the provider redelivers the webhook later."""
    logger.warning("Reservation failed: %s", exc)
    return _error_response(503, "RESERVATION_CONFLICT", str(exc))


async def _handle_integration_error(request: Request, exc: IntegrationError) -> JSONResponse:
    logger.warning("Integration error: %s", exc)
    return _error_response(500, "INTEGRATION_ERROR", str(exc))


async def _handle_key_error(
    request: Request,
    exc: KeyError,
) -> JSONResponse:
    """Return 404 when a provider (or its row) is not found."""
    message = str(exc.args[0]) if exc.args else "Not found"
    logger.info("Not found: %s", message)
    return _error_response(404, "NOT_FOUND", message)


async def _handle_value_error(
    request: Request,
    exc: ValueError,
) -> JSONResponse:
    """Return 400 for validation / value errors."""
    logger.info("Validation error: %s", exc)
    return _error_response(400, "VALIDATION_ERROR", str(exc))


class CatchAllErrorMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that catches any unhandled exception and returns a 500.

    This sits above the Starlette exception handler layer, ensuring that
    even exceptions not caught by ``add_exception_handler`` are converted
    to the standard error envelope rather than bubbling up as raw 500s.
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
            body = ErrorResponse(
                error=ErrorDetail(
                    code="INTERNAL_ERROR",
                    message="Internal server error",
                )
            )
            return JSONResponse(status_code=500, content=body.model_dump())


def register_error_handlers(app: FastAPI) -> None:
    """Attach all exception handlers to the FastAPI application.

    Handlers are looked up along the exception's MRO, so the specific
    integration errors win over the ``ValueError`` / ``IntegrationError``
    fallbacks.  The generic catch-all is an ASGI middleware wrapping the
    entire app.
    """
    app.add_exception_handler(NotConnectedError, _handle_not_connected)  # type: ignore[arg-type]
    app.add_exception_handler(AuthError, _handle_not_connected)  # type: ignore[arg-type]
    app.add_exception_handler(ScopeDeniedError, _handle_scope_denied)  # type: ignore[arg-type]
    app.add_exception_handler(ValidationError, _handle_value_error)  # type: ignore[arg-type]
    app.add_exception_handler(ProviderError, _handle_provider_error)  # type: ignore[arg-type]
    app.add_exception_handler(TransportError, _handle_transport_error)  # type: ignore[arg-type]
    app.add_exception_handler(ReservationError, _handle_reservation_error)  # type: ignore[arg-type]
    app.add_exception_handler(IntegrationError, _handle_integration_error)  # type: ignore[arg-type]
    app.add_exception_handler(KeyError, _handle_key_error)  # type: ignore[arg-type]
    app.add_exception_handler(ValueError, _handle_value_error)  # type: ignore[arg-type]
    app.add_middleware(CatchAllErrorMiddleware)

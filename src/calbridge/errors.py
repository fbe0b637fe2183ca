"""Error taxonomy shared by the calendar integration and channel adapters.

Hierarchy::

    IntegrationError (RuntimeError)
    ├── NotConnectedError   - no usable credential; user must (re)connect
    ├── AuthError           - refresh-token exchange rejected; user must reconnect
    ├── ValidationError     - bad interval or missing field (also a ValueError)
    ├── ScopeDeniedError    - connection lacks the read/write/delete grant for an operation
    ├── ProviderError       - non-2xx provider response after the retry budget
    ├── TransportError      - timeout, DNS, connection reset
    └── ReservationError    - webhook reservation could not be decided

Only the 401 refresh-and-retry path in the calendar client retries anything;
every other failure propagates to the caller unchanged.
"""

from __future__ import annotations

import re

_MAX_ERROR_CHARS = 200


class IntegrationError(RuntimeError):
    """Base error for the integration layer."""


class NotConnectedError(IntegrationError):
    """Raised when the provider connection is not ``connected`` or lacks an access token."""


class AuthError(IntegrationError):
    """Raised when the provider rejects a refresh-token exchange or none is available."""


class ValidationError(IntegrationError, ValueError):
    """Raised when a request violates a caller-facing constraint."""


class ScopeDeniedError(IntegrationError):
    """Raised when a connection has not been granted the scope an operation needs."""

    def __init__(self, provider: str, scope: str) -> None:
        self.provider = provider
        self.scope = scope
        super().__init__(
            f'{provider} does not have "{scope}" permission. '
            "Grant it under Settings → Integrations."
        )


class ProviderError(IntegrationError):
    """Raised when a provider API answers with a non-2xx status."""

    def __init__(
        self, *, status_code: int, message: str, provider: str = "google_calendar"
    ) -> None:
        self.status_code = status_code
        self.message = message
        self.provider = provider
        super().__init__(message)


class TransportError(IntegrationError):
    """Raised when a provider call fails before any HTTP response arrives."""


class ReservationError(IntegrationError):
    """Raised when an inbound message id could not be reserved or rejected."""


def redact_secrets(message: str) -> str:
    """Redact credential-looking values from *message*."""
    redacted = re.sub(
        r"(?i)\b(client_secret|refresh_token|access_token|token)\s*=\s*([^\s,;&]+)",
        r"\1=[REDACTED]",
        message,
    )
    redacted = re.sub(
        r"""(?i)(['"]?(?:client_secret|refresh_token|access_token|token)['"]?\s*:\s*)(['"]).*?\2""",
        r'\1"[REDACTED]"',
        redacted,
    )
    redacted = re.sub(
        r"(?i)\b(client_secret|refresh_token|access_token|token)\s*:\s*([^\s,;\"']+)",
        r"\1: [REDACTED]",
        redacted,
    )
    # Telegram bot tokens travel inside the request path.
    redacted = re.sub(r"/bot\d+:[A-Za-z0-9_-]+", "/bot[REDACTED]", redacted)
    return redacted


def sanitize_error_message(message: str) -> str:
    """Redact, collapse whitespace, and truncate an error message for display or logs."""
    return " ".join(redact_secrets(message).split())[:_MAX_ERROR_CHARS]


def build_error_payload(exc: Exception) -> dict[str, str]:
    """Build the structured ``{"error": ...}`` payload returned to the chat/tool layer."""
    if isinstance(exc, NotConnectedError | AuthError):
        message = f"{exc} Please reconnect the integration."
    else:
        message = str(exc)
    return {
        "status": "error",
        "error": sanitize_error_message(message),
        "error_type": type(exc).__name__,
    }

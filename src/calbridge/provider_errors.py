"""Normalization of heterogeneous provider error payloads.

Each provider family reports failures in its own JSON shape.  Rather than
probing optional fields at every call site, a small parser per family maps
the raw payload onto one of a fixed set of shapes, and every shape exposes a
single human-readable ``message``.

Google (OAuth token endpoint and Calendar v3)::

    {"error": "invalid_grant", "error_description": "Token has been expired or revoked."}
    {"error": {"code": 404, "message": "Not Found", "status": "NOT_FOUND"}}

Telegram Bot API::

    {"ok": false, "error_code": 401, "description": "Unauthorized"}

Meta Graph API (WhatsApp Cloud)::

    {"error": {"message": "Invalid OAuth access token.", "type": "OAuthException", "code": 190}}
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx


@dataclass(frozen=True)
class DescribedError:
    """Payload carrying an explicit ``error_description`` / ``description``."""

    description: str
    code: str | None = None

    @property
    def message(self) -> str:
        return self.description


@dataclass(frozen=True)
class MessageError:
    """Payload carrying a top-level ``message``."""

    text: str

    @property
    def message(self) -> str:
        return self.text


@dataclass(frozen=True)
class NestedError:
    """Payload whose ``error`` is an object with ``message`` (and optional code/status)."""

    text: str
    code: int | None = None
    status: str | None = None

    @property
    def message(self) -> str:
        return self.text


@dataclass(frozen=True)
class CodeError:
    """Payload whose ``error`` is a bare string code such as ``invalid_grant``."""

    code: str

    @property
    def message(self) -> str:
        return self.code


@dataclass(frozen=True)
class UnparsedError:
    """Anything else: fall back to the response body or reason phrase."""

    fallback: str

    @property
    def message(self) -> str:
        return self.fallback


ProviderErrorShape = DescribedError | MessageError | NestedError | CodeError | UnparsedError


def _text(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return " ".join(value.split())
    return None


def parse_google_error(payload: Any, fallback: str) -> ProviderErrorShape:
    """Parse a Google OAuth or Calendar API error body.

    Precedence: ``error_description`` > ``message`` > ``error`` (string or
    object with ``message``) > *fallback*.
    """
    if not isinstance(payload, dict):
        return UnparsedError(fallback)

    error = payload.get("error")
    description = _text(payload.get("error_description"))
    if description is not None:
        return DescribedError(description, code=_text(error))

    message = _text(payload.get("message"))
    if message is not None:
        return MessageError(message)

    if isinstance(error, dict):
        nested = _text(error.get("message"))
        if nested is not None:
            code = error.get("code")
            return NestedError(
                nested,
                code=code if isinstance(code, int) and not isinstance(code, bool) else None,
                status=_text(error.get("status")),
            )
    code_text = _text(error)
    if code_text is not None:
        return CodeError(code_text)
    return UnparsedError(fallback)


def parse_telegram_error(payload: Any, fallback: str) -> ProviderErrorShape:
    """Parse a Telegram Bot API error body (``ok: false`` envelope)."""
    if isinstance(payload, dict):
        description = _text(payload.get("description"))
        if description is not None:
            code = payload.get("error_code")
            return DescribedError(description, code=str(code) if code is not None else None)
    return UnparsedError(fallback)


def parse_graph_error(payload: Any, fallback: str) -> ProviderErrorShape:
    """Parse a Meta Graph API error body."""
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict):
            nested = _text(error.get("error_user_msg")) or _text(error.get("message"))
            if nested is not None:
                code = error.get("code")
                return NestedError(
                    nested,
                    code=code if isinstance(code, int) and not isinstance(code, bool) else None,
                    status=_text(error.get("type")),
                )
    return UnparsedError(fallback)


def response_fallback(response: httpx.Response) -> str:
    """Return the raw body (whitespace-collapsed) or the HTTP reason phrase."""
    raw_text = response.text.strip()
    if raw_text and not raw_text.startswith(("{", "[")):
        return " ".join(raw_text.split())[:200]
    return response.reason_phrase or f"HTTP {response.status_code}"


def response_json(response: httpx.Response) -> Any:
    """Decode a response body, returning ``None`` when it is not JSON."""
    try:
        return response.json()
    except ValueError:
        return None

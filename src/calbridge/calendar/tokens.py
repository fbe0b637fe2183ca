"""Access/refresh-token lifecycle for the Google Calendar connection."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx

from calbridge.config import GoogleOAuthConfig
from calbridge.connections.models import GOOGLE_CALENDAR, ConnectionStatus
from calbridge.connections.store import ConnectionStore
from calbridge.core.metrics import record_token_refresh
from calbridge.errors import AuthError, NotConnectedError, TransportError, sanitize_error_message
from calbridge.provider_errors import parse_google_error, response_fallback, response_json

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_SKEW_SECONDS = 60


def utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class TokenGrant:
    """Parsed token-endpoint response."""

    access_token: str
    refresh_token: str | None
    expires_at: datetime | None
    scope: str | None = None


@dataclass(frozen=True)
class AuthContext:
    """Everything an authenticated calendar call needs."""

    access_token: str
    refresh_token: str | None
    expires_at: datetime | None
    calendar_id: str
    client_id: str
    client_secret: str

    def __repr__(self) -> str:
        return (
            f"AuthContext(calendar_id={self.calendar_id!r}, expires_at={self.expires_at!r}, "
            "access_token=<redacted>, refresh_token=<redacted>)"
        )


def _coerce_expires_at(value: Any, now: datetime) -> datetime | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float) and value > 0:
        return now + timedelta(seconds=int(value))
    if isinstance(value, str) and value.strip().isdigit():
        return now + timedelta(seconds=int(value.strip()))
    return None


class GoogleOAuthClient:
    """Talks to the OAuth token endpoint (refresh and authorization-code grants)."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        config: GoogleOAuthConfig,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._http_client = http_client
        self._config = config
        self._clock = clock

    async def refresh(
        self, *, client_id: str, client_secret: str, refresh_token: str
    ) -> TokenGrant:
        return await self._token_request(
            {
                "client_id": client_id,
                "client_secret": client_secret,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            },
            action="refresh",
        )

    async def exchange_code(
        self,
        *,
        client_id: str,
        client_secret: str,
        code: str,
        redirect_uri: str,
    ) -> TokenGrant:
        return await self._token_request(
            {
                "client_id": client_id,
                "client_secret": client_secret,
                "code": code,
                "redirect_uri": redirect_uri,
                "grant_type": "authorization_code",
            },
            action="authorization code exchange",
        )

    async def _token_request(self, data: dict[str, str], *, action: str) -> TokenGrant:
        try:
            response = await self._http_client.post(
                self._config.token_url,
                data=data,
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise TransportError(
                sanitize_error_message(f"Google OAuth token {action} request failed: {exc}")
            ) from exc

        payload = response_json(response)
        if response.status_code < 200 or response.status_code >= 300:
            error = parse_google_error(payload, response_fallback(response))
            raise AuthError(
                sanitize_error_message(
                    f"Google token {action} failed ({response.status_code}): {error.message}"
                )
            )

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(access_token, str) or not access_token.strip():
            raise AuthError(f"Google token {action} response is missing an access_token.")

        refresh_token = payload.get("refresh_token")
        if not isinstance(refresh_token, str) or not refresh_token:
            refresh_token = None
        scope = payload.get("scope")
        return TokenGrant(
            access_token=access_token.strip(),
            refresh_token=refresh_token,
            expires_at=_coerce_expires_at(payload.get("expires_in"), self._clock()),
            scope=scope if isinstance(scope, str) else None,
        )


class TokenManager:
    """Owns access-token validity for the calendar connection row.

    A context whose ``expires_at`` falls within ``refresh_skew_s`` of now is
    refreshed before use when a refresh token exists.  Without a refresh
    token, a context that is already expired fails with :class:`AuthError`;
    one that is merely close to expiry is used as-is.  When ``expires_at`` is
    unset the token is assumed valid until a 401 says otherwise.

    Concurrent refreshes are not serialized: each produces a valid token and
    the last write wins.
    """

    def __init__(
        self,
        store: ConnectionStore,
        oauth: GoogleOAuthClient,
        oauth_config: GoogleOAuthConfig,
        *,
        provider: str = GOOGLE_CALENDAR,
        refresh_skew_s: int = DEFAULT_REFRESH_SKEW_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._oauth = oauth
        self._oauth_config = oauth_config
        self._provider = provider
        self._refresh_skew = timedelta(seconds=refresh_skew_s)
        self._clock = clock

    @property
    def provider(self) -> str:
        return self._provider

    async def get_valid_context(self) -> AuthContext:
        """Return a usable context, refreshing it first when it is about to expire."""
        row = await self._store.get(self._provider)
        if row is None or row.status != ConnectionStatus.connected or not row.access_token:
            raise NotConnectedError("Google Calendar integration is not connected.")

        client_id = row.config.get("clientId") or self._oauth_config.client_id
        client_secret = row.config.get("clientSecret") or self._oauth_config.client_secret
        if not client_id or not client_secret:
            raise NotConnectedError("Missing Google OAuth client config.")

        context = AuthContext(
            access_token=row.access_token,
            refresh_token=row.refresh_token,
            expires_at=row.token_expires_at,
            calendar_id=row.config.get("calendarId") or "primary",
            client_id=client_id,
            client_secret=client_secret,
        )

        if context.expires_at is None:
            return context
        now = self._clock()
        if context.expires_at > now + self._refresh_skew:
            return context
        if context.refresh_token:
            logger.debug("Access token expires at %s; refreshing proactively", context.expires_at)
            return await self.refresh(context)
        if context.expires_at <= now:
            raise AuthError("Google access token has expired and no refresh token is available.")
        return context

    async def refresh(self, context: AuthContext) -> AuthContext:
        """Exchange the refresh token, persist the new grant, and return the new context.

        On failure the connection row is left untouched.
        """
        if not context.refresh_token:
            record_token_refresh("rejected")
            raise AuthError("No Google refresh token is available.")

        try:
            grant = await self._oauth.refresh(
                client_id=context.client_id,
                client_secret=context.client_secret,
                refresh_token=context.refresh_token,
            )
        except AuthError:
            record_token_refresh("rejected")
            logger.warning("Google token refresh was rejected")
            raise
        except TransportError:
            record_token_refresh("error")
            raise

        refresh_token = grant.refresh_token or context.refresh_token
        await self._store.update(
            self._provider,
            {
                "access_token": grant.access_token,
                "refresh_token": refresh_token,
                "token_expires_at": grant.expires_at,
                "status": ConnectionStatus.connected,
                "last_error": None,
                "last_checked_at": self._clock(),
            },
        )
        record_token_refresh("success")
        logger.info("Refreshed Google access token (expires_at=%s)", grant.expires_at)
        return replace(
            context,
            access_token=grant.access_token,
            refresh_token=refresh_token,
            expires_at=grant.expires_at,
        )

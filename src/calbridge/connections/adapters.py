"""Per-provider connect and health-check logic.

Adapters talk to the provider and report what should be persisted; the
:class:`~calbridge.connections.service.IntegrationService` owns every write
and every status transition.
"""

from __future__ import annotations

import base64
import json
import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol
from urllib.parse import urlencode

import httpx

from calbridge.calendar.models import CalendarInfo, normalize_calendar
from calbridge.calendar.tokens import GoogleOAuthClient, TokenGrant
from calbridge.channels.telegram import TelegramBotApi
from calbridge.channels.whatsapp import WhatsAppGraphApi
from calbridge.config import GoogleOAuthConfig, TelegramConfig
from calbridge.connections.models import GOOGLE_CALENDAR, ConnectionStatus, IntegrationConnection
from calbridge.errors import (
    NotConnectedError,
    ProviderError,
    TransportError,
    ValidationError,
    sanitize_error_message,
)
from calbridge.provider_errors import parse_google_error, response_fallback, response_json

logger = logging.getLogger(__name__)


@dataclass
class ConnectResult:
    status: ConnectionStatus
    config: dict[str, Any] = field(default_factory=dict)
    access_token: str | None = None
    refresh_token: str | None = None
    token_expires_at: datetime | None = None
    external_account_id: str | None = None
    external_account_label: str | None = None
    authorize_url: str | None = None


@dataclass
class HealthResult:
    external_account_id: str | None = None
    external_account_label: str | None = None
    grant: TokenGrant | None = None


class ProviderAdapter(Protocol):
    async def connect(
        self, connection: IntegrationConnection, params: dict[str, Any]
    ) -> ConnectResult: ...

    async def health_check(self, connection: IntegrationConnection) -> HealthResult: ...


def _param(params: dict[str, Any], *names: str) -> str | None:
    for name in names:
        value = params.get(name)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def encode_oauth_state(payload: dict[str, Any]) -> str:
    raw = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


# ---------------------------------------------------------------------------
# Google Calendar
# ---------------------------------------------------------------------------


class GoogleCalendarAdapter:
    """OAuth authorization-code connect flow plus a calendar-list health check."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        oauth: GoogleOAuthClient,
        config: GoogleOAuthConfig,
    ) -> None:
        self._http_client = http_client
        self._oauth = oauth
        self._config = config

    def _client_config(
        self, connection: IntegrationConnection, params: dict[str, Any]
    ) -> tuple[str, str, str]:
        client_id = (
            _param(params, "clientId", "client_id")
            or connection.config.get("clientId")
            or self._config.client_id
        )
        client_secret = (
            _param(params, "clientSecret", "client_secret")
            or connection.config.get("clientSecret")
            or self._config.client_secret
        )
        redirect_uri = (
            _param(params, "redirectUri", "redirect_uri")
            or connection.config.get("redirectUri")
            or self._config.redirect_uri
        )
        if not client_id or not client_secret:
            raise ValidationError("Google OAuth client id and client secret are required.")
        if not redirect_uri:
            raise ValidationError("A Google OAuth redirect URI is required.")
        return client_id, client_secret, redirect_uri

    def authorize_url(self, client_id: str, redirect_uri: str, state: str) -> str:
        query = urlencode(
            {
                "client_id": client_id,
                "redirect_uri": redirect_uri,
                "response_type": "code",
                "access_type": "offline",
                "prompt": "consent",
                "include_granted_scopes": "true",
                "scope": self._config.scope,
                "state": state,
            }
        )
        return f"{self._config.authorize_url}?{query}"

    async def connect(
        self, connection: IntegrationConnection, params: dict[str, Any]
    ) -> ConnectResult:
        client_id, client_secret, redirect_uri = self._client_config(connection, params)
        base_config = {
            "clientId": client_id,
            "clientSecret": client_secret,
            "redirectUri": redirect_uri,
        }

        code = _param(params, "code")
        if code is None:
            state = encode_oauth_state(
                {"provider": GOOGLE_CALENDAR, "nonce": secrets.token_urlsafe(16)}
            )
            requested = _param(params, "calendarId", "calendar_id")
            config = {**base_config, "oauthState": state}
            if requested:
                config["requestedCalendarId"] = requested
            return ConnectResult(
                status=ConnectionStatus.pending,
                config=config,
                authorize_url=self.authorize_url(client_id, redirect_uri, state),
            )

        expected_state = connection.config.get("oauthState")
        if expected_state and _param(params, "state") != expected_state:
            raise ValidationError("OAuth state mismatch; restart the Google connection.")

        grant = await self._oauth.exchange_code(
            client_id=client_id,
            client_secret=client_secret,
            code=code,
            redirect_uri=redirect_uri,
        )
        calendars = await self._list_calendars(grant.access_token)
        if not calendars:
            raise ValidationError("No readable calendars found for this Google account.")

        requested = _param(params, "calendarId", "calendar_id") or connection.config.get(
            "requestedCalendarId"
        )
        primary = next((c for c in calendars if c.primary), None)
        chosen = (
            next((c for c in calendars if c.id == requested), None) if requested else None
        ) or primary or calendars[0]

        account = primary or chosen
        return ConnectResult(
            status=ConnectionStatus.connected,
            config={**base_config, "calendarId": chosen.id, "calendarName": chosen.summary},
            access_token=grant.access_token,
            refresh_token=grant.refresh_token or connection.refresh_token,
            token_expires_at=grant.expires_at,
            external_account_id=account.id,
            external_account_label=account.summary,
        )

    async def health_check(self, connection: IntegrationConnection) -> HealthResult:
        if not connection.access_token:
            raise NotConnectedError("Google Calendar integration is not connected.")
        grant: TokenGrant | None = None
        try:
            calendars = await self._list_calendars(connection.access_token)
        except ProviderError as exc:
            if exc.status_code != 401 or not connection.refresh_token:
                raise
            client_id = connection.config.get("clientId") or self._config.client_id
            client_secret = connection.config.get("clientSecret") or self._config.client_secret
            if not client_id or not client_secret:
                raise NotConnectedError("Missing Google OAuth client config.") from exc
            grant = await self._oauth.refresh(
                client_id=client_id,
                client_secret=client_secret,
                refresh_token=connection.refresh_token,
            )
            calendars = await self._list_calendars(grant.access_token)

        primary = next((c for c in calendars if c.primary), None)
        if primary is None:
            return HealthResult(
                external_account_id=connection.external_account_id,
                external_account_label=connection.external_account_label,
                grant=grant,
            )
        return HealthResult(
            external_account_id=primary.id,
            external_account_label=primary.summary,
            grant=grant,
        )

    async def _list_calendars(self, access_token: str) -> list[CalendarInfo]:
        url = f"{self._config.api_base_url.rstrip('/')}/users/me/calendarList"
        try:
            response = await self._http_client.get(
                url,
                params={"maxResults": 250},
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.HTTPError as exc:
            raise TransportError(
                sanitize_error_message(f"Google Calendar request failed: {exc}")
            ) from exc
        payload = response_json(response)
        if response.status_code < 200 or response.status_code >= 300:
            error = parse_google_error(payload, response_fallback(response))
            raise ProviderError(
                status_code=response.status_code, message=sanitize_error_message(error.message)
            )
        items = payload.get("items") if isinstance(payload, dict) else None
        return [c for c in (normalize_calendar(raw) for raw in items or []) if c is not None]


# ---------------------------------------------------------------------------
# Telegram
# ---------------------------------------------------------------------------


class TelegramAdapter:
    def __init__(self, bot_api: TelegramBotApi, config: TelegramConfig | None = None) -> None:
        self._bot_api = bot_api
        self._config = config or TelegramConfig()

    async def connect(
        self, connection: IntegrationConnection, params: dict[str, Any]
    ) -> ConnectResult:
        token = _param(params, "botToken", "bot_token", "token") or connection.access_token
        if not token:
            raise ValidationError("A Telegram bot token is required.")
        me = await self._bot_api.get_me(token)

        config: dict[str, Any] = {
            k: v for k, v in connection.config.items() if k in ("chats", "lastProcessedUpdateId")
        }
        username = me.get("username")
        if username:
            config["botUsername"] = username
        webhook_url = _param(params, "webhookUrl", "webhook_url") or self._config.webhook_url
        if webhook_url:
            secret = _param(params, "webhookSecret") or secrets.token_urlsafe(24)
            await self._bot_api.set_webhook(token, webhook_url, secret_token=secret)
            config["webhookUrl"] = webhook_url
            config["webhookSecret"] = secret
            logger.info("Registered Telegram webhook at %s", webhook_url)

        return ConnectResult(
            status=ConnectionStatus.connected,
            config=config,
            access_token=token,
            external_account_id=str(me["id"]) if me.get("id") is not None else None,
            external_account_label=f"@{username}" if username else me.get("first_name"),
        )

    async def health_check(self, connection: IntegrationConnection) -> HealthResult:
        if not connection.access_token:
            raise NotConnectedError("Telegram integration is not connected.")
        me = await self._bot_api.get_me(connection.access_token)
        username = me.get("username")
        return HealthResult(
            external_account_id=str(me["id"]) if me.get("id") is not None else None,
            external_account_label=f"@{username}" if username else me.get("first_name"),
        )


# ---------------------------------------------------------------------------
# WhatsApp
# ---------------------------------------------------------------------------


class WhatsAppAdapter:
    def __init__(self, graph_api: WhatsAppGraphApi) -> None:
        self._graph_api = graph_api

    async def connect(
        self, connection: IntegrationConnection, params: dict[str, Any]
    ) -> ConnectResult:
        token = _param(params, "accessToken", "access_token") or connection.access_token
        phone_number_id = _param(params, "phoneNumberId", "phone_number_id")
        phone_number_id = phone_number_id or connection.config.get("phoneNumberId")
        if not token or not phone_number_id:
            raise ValidationError("A WhatsApp access token and phone number id are required.")
        info = await self._graph_api.get_phone_number(token, phone_number_id)

        config: dict[str, Any] = {
            k: v
            for k, v in connection.config.items()
            if k in ("chats", "processedMessageIds", "verifyToken")
        }
        config["phoneNumberId"] = phone_number_id
        verify_token = _param(params, "verifyToken", "verify_token")
        if verify_token:
            config["verifyToken"] = verify_token
        if info.get("display_phone_number"):
            config["displayPhoneNumber"] = info["display_phone_number"]

        return ConnectResult(
            status=ConnectionStatus.connected,
            config=config,
            access_token=token,
            external_account_id=phone_number_id,
            external_account_label=info.get("verified_name") or info.get("display_phone_number"),
        )

    async def health_check(self, connection: IntegrationConnection) -> HealthResult:
        phone_number_id = connection.config.get("phoneNumberId")
        if not connection.access_token or not phone_number_id:
            raise NotConnectedError("WhatsApp integration is not connected.")
        info = await self._graph_api.get_phone_number(connection.access_token, phone_number_id)
        return HealthResult(
            external_account_id=str(phone_number_id),
            external_account_label=info.get("verified_name") or info.get("display_phone_number"),
        )

"""Tests for the per-provider connect and health-check adapters."""

from __future__ import annotations

import json
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest
from conftest import mock_http, telegram_connection, whatsapp_connection

from calbridge.calendar.tokens import GoogleOAuthClient
from calbridge.channels.telegram import TelegramBotApi
from calbridge.channels.whatsapp import WhatsAppGraphApi
from calbridge.config import GoogleOAuthConfig, TelegramConfig
from calbridge.connections.adapters import (
    GoogleCalendarAdapter,
    TelegramAdapter,
    WhatsAppAdapter,
)
from calbridge.connections.models import (
    GOOGLE_CALENDAR,
    TELEGRAM,
    ConnectionStatus,
    IntegrationConnection,
)
from calbridge.errors import NotConnectedError, ProviderError, ValidationError

pytestmark = pytest.mark.unit

CONFIG = GoogleOAuthConfig(
    client_id="cid", client_secret="csecret", redirect_uri="https://app.example/cb"
)
CALENDARS = [
    {"id": "me@example.com", "summary": "Me", "primary": True},
    {"id": "team@group.calendar.google.com", "summary": "Team"},
]


class FakeGoogle:
    def __init__(self, *, calendars=CALENDARS, reject_token: str | None = None) -> None:
        self.calendars = calendars
        self.reject_token = reject_token
        self.token_requests: list[dict] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if str(request.url) == CONFIG.token_url:
            form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
            self.token_requests.append(form)
            body = {"access_token": "fresh-token", "expires_in": 3600}
            if form["grant_type"] == "authorization_code":
                body["refresh_token"] = "refresh-new"
            return httpx.Response(200, json=body)
        if request.url.path.endswith("/users/me/calendarList"):
            if request.headers["authorization"] == f"Bearer {self.reject_token}":
                return httpx.Response(401, json={"error": {"code": 401, "message": "Expired"}})
            return httpx.Response(200, json={"items": self.calendars})
        return httpx.Response(404)


def _google(fake: FakeGoogle) -> GoogleCalendarAdapter:
    http = mock_http(fake)
    return GoogleCalendarAdapter(http, GoogleOAuthClient(http, CONFIG), CONFIG)


def _row(**values) -> IntegrationConnection:
    return IntegrationConnection(provider=GOOGLE_CALENDAR, **values)


class TestGoogleCalendarAdapter:
    async def test_first_step_returns_authorize_url(self):
        result = await _google(FakeGoogle()).connect(_row(), {"calendarId": "team"})

        assert result.status == ConnectionStatus.pending
        url = urlsplit(result.authorize_url)
        query = {k: v[0] for k, v in parse_qs(url.query).items()}
        assert query["client_id"] == "cid"
        assert query["access_type"] == "offline"
        assert query["state"] == result.config["oauthState"]
        assert result.config["requestedCalendarId"] == "team"
        assert result.config["clientSecret"] == "csecret"

    async def test_missing_client_config_is_rejected(self):
        http = mock_http(FakeGoogle())
        empty = GoogleOAuthConfig()
        adapter = GoogleCalendarAdapter(http, GoogleOAuthClient(http, empty), empty)

        with pytest.raises(ValidationError, match="client id and client secret"):
            await adapter.connect(_row(), {})

    async def test_callback_exchanges_code_and_picks_primary(self):
        fake = FakeGoogle()
        row = _row(status=ConnectionStatus.pending, config={"oauthState": "st"})

        result = await _google(fake).connect(row, {"code": "c-1", "state": "st"})

        assert fake.token_requests[0]["code"] == "c-1"
        assert result.status == ConnectionStatus.connected
        assert result.access_token == "fresh-token"
        assert result.refresh_token == "refresh-new"
        assert result.config["calendarId"] == "me@example.com"
        assert "oauthState" not in result.config
        assert result.external_account_label == "Me"

    async def test_callback_honours_requested_calendar(self):
        row = _row(
            config={"oauthState": "st", "requestedCalendarId": "team@group.calendar.google.com"}
        )

        result = await _google(FakeGoogle()).connect(row, {"code": "c-1", "state": "st"})

        assert result.config["calendarId"] == "team@group.calendar.google.com"
        assert result.config["calendarName"] == "Team"

    async def test_state_mismatch_is_rejected(self):
        fake = FakeGoogle()
        row = _row(config={"oauthState": "st"})

        with pytest.raises(ValidationError, match="state mismatch"):
            await _google(fake).connect(row, {"code": "c-1", "state": "forged"})
        assert fake.token_requests == []

    async def test_account_without_calendars_is_rejected(self):
        with pytest.raises(ValidationError, match="No readable calendars"):
            await _google(FakeGoogle(calendars=[])).connect(_row(), {"code": "c-1"})

    async def test_health_check_refreshes_on_401(self):
        fake = FakeGoogle(reject_token="stale")
        row = _row(
            status=ConnectionStatus.connected,
            access_token="stale",
            refresh_token="refresh-1",
            config={"clientId": "cid", "clientSecret": "csecret"},
        )

        health = await _google(fake).health_check(row)

        assert health.grant is not None and health.grant.access_token == "fresh-token"
        assert health.external_account_id == "me@example.com"
        assert fake.token_requests[0]["grant_type"] == "refresh_token"

    async def test_health_check_401_without_refresh_token(self):
        row = _row(status=ConnectionStatus.connected, access_token="stale")

        with pytest.raises(ProviderError) as exc_info:
            await _google(FakeGoogle(reject_token="stale")).health_check(row)
        assert exc_info.value.status_code == 401

    async def test_health_check_requires_token(self):
        with pytest.raises(NotConnectedError):
            await _google(FakeGoogle()).health_check(_row(status=ConnectionStatus.connected))


class FakeBotApi:
    def __init__(self) -> None:
        self.calls: list[tuple[str, dict]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        method = request.url.path.rsplit("/", 1)[-1]
        self.calls.append((method, json.loads(request.content or b"{}")))
        if method == "getMe":
            return httpx.Response(
                200, json={"ok": True, "result": {"id": 123, "username": "cal_bot"}}
            )
        return httpx.Response(200, json={"ok": True, "result": True})


class TestTelegramAdapter:
    async def test_connect_without_webhook_url(self):
        fake = FakeBotApi()
        adapter = TelegramAdapter(TelegramBotApi(mock_http(fake)))
        row = IntegrationConnection(provider=TELEGRAM)

        result = await adapter.connect(row, {"botToken": " 123:abc "})

        assert result.access_token == "123:abc"
        assert result.external_account_label == "@cal_bot"
        assert result.config == {"botUsername": "cal_bot"}
        assert [name for name, _ in fake.calls] == ["getMe"]

    async def test_connect_registers_webhook_with_secret(self):
        fake = FakeBotApi()
        adapter = TelegramAdapter(
            TelegramBotApi(mock_http(fake)),
            TelegramConfig(webhook_url="https://app.example/api/webhooks/telegram"),
        )
        row = telegram_connection(config={"lastProcessedUpdateId": 99, "stale": True})

        result = await adapter.connect(row, {})

        name, payload = fake.calls[1]
        assert name == "setWebhook"
        assert payload["url"] == "https://app.example/api/webhooks/telegram"
        assert payload["secret_token"] == result.config["webhookSecret"]
        assert result.config["lastProcessedUpdateId"] == 99
        assert "stale" not in result.config

    async def test_connect_requires_token(self):
        adapter = TelegramAdapter(TelegramBotApi(mock_http(FakeBotApi())))

        with pytest.raises(ValidationError):
            await adapter.connect(IntegrationConnection(provider=TELEGRAM), {})


class TestWhatsAppAdapter:
    @staticmethod
    def _graph() -> WhatsAppGraphApi:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200, json={"display_phone_number": "+1 555 0100", "verified_name": "Cal"}
            )

        return WhatsAppGraphApi(mock_http(handler))

    async def test_connect_keeps_dedup_state(self):
        row = whatsapp_connection(
            config={"phoneNumberId": "1055", "processedMessageIds": {"wamid.1": "x"}}
        )

        result = await WhatsAppAdapter(self._graph()).connect(
            row, {"accessToken": "new-token", "verifyToken": "v2"}
        )

        assert result.access_token == "new-token"
        assert result.config["processedMessageIds"] == {"wamid.1": "x"}
        assert result.config["verifyToken"] == "v2"
        assert result.config["displayPhoneNumber"] == "+1 555 0100"
        assert result.external_account_label == "Cal"

    async def test_connect_requires_phone_number_id(self):
        row = whatsapp_connection(config={})

        with pytest.raises(ValidationError):
            await WhatsAppAdapter(self._graph()).connect(row, {"accessToken": "t"})

    async def test_health_check(self):
        health = await WhatsAppAdapter(self._graph()).health_check(whatsapp_connection())

        assert health.external_account_id == "1055"

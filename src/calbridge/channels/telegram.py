"""Telegram Bot API webhook adapter."""

from __future__ import annotations

import hmac
import logging
from typing import Any

import httpx

from calbridge.channels.base import ChatCore, IgnoreReason, WebhookOutcome, converse
from calbridge.config import IngestionConfig, TelegramConfig
from calbridge.connections.models import TELEGRAM
from calbridge.connections.store import ConnectionStore
from calbridge.core.logging import provider_context
from calbridge.errors import IntegrationError, ProviderError, TransportError, sanitize_error_message
from calbridge.ingestion import MonotonicIdStrategy, reserve_if_new
from calbridge.provider_errors import parse_telegram_error, response_fallback, response_json

logger = logging.getLogger(__name__)

_MESSAGE_KEYS = ("message", "edited_message")


class TelegramBotApi:
    """Minimal Bot API client; the token travels in the path, never in logs."""

    def __init__(
        self, http_client: httpx.AsyncClient, config: TelegramConfig | None = None
    ) -> None:
        self._http_client = http_client
        self._base_url = (config or TelegramConfig()).api_base_url.rstrip("/")

    async def call(self, token: str, method: str, payload: dict[str, Any] | None = None) -> Any:
        url = f"{self._base_url}/bot{token}/{method}"
        try:
            response = await self._http_client.post(url, json=payload or {})
        except httpx.HTTPError as exc:
            raise TransportError(
                sanitize_error_message(f"Telegram {method} request failed: {exc}")
            ) from exc

        body = response_json(response)
        if response.status_code >= 400 or not (isinstance(body, dict) and body.get("ok")):
            error = parse_telegram_error(body, response_fallback(response))
            raise ProviderError(
                status_code=response.status_code,
                message=sanitize_error_message(f"Telegram {method} failed: {error.message}"),
                provider=TELEGRAM,
            )
        return body.get("result")

    async def get_me(self, token: str) -> dict[str, Any]:
        result = await self.call(token, "getMe")
        return result if isinstance(result, dict) else {}

    async def set_webhook(self, token: str, url: str, secret_token: str | None = None) -> None:
        payload: dict[str, Any] = {"url": url, "allowed_updates": ["message", "edited_message"]}
        if secret_token:
            payload["secret_token"] = secret_token
        await self.call(token, "setWebhook", payload)

    async def send_message(self, token: str, chat_id: str, text: str) -> dict[str, Any]:
        result = await self.call(token, "sendMessage", {"chat_id": chat_id, "text": text})
        return result if isinstance(result, dict) else {}


def _extract_message(update: dict[str, Any]) -> dict[str, Any] | None:
    for key in _MESSAGE_KEYS:
        msg = update.get(key)
        if isinstance(msg, dict):
            return msg
    return None


def _extract_update_id(update: dict[str, Any]) -> int | None:
    value = update.get("update_id")
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


class TelegramWebhookHandler:
    """Turns one webhook update into at most one chat turn and reply."""

    def __init__(
        self,
        store: ConnectionStore,
        bot_api: TelegramBotApi,
        chat_core: ChatCore,
        ingestion: IngestionConfig | None = None,
    ) -> None:
        self._store = store
        self._bot_api = bot_api
        self._chat_core = chat_core
        self._ingestion = ingestion or IngestionConfig()
        self._strategy = MonotonicIdStrategy()

    async def handle(self, update: Any, secret_token: str | None = None) -> WebhookOutcome:
        """Process one update.

        *secret_token* is the ``X-Telegram-Bot-Api-Secret-Token`` header; when the
        connection registered a webhook secret, updates without it are ignored.
        """
        with provider_context(TELEGRAM):
            return await self._handle(update, secret_token)

    async def _handle(self, update: Any, secret_token: str | None) -> WebhookOutcome:
        if not isinstance(update, dict):
            return WebhookOutcome.ignore(IgnoreReason.invalid_json)

        update_id = _extract_update_id(update)
        if update_id is None:
            return WebhookOutcome.ignore(IgnoreReason.invalid_update)

        message = _extract_message(update)
        text = message.get("text") if message else None
        chat = message.get("chat") if message else None
        chat_id = chat.get("id") if isinstance(chat, dict) else None
        if not isinstance(text, str) or not text.strip() or chat_id is None:
            return WebhookOutcome.ignore(IgnoreReason.no_text_message, update_id)
        sender = message.get("from") if message else None
        if isinstance(sender, dict) and sender.get("is_bot"):
            return WebhookOutcome.ignore(IgnoreReason.bot_sender, update_id)

        connection = await self._store.get(TELEGRAM)
        if connection is None or not connection.is_usable:
            logger.info("Ignoring Telegram update %s: integration not connected", update_id)
            return WebhookOutcome.ignore(IgnoreReason.not_connected, update_id)

        expected_secret = connection.config.get("webhookSecret")
        if expected_secret and not hmac.compare_digest(str(expected_secret), secret_token or ""):
            logger.warning("Ignoring Telegram update %s: webhook secret mismatch", update_id)
            return WebhookOutcome.ignore(IgnoreReason.invalid_secret, update_id)

        reservation = await reserve_if_new(
            self._store,
            TELEGRAM,
            update_id,
            self._strategy,
            connection=connection,
            max_attempts=self._ingestion.reservation_max_attempts,
        )
        if reservation.duplicate:
            return WebhookOutcome.ignore(IgnoreReason.duplicate, update_id)

        chat_key = str(chat_id)
        reply_text = await converse(
            self._chat_core, self._store, reservation.connection, chat_key, text.strip()
        )

        token = reservation.connection.access_token
        assert token is not None
        replied = False
        try:
            await self._bot_api.send_message(token, chat_key, reply_text)
            replied = True
        except IntegrationError as exc:
            logger.warning("Failed to send Telegram reply for update %s: %s", update_id, exc)

        return WebhookOutcome(update_id=update_id, replied=replied, processed=1)

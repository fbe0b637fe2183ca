"""WhatsApp Cloud API webhook adapter."""

from __future__ import annotations

import hmac
import logging
from dataclasses import dataclass
from typing import Any

import httpx

from calbridge.channels.base import ChatCore, IgnoreReason, WebhookOutcome, converse
from calbridge.config import IngestionConfig, WhatsAppConfig
from calbridge.connections.models import WHATSAPP
from calbridge.connections.store import ConnectionStore
from calbridge.core.logging import provider_context
from calbridge.errors import IntegrationError, ProviderError, TransportError, sanitize_error_message
from calbridge.ingestion import BoundedIdSetStrategy, reserve_if_new
from calbridge.provider_errors import parse_graph_error, response_fallback, response_json

logger = logging.getLogger(__name__)


class WhatsAppGraphApi:
    """Meta Graph API calls used by the adapter and the connect flow."""

    def __init__(
        self, http_client: httpx.AsyncClient, config: WhatsAppConfig | None = None
    ) -> None:
        self._http_client = http_client
        cfg = config or WhatsAppConfig()
        self._base_url = f"{cfg.graph_base_url.rstrip('/')}/{cfg.graph_api_version}"

    async def _request(
        self,
        method: str,
        path: str,
        token: str,
        *,
        json_body: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        try:
            response = await self._http_client.request(
                method,
                f"{self._base_url}/{path.lstrip('/')}",
                headers={"Authorization": f"Bearer {token}"},
                json=json_body,
                params=params,
            )
        except httpx.HTTPError as exc:
            raise TransportError(
                sanitize_error_message(f"WhatsApp Graph API request failed: {exc}")
            ) from exc

        payload = response_json(response)
        if response.status_code < 200 or response.status_code >= 300:
            error = parse_graph_error(payload, response_fallback(response))
            raise ProviderError(
                status_code=response.status_code,
                message=sanitize_error_message(f"WhatsApp Graph API error: {error.message}"),
                provider=WHATSAPP,
            )
        return payload if isinstance(payload, dict) else {}

    async def get_phone_number(self, token: str, phone_number_id: str) -> dict[str, Any]:
        return await self._request(
            "GET",
            phone_number_id,
            token,
            params={"fields": "display_phone_number,verified_name"},
        )

    async def send_text(self, token: str, phone_number_id: str, to: str, text: str) -> None:
        await self._request(
            "POST",
            f"{phone_number_id}/messages",
            token,
            json_body={
                "messaging_product": "whatsapp",
                "recipient_type": "individual",
                "to": to,
                "type": "text",
                "text": {"preview_url": False, "body": text},
            },
        )


@dataclass(frozen=True)
class InboundMessage:
    message_id: str
    sender: str
    text: str
    phone_number_id: str | None


def extract_messages(payload: dict[str, Any]) -> tuple[list[InboundMessage], int]:
    """Return the text messages in a webhook payload and the number of status events."""
    messages: list[InboundMessage] = []
    statuses = 0
    for entry in payload.get("entry") or []:
        if not isinstance(entry, dict):
            continue
        for change in entry.get("changes") or []:
            value = change.get("value") if isinstance(change, dict) else None
            if not isinstance(value, dict):
                continue
            metadata = value.get("metadata") if isinstance(value.get("metadata"), dict) else {}
            phone_number_id = metadata.get("phone_number_id")
            statuses += len(value.get("statuses") or [])
            for raw in value.get("messages") or []:
                if not isinstance(raw, dict) or raw.get("type") != "text":
                    continue
                message_id = raw.get("id")
                sender = raw.get("from")
                text_part = raw.get("text")
                body = text_part.get("body") if isinstance(text_part, dict) else None
                if not message_id or not sender or not isinstance(body, str) or not body.strip():
                    continue
                messages.append(
                    InboundMessage(
                        message_id=str(message_id),
                        sender=str(sender),
                        text=body.strip(),
                        phone_number_id=str(phone_number_id) if phone_number_id else None,
                    )
                )
    return messages, statuses


class WhatsAppWebhookHandler:
    def __init__(
        self,
        store: ConnectionStore,
        graph_api: WhatsAppGraphApi,
        chat_core: ChatCore,
        config: WhatsAppConfig | None = None,
        ingestion: IngestionConfig | None = None,
    ) -> None:
        self._store = store
        self._graph_api = graph_api
        self._chat_core = chat_core
        self._config = config or WhatsAppConfig()
        self._ingestion = ingestion or IngestionConfig()
        self._strategy = BoundedIdSetStrategy(capacity=self._ingestion.processed_id_capacity)

    async def verify(
        self, mode: str | None, token: str | None, challenge: str | None
    ) -> str | None:
        """Answer the subscription handshake; returns the challenge or ``None`` to refuse."""
        if mode != "subscribe" or not token or challenge is None:
            return None
        expected = self._config.verify_token
        if not expected:
            connection = await self._store.get(WHATSAPP)
            expected = connection.config.get("verifyToken") if connection is not None else None
        if not expected or not hmac.compare_digest(str(expected), token):
            logger.warning("Rejected WhatsApp webhook verification with a mismatched token")
            return None
        return challenge

    async def handle(self, payload: Any) -> WebhookOutcome:
        with provider_context(WHATSAPP):
            return await self._handle(payload)

    async def _handle(self, payload: Any) -> WebhookOutcome:
        if not isinstance(payload, dict):
            return WebhookOutcome.ignore(IgnoreReason.invalid_json)

        messages, statuses = extract_messages(payload)
        if not messages:
            if statuses:
                logger.debug("Ignoring %d WhatsApp status update(s)", statuses)
            return WebhookOutcome.ignore(IgnoreReason.no_messages)

        connection = await self._store.get(WHATSAPP)
        if connection is None or not connection.is_usable:
            logger.info("Ignoring WhatsApp webhook: integration not connected")
            return WebhookOutcome.ignore(IgnoreReason.not_connected)

        processed = 0
        duplicates = 0
        replied = False
        for message in messages:
            reservation = await reserve_if_new(
                self._store,
                WHATSAPP,
                message.message_id,
                self._strategy,
                max_attempts=self._ingestion.reservation_max_attempts,
            )
            if reservation.duplicate:
                duplicates += 1
                continue
            processed += 1

            row = reservation.connection
            reply_text = await converse(
                self._chat_core, self._store, row, message.sender, message.text
            )
            phone_number_id = row.config.get("phoneNumberId") or message.phone_number_id
            if not phone_number_id or not row.access_token:
                logger.warning("No WhatsApp phone number id configured; reply not sent")
                continue
            try:
                await self._graph_api.send_text(
                    row.access_token, str(phone_number_id), message.sender, reply_text
                )
                replied = True
            except IntegrationError as exc:
                logger.warning(
                    "Failed to send WhatsApp reply for message %s: %s", message.message_id, exc
                )

        if not processed:
            outcome = WebhookOutcome.ignore(IgnoreReason.duplicate)
            outcome.duplicates = duplicates
            return outcome
        return WebhookOutcome(replied=replied, processed=processed, duplicates=duplicates)

"""Inbound webhook endpoints for the messaging channels.

Every delivery is answered with HTTP 200 (including duplicates and ignored
payloads) so the provider stops retrying.  The one exception is reservation
contention, which surfaces as 503 through the error handlers so the
provider redelivers.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import APIRouter, Depends, Request
from fastapi.responses import PlainTextResponse

from calbridge.api.deps import get_telegram_handler, get_whatsapp_handler
from calbridge.channels.base import IgnoreReason, WebhookOutcome
from calbridge.channels.telegram import TelegramWebhookHandler
from calbridge.channels.whatsapp import WhatsAppWebhookHandler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])

_INVALID_JSON = object()


async def _json_body(request: Request) -> Any:
    raw = await request.body()
    try:
        return json.loads(raw)
    except (UnicodeDecodeError, ValueError):
        logger.info("Rejected webhook body on %s: invalid JSON", request.url.path)
        return _INVALID_JSON


@router.get("/telegram")
async def telegram_probe() -> dict[str, Any]:
    return {"ok": True, "provider": "telegram"}


@router.post("/telegram", response_model=WebhookOutcome)
async def telegram_webhook(
    request: Request,
    handler: TelegramWebhookHandler = Depends(get_telegram_handler),
) -> WebhookOutcome:
    update = await _json_body(request)
    if update is _INVALID_JSON:
        return WebhookOutcome.ignore(IgnoreReason.invalid_json)
    return await handler.handle(
        update,
        secret_token=request.headers.get("x-telegram-bot-api-secret-token"),
    )


@router.get("/whatsapp", response_class=PlainTextResponse)
async def whatsapp_verify(
    request: Request,
    handler: WhatsAppWebhookHandler = Depends(get_whatsapp_handler),
) -> PlainTextResponse:
    """Subscription handshake: echo ``hub.challenge`` when the verify token matches."""
    params = request.query_params
    challenge = await handler.verify(
        params.get("hub.mode"),
        params.get("hub.verify_token"),
        params.get("hub.challenge"),
    )
    if challenge is None:
        return PlainTextResponse("Forbidden", status_code=403)
    return PlainTextResponse(challenge, status_code=200)


@router.post("/whatsapp", response_model=WebhookOutcome)
async def whatsapp_webhook(
    request: Request,
    handler: WhatsAppWebhookHandler = Depends(get_whatsapp_handler),
) -> WebhookOutcome:
    payload = await _json_body(request)
    if payload is _INVALID_JSON:
        return WebhookOutcome.ignore(IgnoreReason.invalid_json)
    return await handler.handle(payload)

"""Shared pieces of the inbound channel adapters.

Adapters own their transport and payload parsing.  Deduplication goes
through :mod:`calbridge.ingestion`; replies come from a :class:`ChatCore`.
"""

from __future__ import annotations

import logging
import re
from enum import StrEnum
from typing import Any, Protocol

import httpx
from pydantic import BaseModel, Field

from calbridge.config import ChatConfig
from calbridge.connections.models import IntegrationConnection
from calbridge.connections.store import ConnectionStore
from calbridge.errors import sanitize_error_message
from calbridge.provider_errors import response_json

logger = logging.getLogger(__name__)

CHAT_MODES = ("auto", "explore", "dating", "family", "social", "relax", "travel", "focus")
MIN_THREAD_ID_LENGTH = 8
FALLBACK_REPLY = "I didn't catch that. Try again?"
CHAT_STATE_WRITE_ATTEMPTS = 3

_SLASH_MODE = re.compile(r"^/mode(?:@\w+)?\s+([a-z]+)\b", re.IGNORECASE)
_CONVERSATIONAL_MODE = re.compile(
    r"\b(?:switch to|set|use|go into|change to)\s+(?:the\s+)?([a-z]+)\s+mode\b",
    re.IGNORECASE,
)


class IgnoreReason(StrEnum):
    invalid_json = "invalid_json"
    invalid_update = "invalid_update"
    no_text_message = "no_text_message"
    bot_sender = "bot_sender"
    not_connected = "not_connected"
    invalid_secret = "invalid_secret"
    duplicate = "duplicate_update"
    no_messages = "no_messages"


class WebhookOutcome(BaseModel):
    """Body returned to the provider; always paired with HTTP 200."""

    received: bool = True
    ignored: bool = False
    reason: IgnoreReason | None = None
    update_id: int | str | None = None
    replied: bool = False
    processed: int = 0
    duplicates: int = 0

    @classmethod
    def ignore(cls, reason: IgnoreReason, update_id: int | str | None = None) -> WebhookOutcome:
        return cls(ignored=True, reason=reason, update_id=update_id)


class ChatReply(BaseModel):
    reply: str = ""
    thread_id: str | None = None
    blocks: list[Any] = Field(default_factory=list)
    error: str | None = None

    def text(self) -> str:
        if self.reply.strip():
            return self.reply.strip()
        if self.error:
            return f"I hit an error: {self.error}"
        return FALLBACK_REPLY


class ChatCore(Protocol):
    async def respond(
        self,
        message: str,
        *,
        mode: str | None = None,
        thread_id: str | None = None,
    ) -> ChatReply: ...


class HttpChatCore:
    """Forwards a message to the chat endpoint and parses its envelope.

    The endpoint answers ``{"data": {"reply", "threadId", "blocks"}, "error"}``.
    Failures come back as a :class:`ChatReply` with ``error`` set so the
    adapter can still tell the user something went wrong.
    """

    def __init__(self, http_client: httpx.AsyncClient, config: ChatConfig) -> None:
        self._http_client = http_client
        self._config = config

    async def respond(
        self,
        message: str,
        *,
        mode: str | None = None,
        thread_id: str | None = None,
    ) -> ChatReply:
        body: dict[str, Any] = {"message": message}
        if mode:
            body["mode"] = mode
        if thread_id:
            body["threadId"] = thread_id
        try:
            response = await self._http_client.post(
                self._config.endpoint_url,
                json=body,
                timeout=self._config.timeout_s,
            )
        except httpx.HTTPError as exc:
            logger.warning("Chat endpoint request failed: %s", exc)
            return ChatReply(error="the assistant is unreachable right now")

        payload = response_json(response)
        envelope = payload if isinstance(payload, dict) else {}
        data = envelope.get("data") if isinstance(envelope.get("data"), dict) else {}
        error = envelope.get("error")
        if response.status_code >= 400 and not error:
            error = f"chat endpoint returned HTTP {response.status_code}"
        if isinstance(error, dict):
            error = error.get("message")

        reply = data.get("reply")
        new_thread = data.get("threadId")
        blocks = data.get("blocks")
        return ChatReply(
            reply=reply if isinstance(reply, str) else "",
            thread_id=new_thread if isinstance(new_thread, str) else None,
            blocks=blocks if isinstance(blocks, list) else [],
            error=sanitize_error_message(str(error)) if error else None,
        )


def detect_mode_override(text: str) -> str | None:
    """Return the chat mode the user asked to switch to, if any."""
    for pattern in (_SLASH_MODE, _CONVERSATIONAL_MODE):
        match = pattern.search(text.strip())
        if match:
            mode = match.group(1).lower()
            if mode in CHAT_MODES:
                return mode
    return None


def chat_state(connection: IntegrationConnection, chat_key: str) -> dict[str, Any]:
    chats = connection.config.get("chats")
    state = chats.get(chat_key) if isinstance(chats, dict) else None
    return dict(state) if isinstance(state, dict) else {}


async def save_chat_state(
    store: ConnectionStore,
    provider: str,
    chat_key: str,
    *,
    thread_id: str | None,
    mode: str | None,
) -> None:
    """Merge one chat's ``{threadId, mode}`` into the latest row config.

    The write is conditional on the row it was merged into so a concurrent
    reservation's dedup state is never rolled back; after
    ``CHAT_STATE_WRITE_ATTEMPTS`` lost races the chat state is dropped.
    """
    for _ in range(CHAT_STATE_WRITE_ATTEMPTS):
        latest = await store.get(provider)
        if latest is None:
            return
        chats = latest.config.get("chats")
        chats = dict(chats) if isinstance(chats, dict) else {}
        entry = dict(chats.get(chat_key) or {})
        if thread_id:
            entry["threadId"] = thread_id
        if mode:
            entry["mode"] = mode
        chats[chat_key] = entry
        updated = await store.update_if_version(
            provider, latest.updated_at, {"config": {**latest.config, "chats": chats}}
        )
        if updated is not None:
            return
    logger.warning("Dropped %s chat state for %s after concurrent writes", provider, chat_key)


async def converse(
    chat_core: ChatCore,
    store: ConnectionStore,
    connection: IntegrationConnection,
    chat_key: str,
    text: str,
) -> str:
    """Run one chat turn for *chat_key* and return the reply text to send."""
    previous = chat_state(connection, chat_key)
    override = detect_mode_override(text)
    previous_mode = previous.get("mode") if previous.get("mode") in CHAT_MODES else None
    mode = override or previous_mode
    previous_thread = previous.get("threadId")

    reply = await chat_core.respond(
        text,
        mode=mode,
        thread_id=previous_thread if isinstance(previous_thread, str) else None,
    )

    thread_id = reply.thread_id
    if not thread_id or len(thread_id) < MIN_THREAD_ID_LENGTH:
        thread_id = None
    if thread_id or override or previous_mode:
        await save_chat_state(
            store,
            connection.provider,
            chat_key,
            thread_id=thread_id,
            mode=mode,
        )
    return reply.text()

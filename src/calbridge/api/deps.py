"""Service wiring and FastAPI dependency functions for the integration API.

Provides:
- ``Services``: the object graph (store, lifecycle service, calendar client,
  resolver, channel handlers) shared by every request.
- ``build_services()``: builds that graph from an :class:`AppConfig`, a
  connection store, and a shared ``httpx.AsyncClient``.
- FastAPI dependency functions that read the graph from ``app.state``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx
from fastapi import Depends, Request

from calbridge.calendar.client import GoogleCalendarClient
from calbridge.calendar.resolver import EventResolver
from calbridge.calendar.tokens import GoogleOAuthClient, TokenManager
from calbridge.calendar.tool import CalendarTool
from calbridge.channels.base import ChatCore, HttpChatCore
from calbridge.channels.telegram import TelegramBotApi, TelegramWebhookHandler
from calbridge.channels.whatsapp import WhatsAppGraphApi, WhatsAppWebhookHandler
from calbridge.config import AppConfig
from calbridge.connections.adapters import (
    GoogleCalendarAdapter,
    TelegramAdapter,
    WhatsAppAdapter,
)
from calbridge.connections.models import GOOGLE_CALENDAR, TELEGRAM, WHATSAPP, Scope
from calbridge.connections.service import IntegrationService
from calbridge.connections.store import ConnectionStore

logger = logging.getLogger(__name__)


@dataclass
class Services:
    config: AppConfig
    store: ConnectionStore
    http_client: httpx.AsyncClient
    integrations: IntegrationService
    calendar: GoogleCalendarClient
    resolver: EventResolver
    calendar_tool: CalendarTool
    telegram: TelegramWebhookHandler
    whatsapp: WhatsAppWebhookHandler


def build_services(
    config: AppConfig,
    store: ConnectionStore,
    http_client: httpx.AsyncClient,
    *,
    chat_core: ChatCore | None = None,
) -> Services:
    """Wire every component against one store and one HTTP client."""
    oauth = GoogleOAuthClient(http_client, config.google)
    bot_api = TelegramBotApi(http_client, config.telegram)
    graph_api = WhatsAppGraphApi(http_client, config.whatsapp)
    chat = chat_core or HttpChatCore(http_client, config.chat)

    integrations = IntegrationService(
        store,
        {
            GOOGLE_CALENDAR: GoogleCalendarAdapter(http_client, oauth, config.google),
            TELEGRAM: TelegramAdapter(bot_api, config.telegram),
            WHATSAPP: WhatsAppAdapter(graph_api),
        },
    )
    tokens = TokenManager(
        store,
        oauth,
        config.google,
        refresh_skew_s=config.calendar.refresh_skew_s,
    )
    calendar = GoogleCalendarClient(
        tokens,
        http_client,
        store,
        calendar_config=config.calendar,
        oauth_config=config.google,
    )
    resolver = EventResolver(calendar, config.resolver)
    logger.debug("Integration services wired")
    return Services(
        config=config,
        store=store,
        http_client=http_client,
        integrations=integrations,
        calendar=calendar,
        resolver=resolver,
        calendar_tool=CalendarTool(calendar, resolver, integrations),
        telegram=TelegramWebhookHandler(store, bot_api, chat, config.ingestion),
        whatsapp=WhatsAppWebhookHandler(
            store, graph_api, chat, config.whatsapp, config.ingestion
        ),
    )


def get_services(request: Request) -> Services:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise RuntimeError("Integration services not initialized")
    return services


def get_integration_service(services: Services = Depends(get_services)) -> IntegrationService:
    return services.integrations


def get_calendar_client(services: Services = Depends(get_services)) -> GoogleCalendarClient:
    return services.calendar


def get_resolver(services: Services = Depends(get_services)) -> EventResolver:
    return services.resolver


def get_telegram_handler(services: Services = Depends(get_services)) -> TelegramWebhookHandler:
    return services.telegram


def get_whatsapp_handler(services: Services = Depends(get_services)) -> WhatsAppWebhookHandler:
    return services.whatsapp


def require_calendar_scope(scope: Scope):
    """Dependency factory gating a calendar route on a granted scope."""

    async def _check(
        integrations: IntegrationService = Depends(get_integration_service),
    ) -> None:
        await integrations.assert_scope(GOOGLE_CALENDAR, scope.value)

    return _check

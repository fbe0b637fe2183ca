"""Integration lifecycle endpoints: connect, test, disconnect, scopes.

Provides a single router mounted at ``/api/integrations``.  Provider ids
accept either spelling (``google_calendar`` or ``google-calendar``).
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query

from calbridge.api.deps import get_integration_service
from calbridge.api.models import ApiResponse
from calbridge.api.models.integrations import (
    ConnectRequest,
    ConnectResponse,
    IntegrationView,
    ScopesRequest,
)
from calbridge.connections.models import GOOGLE_CALENDAR
from calbridge.connections.service import IntegrationService
from calbridge.errors import ValidationError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/integrations", tags=["integrations"])


def _provider(value: str) -> str:
    return value.strip().lower().replace("-", "_")


@router.get("", response_model=ApiResponse[list[IntegrationView]])
async def list_integrations(
    service: IntegrationService = Depends(get_integration_service),
) -> ApiResponse[list[IntegrationView]]:
    """Return every catalog provider, creating missing rows as ``disconnected``."""
    connections = await service.list()
    return ApiResponse[list[IntegrationView]](
        data=[IntegrationView.from_connection(c) for c in connections]
    )


# Registered before ``/{provider}`` so the literal path wins.
@router.get(
    "/google-calendar/callback",
    response_model=ApiResponse[ConnectResponse],
)
async def google_calendar_callback(
    code: str | None = Query(default=None),
    state: str | None = Query(default=None),
    error: str | None = Query(default=None),
    service: IntegrationService = Depends(get_integration_service),
) -> ApiResponse[ConnectResponse]:
    """OAuth redirect target: exchange the authorization code and finish connecting."""
    if error:
        await service.set_error(GOOGLE_CALENDAR, f"Google authorization failed: {error}")
        raise ValidationError(f"Google authorization failed: {error}")
    if not code:
        raise ValidationError("Missing authorization code.")
    outcome = await service.connect(GOOGLE_CALENDAR, {"code": code, "state": state or ""})
    return ApiResponse[ConnectResponse](
        data=ConnectResponse(integration=IntegrationView.from_connection(outcome.connection))
    )


@router.get("/{provider}", response_model=ApiResponse[IntegrationView])
async def get_integration(
    provider: str,
    service: IntegrationService = Depends(get_integration_service),
) -> ApiResponse[IntegrationView]:
    connection = await service.get(_provider(provider))
    return ApiResponse[IntegrationView](data=IntegrationView.from_connection(connection))


@router.post("/{provider}/connect", response_model=ApiResponse[ConnectResponse])
async def connect_integration(
    provider: str,
    body: ConnectRequest | None = None,
    service: IntegrationService = Depends(get_integration_service),
) -> ApiResponse[ConnectResponse]:
    """Start or complete a connection.

    For Google Calendar without an authorization code this returns the
    consent URL and leaves the row ``pending``.
    """
    params = body.params() if body is not None else {}
    outcome = await service.connect(_provider(provider), params)
    return ApiResponse[ConnectResponse](
        data=ConnectResponse(
            integration=IntegrationView.from_connection(outcome.connection),
            authorize_url=outcome.authorize_url,
        )
    )


@router.post("/{provider}/test", response_model=ApiResponse[IntegrationView])
async def test_integration(
    provider: str,
    service: IntegrationService = Depends(get_integration_service),
) -> ApiResponse[IntegrationView]:
    connection = await service.test(_provider(provider))
    return ApiResponse[IntegrationView](data=IntegrationView.from_connection(connection))


@router.post("/{provider}/disconnect", response_model=ApiResponse[IntegrationView])
async def disconnect_integration(
    provider: str,
    service: IntegrationService = Depends(get_integration_service),
) -> ApiResponse[IntegrationView]:
    connection = await service.disconnect(_provider(provider))
    return ApiResponse[IntegrationView](data=IntegrationView.from_connection(connection))


@router.put("/{provider}/scopes", response_model=ApiResponse[IntegrationView])
async def update_integration_scopes(
    provider: str,
    body: ScopesRequest,
    service: IntegrationService = Depends(get_integration_service),
) -> ApiResponse[IntegrationView]:
    connection = await service.update_scopes(_provider(provider), body.scopes)
    return ApiResponse[IntegrationView](data=IntegrationView.from_connection(connection))

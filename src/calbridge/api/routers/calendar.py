"""Calendar endpoints over the connected Google account.

Provides a single router mounted at ``/api/calendar``.  Each route is gated
on the scope it needs (``read``, ``write`` or ``delete``); integration errors
are mapped to HTTP statuses by :mod:`calbridge.api.middleware`.

``POST /api/calendar/tool`` exposes the chat/tool dispatcher unchanged: it
always answers 200 with either ``{"status": "ok", ...}`` or a structured
``{"status": "error", ...}`` payload.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Body, Depends, Query

from calbridge.api.deps import (
    Services,
    get_calendar_client,
    get_resolver,
    get_services,
    require_calendar_scope,
)
from calbridge.api.models import ApiResponse
from calbridge.api.models.calendar import DeleteResult, ResolveRequest
from calbridge.calendar.client import GoogleCalendarClient
from calbridge.calendar.models import (
    CalendarEvent,
    CalendarInfo,
    EventCreate,
    EventPatch,
    ResolveResult,
)
from calbridge.calendar.resolver import EventResolver
from calbridge.connections.models import Scope

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/calendar", tags=["calendar"])

_read = Depends(require_calendar_scope(Scope.read))
_write = Depends(require_calendar_scope(Scope.write))
_delete = Depends(require_calendar_scope(Scope.delete))


@router.get(
    "/calendars",
    response_model=ApiResponse[list[CalendarInfo]],
    dependencies=[_read],
)
async def list_calendars(
    client: GoogleCalendarClient = Depends(get_calendar_client),
) -> ApiResponse[list[CalendarInfo]]:
    return ApiResponse[list[CalendarInfo]](data=await client.list_calendars())


@router.get(
    "/events",
    response_model=ApiResponse[list[CalendarEvent]],
    dependencies=[_read],
)
async def list_events(
    calendar_id: str | None = Query(default=None),
    time_min: datetime | None = Query(default=None),
    time_max: datetime | None = Query(default=None),
    max_results: int | None = Query(default=None),
    q: str | None = Query(default=None),
    client: GoogleCalendarClient = Depends(get_calendar_client),
) -> ApiResponse[list[CalendarEvent]]:
    events = await client.list_events(calendar_id, time_min, time_max, max_results, q)
    return ApiResponse[list[CalendarEvent]](data=events)


@router.post(
    "/events",
    status_code=201,
    response_model=ApiResponse[CalendarEvent],
    dependencies=[_write],
)
async def create_event(
    body: EventCreate,
    client: GoogleCalendarClient = Depends(get_calendar_client),
) -> ApiResponse[CalendarEvent]:
    """Create an event; without ``calendar_id`` it lands on the managed calendar."""
    return ApiResponse[CalendarEvent](data=await client.create_event(body))


@router.get(
    "/events/{event_id}",
    response_model=ApiResponse[CalendarEvent],
    dependencies=[_read],
)
async def get_event(
    event_id: str,
    calendar_id: str | None = Query(default=None),
    client: GoogleCalendarClient = Depends(get_calendar_client),
) -> ApiResponse[CalendarEvent]:
    return ApiResponse[CalendarEvent](data=await client.get_event(event_id, calendar_id))


@router.patch(
    "/events/{event_id}",
    response_model=ApiResponse[CalendarEvent],
    dependencies=[_write],
)
async def update_event(
    event_id: str,
    body: EventPatch,
    calendar_id: str | None = Query(default=None),
    client: GoogleCalendarClient = Depends(get_calendar_client),
) -> ApiResponse[CalendarEvent]:
    event = await client.update_event(event_id, body, calendar_id)
    return ApiResponse[CalendarEvent](data=event)


@router.delete(
    "/events/{event_id}",
    response_model=ApiResponse[DeleteResult],
    dependencies=[_delete],
)
async def delete_event(
    event_id: str,
    calendar_id: str | None = Query(default=None),
    client: GoogleCalendarClient = Depends(get_calendar_client),
) -> ApiResponse[DeleteResult]:
    await client.delete_event(event_id, calendar_id)
    return ApiResponse[DeleteResult](data=DeleteResult(deleted=True, event_id=event_id))


@router.get(
    "/availability",
    response_model=ApiResponse[dict[str, Any]],
    dependencies=[_read],
)
async def get_availability(
    calendar_id: str | None = Query(default=None),
    time_min: datetime | None = Query(default=None),
    time_max: datetime | None = Query(default=None),
    duration_minutes: int | None = Query(default=None),
    client: GoogleCalendarClient = Depends(get_calendar_client),
) -> ApiResponse[dict[str, Any]]:
    availability = await client.get_availability(
        calendar_id, time_min, time_max, duration_minutes
    )
    return ApiResponse[dict[str, Any]](data=availability.to_dict())


@router.post(
    "/resolve",
    response_model=ApiResponse[ResolveResult],
    dependencies=[_read],
)
async def resolve_event(
    body: ResolveRequest,
    resolver: EventResolver = Depends(get_resolver),
) -> ApiResponse[ResolveResult]:
    result = await resolver.resolve(
        body.description, time_min=body.time_min, time_max=body.time_max
    )
    return ApiResponse[ResolveResult](data=result)


@router.post("/tool")
async def run_calendar_tool(
    args: dict[str, Any] = Body(...),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    return await services.calendar_tool.execute(args)

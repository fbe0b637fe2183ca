"""Calendar operations as invoked by the chat/tool layer.

The chat layer sends loosely typed arguments (ISO strings, numeric strings,
comma-separated lists) and expects a JSON-ready dict back, never an
exception.  Every operation is gated on the connection's granted scopes.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Mapping
from datetime import datetime
from typing import Any

from calbridge.calendar.client import GoogleCalendarClient
from calbridge.calendar.models import EventCreate, EventPatch, parse_google_datetime
from calbridge.calendar.resolver import EventResolver
from calbridge.connections.models import GOOGLE_CALENDAR, Scope
from calbridge.connections.service import IntegrationService
from calbridge.errors import (
    IntegrationError,
    ValidationError,
    build_error_payload,
)

logger = logging.getLogger(__name__)

OPERATION_SCOPES: dict[str, Scope] = {
    "list": Scope.read,
    "list_calendars": Scope.read,
    "list_multi": Scope.read,
    "get": Scope.read,
    "availability": Scope.read,
    "resolve": Scope.read,
    "create": Scope.write,
    "update": Scope.write,
    "delete": Scope.delete,
}


def _arg(args: Mapping[str, Any], *names: str) -> Any:
    for name in names:
        value = args.get(name)
        if value is not None and value != "":
            return value
    return None


def _text(args: Mapping[str, Any], *names: str) -> str | None:
    value = _arg(args, *names)
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _time(args: Mapping[str, Any], *names: str) -> datetime | None:
    value = _arg(args, *names)
    if value is None or isinstance(value, datetime):
        return value
    try:
        return parse_google_datetime(str(value))
    except ValueError:
        raise ValidationError(f"{names[0]} must be an ISO 8601 timestamp.") from None


def _string_list(args: Mapping[str, Any], *names: str) -> list[str] | None:
    value = _arg(args, *names)
    if value is None:
        return None
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    if isinstance(value, list | tuple):
        return [str(item).strip() for item in value if str(item).strip()]
    raise ValidationError(f"{names[0]} must be a list of strings.")


class CalendarTool:
    """Dispatches ``list | list_calendars | list_multi | get | create | update |
    delete | availability | resolve``."""

    def __init__(
        self,
        client: GoogleCalendarClient,
        resolver: EventResolver,
        service: IntegrationService,
        *,
        provider: str = GOOGLE_CALENDAR,
    ) -> None:
        self._client = client
        self._resolver = resolver
        self._service = service
        self._provider = provider
        self._handlers: dict[str, Callable[[Mapping[str, Any]], Awaitable[dict[str, Any]]]] = {
            "list": self._list,
            "list_calendars": self._list_calendars,
            "list_multi": self._list_multi,
            "get": self._get,
            "create": self._create,
            "update": self._update,
            "delete": self._delete,
            "availability": self._availability,
            "resolve": self._resolve,
        }

    async def execute(self, args: Mapping[str, Any]) -> dict[str, Any]:
        operation = str(args.get("operation") or args.get("action") or "").strip().lower()
        try:
            handler = self._handlers.get(operation)
            if handler is None:
                raise ValidationError(
                    f"Unsupported calendar operation: {operation or '(none)'}. "
                    f"Expected one of: {', '.join(self._handlers)}."
                )
            await self._service.assert_scope(self._provider, OPERATION_SCOPES[operation].value)
            result = await handler(args)
        except IntegrationError as exc:
            logger.info("Calendar %s failed: %s", operation or "(none)", exc)
            return build_error_payload(exc)
        return {"status": "ok", "operation": operation, **result}

    # -- operations -----------------------------------------------------------

    async def _list(self, args: Mapping[str, Any]) -> dict[str, Any]:
        calendar_id = _text(args, "calendarId", "calendar_id")
        events = await self._client.list_events(
            calendar_id,
            _time(args, "timeMin", "time_min"),
            _time(args, "timeMax", "time_max"),
            _arg(args, "maxResults", "max_results"),
            _text(args, "query", "q"),
        )
        return {
            "calendar_id": calendar_id or await self._client.default_calendar_id(),
            "events": [event.model_dump(mode="json") for event in events],
        }

    async def _list_calendars(self, args: Mapping[str, Any]) -> dict[str, Any]:
        calendars = await self._client.list_calendars()
        return {"calendars": [calendar.model_dump(mode="json") for calendar in calendars]}

    async def _list_multi(self, args: Mapping[str, Any]) -> dict[str, Any]:
        calendars = await self._client.list_calendars()
        wanted = _string_list(args, "calendarIds", "calendar_ids")
        if wanted:
            calendars = [c for c in calendars if c.id in wanted]
            if not calendars:
                raise ValidationError("None of the requested calendars are readable.")
        events = await self._client.list_events_multi(
            calendars,
            _time(args, "timeMin", "time_min"),
            _time(args, "timeMax", "time_max"),
            _arg(args, "maxResults", "max_results") or 20,
            _text(args, "query", "q"),
        )
        return {
            "calendars": [c.model_dump(mode="json") for c in calendars],
            "events": [event.model_dump(mode="json") for event in events],
        }

    async def _get(self, args: Mapping[str, Any]) -> dict[str, Any]:
        event = await self._client.get_event(
            _text(args, "eventId", "event_id", "id") or "",
            _text(args, "calendarId", "calendar_id"),
        )
        return {"event": event.model_dump(mode="json")}

    async def _create(self, args: Mapping[str, Any]) -> dict[str, Any]:
        summary = _text(args, "summary", "title")
        start = _time(args, "start", "startTime", "start_time")
        end = _time(args, "end", "endTime", "end_time")
        if not summary:
            raise ValidationError("summary is required.")
        if start is None or end is None:
            raise ValidationError("start and end are required.")
        event = await self._client.create_event(
            EventCreate(
                summary=summary,
                start=start,
                end=end,
                description=_text(args, "description"),
                location=_text(args, "location"),
                time_zone=_text(args, "timeZone", "time_zone", "timezone") or "UTC",
                attendees=_string_list(args, "attendees") or [],
                calendar_id=_text(args, "calendarId", "calendar_id"),
            )
        )
        return {"event": event.model_dump(mode="json")}

    async def _update(self, args: Mapping[str, Any]) -> dict[str, Any]:
        patch = EventPatch(
            summary=_text(args, "summary", "title"),
            description=_text(args, "description"),
            location=_text(args, "location"),
            start=_time(args, "start", "startTime", "start_time"),
            end=_time(args, "end", "endTime", "end_time"),
            time_zone=_text(args, "timeZone", "time_zone", "timezone"),
            attendees=_string_list(args, "attendees"),
        )
        event = await self._client.update_event(
            _text(args, "eventId", "event_id", "id") or "",
            patch,
            _text(args, "calendarId", "calendar_id"),
        )
        return {"event": event.model_dump(mode="json")}

    async def _delete(self, args: Mapping[str, Any]) -> dict[str, Any]:
        event_id = _text(args, "eventId", "event_id", "id") or ""
        await self._client.delete_event(event_id, _text(args, "calendarId", "calendar_id"))
        return {"deleted": True, "event_id": event_id}

    async def _availability(self, args: Mapping[str, Any]) -> dict[str, Any]:
        availability = await self._client.get_availability(
            _text(args, "calendarId", "calendar_id"),
            _time(args, "timeMin", "time_min"),
            _time(args, "timeMax", "time_max"),
            _arg(args, "durationMinutes", "duration_minutes", "duration"),
        )
        return {"availability": availability.to_dict()}

    async def _resolve(self, args: Mapping[str, Any]) -> dict[str, Any]:
        result = await self._resolver.resolve(
            _text(args, "description", "query", "q") or "",
            time_min=_time(args, "timeMin", "time_min"),
            time_max=_time(args, "timeMax", "time_max"),
        )
        return result.model_dump(mode="json")

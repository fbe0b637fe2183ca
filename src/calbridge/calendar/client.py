"""Authenticated Google Calendar v3 client.

Every call goes through :meth:`GoogleCalendarClient.request`, which obtains a
valid :class:`~calbridge.calendar.tokens.AuthContext`, sends the request with
a bearer header, and on a 401 performs exactly one refresh-and-retry.  A 401
that is still there afterwards raises :class:`~calbridge.errors.NotConnectedError`;
any other non-2xx response becomes a :class:`~calbridge.errors.ProviderError`
carrying the provider's normalized error message.

Reads without a calendar id use the connection's configured calendar; single
event operations (get, create, update, delete) default to the managed calendar
so an event created without an id can be read back the same way.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta
from typing import Any
from urllib.parse import quote

import httpx

from calbridge.calendar.availability import clamp_duration, compute_free_slots, merge_intervals
from calbridge.calendar.models import (
    CalendarAvailability,
    CalendarEvent,
    CalendarInfo,
    EventCreate,
    EventPatch,
    TimeSlot,
    google_rfc3339,
    normalize_calendar,
    normalize_event,
    parse_google_datetime,
)
from calbridge.calendar.tokens import AuthContext, TokenManager, utcnow
from calbridge.config import CalendarConfig, GoogleOAuthConfig
from calbridge.connections.store import ConnectionStore
from calbridge.core.logging import provider_context
from calbridge.core.metrics import record_calendar_request, track_calendar_latency
from calbridge.core.telemetry import traced
from calbridge.errors import (
    NotConnectedError,
    ProviderError,
    TransportError,
    ValidationError,
    sanitize_error_message,
)
from calbridge.provider_errors import parse_google_error, response_fallback, response_json

logger = logging.getLogger(__name__)

MIN_MAX_RESULTS = 1
MAX_MAX_RESULTS = 100
_MANAGED_CALENDAR_KEY = "managedCalendarId"
_MANAGED_CALENDAR_WRITE_ATTEMPTS = 3


def clamp_max_results(value: Any, default: int = 20) -> int:
    if isinstance(value, bool) or value is None:
        number = default
    else:
        try:
            number = int(value)
        except (TypeError, ValueError):
            number = default
    return max(MIN_MAX_RESULTS, min(MAX_MAX_RESULTS, number))


def _segment(value: str) -> str:
    return quote(value, safe="")


def _boundary(value: datetime, time_zone: str | None) -> dict[str, str]:
    boundary = {"dateTime": google_rfc3339(value)}
    if time_zone:
        boundary["timeZone"] = time_zone
    return boundary


class GoogleCalendarClient:
    """Calendar operations over one connected Google account."""

    def __init__(
        self,
        tokens: TokenManager,
        http_client: httpx.AsyncClient,
        store: ConnectionStore,
        *,
        calendar_config: CalendarConfig | None = None,
        oauth_config: GoogleOAuthConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._tokens = tokens
        self._http_client = http_client
        self._store = store
        self._config = calendar_config or CalendarConfig()
        self._base_url = (oauth_config or GoogleOAuthConfig()).api_base_url.rstrip("/")
        self._clock = clock

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _send(
        self,
        method: str,
        url: str,
        context: AuthContext,
        params: dict[str, Any] | None,
        json_body: dict[str, Any] | None,
    ) -> httpx.Response:
        try:
            return await self._http_client.request(
                method,
                url,
                params=params,
                json=json_body,
                headers={
                    "Authorization": f"Bearer {context.access_token}",
                    "Accept": "application/json",
                },
                timeout=self._config.request_timeout_s,
            )
        except httpx.TimeoutException as exc:
            record_calendar_request(method, "timeout")
            raise TransportError(f"Google Calendar request timed out: {method} {url}") from exc
        except httpx.HTTPError as exc:
            record_calendar_request(method, "transport_error")
            raise TransportError(
                sanitize_error_message(f"Google Calendar request failed: {exc}")
            ) from exc

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
        retry_on_unauthorized: bool = True,
    ) -> Any:
        """Issue an authenticated request and return the decoded JSON body.

        Returns ``None`` for empty (e.g. 204) responses.
        """
        normalized_path = path if path.startswith("/") else f"/{path}"
        url = f"{self._base_url}{normalized_path}"

        with (
            provider_context(self._tokens.provider),
            traced(
                "calendar.request",
                **{"http.method": method, "calendar.path": normalized_path},
            ) as span,
            track_calendar_latency(method),
        ):
            context = await self._tokens.get_valid_context()
            response = await self._send(method, url, context, params, json_body)
            retried = False
            if response.status_code == 401 and retry_on_unauthorized and context.refresh_token:
                logger.info("Google Calendar returned 401 for %s %s; refreshing once", method, path)
                context = await self._tokens.refresh(context)
                response = await self._send(method, url, context, params, json_body)
                retried = True
            span.set_attribute("http.status_code", response.status_code)
            span.set_attribute("calendar.retried", retried)

        record_calendar_request(method, str(response.status_code))
        if response.status_code == 401:
            # Still rejected after the refresh-and-retry, or nothing to refresh with.
            logger.warning("Google Calendar %s %s rejected the stored credentials", method, path)
            raise NotConnectedError("Google Calendar rejected the stored credentials.")
        if response.status_code < 200 or response.status_code >= 300:
            error = parse_google_error(response_json(response), response_fallback(response))
            message = sanitize_error_message(error.message)
            logger.warning(
                "Google Calendar %s %s failed (%d): %s",
                method,
                normalized_path,
                response.status_code,
                message,
            )
            raise ProviderError(status_code=response.status_code, message=message)

        if response.status_code == 204 or not response.content:
            return None
        payload = response_json(response)
        if payload is None:
            raise ProviderError(
                status_code=response.status_code,
                message="Google Calendar returned invalid JSON for a successful response.",
            )
        return payload

    # ------------------------------------------------------------------
    # Calendars
    # ------------------------------------------------------------------

    async def default_calendar_id(self) -> str:
        return (await self._tokens.get_valid_context()).calendar_id

    async def list_calendars(self) -> list[CalendarInfo]:
        calendars: list[CalendarInfo] = []
        page_token: str | None = None
        while True:
            params: dict[str, Any] = {"maxResults": 250}
            if page_token:
                params["pageToken"] = page_token
            payload = await self.request("GET", "/users/me/calendarList", params=params) or {}
            for raw in payload.get("items") or []:
                calendar = normalize_calendar(raw)
                if calendar is not None:
                    calendars.append(calendar)
            page_token = payload.get("nextPageToken")
            if not isinstance(page_token, str) or not page_token:
                return calendars

    async def ensure_managed_calendar(self) -> str:
        """Return the managed calendar id, finding or creating the calendar once.

        The id is memoized in the connection's ``config`` so every process
        shares it; the first writer wins.
        """
        row = await self._store.get(self._tokens.provider)
        cached = row.config.get(_MANAGED_CALENDAR_KEY) if row is not None else None
        if isinstance(cached, str) and cached:
            return cached

        name = self._config.managed_calendar_name
        calendars = await self.list_calendars()
        existing = next((c for c in calendars if c.summary == name), None)
        if existing is not None:
            calendar_id = existing.id
        else:
            created = await self.request(
                "POST",
                "/calendars",
                json_body={
                    "summary": name,
                    "description": self._config.managed_calendar_description,
                    "timeZone": self._config.managed_calendar_timezone,
                },
            )
            calendar_id = created.get("id") if isinstance(created, dict) else None
            if not isinstance(calendar_id, str) or not calendar_id:
                raise ProviderError(
                    status_code=502, message="Google Calendar did not return a calendar id."
                )
            logger.info("Created managed calendar %r (%s)", name, calendar_id)

        for _ in range(_MANAGED_CALENDAR_WRITE_ATTEMPTS):
            latest = await self._store.get(self._tokens.provider)
            if latest is None:
                break
            stored = latest.config.get(_MANAGED_CALENDAR_KEY)
            if isinstance(stored, str) and stored:
                return stored
            updated = await self._store.update_if_version(
                self._tokens.provider,
                latest.updated_at,
                {"config": {**latest.config, _MANAGED_CALENDAR_KEY: calendar_id}},
            )
            if updated is not None:
                break
        return calendar_id

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def _window(
        self,
        time_min: datetime | None,
        time_max: datetime | None,
        default_days: int,
    ) -> tuple[datetime, datetime]:
        now = self._clock()
        start = time_min or now
        end = time_max or now + timedelta(days=default_days)
        if end <= start:
            raise ValidationError("timeMax must be later than timeMin.")
        return start, end

    async def list_events(
        self,
        calendar_id: str | None = None,
        time_min: datetime | None = None,
        time_max: datetime | None = None,
        max_results: int | None = None,
        query: str | None = None,
        *,
        calendar_name: str | None = None,
    ) -> list[CalendarEvent]:
        calendar_id = calendar_id or await self.default_calendar_id()
        start, end = self._window(time_min, time_max, self._config.default_window_days)
        params: dict[str, Any] = {
            "singleEvents": "true",
            "orderBy": "startTime",
            "timeMin": google_rfc3339(start),
            "timeMax": google_rfc3339(end),
            "maxResults": clamp_max_results(max_results, self._config.default_max_results),
        }
        if query and query.strip():
            params["q"] = query.strip()

        payload = await self.request(
            "GET", f"/calendars/{_segment(calendar_id)}/events", params=params
        )
        items = payload.get("items") if isinstance(payload, dict) else None
        events: list[CalendarEvent] = []
        for raw in items or []:
            event = normalize_event(raw, calendar_id=calendar_id, calendar_name=calendar_name)
            if event is not None:
                events.append(event)
        return events

    async def list_events_multi(
        self,
        calendars: Sequence[CalendarInfo],
        time_min: datetime | None = None,
        time_max: datetime | None = None,
        max_results: int | None = None,
        query: str | None = None,
    ) -> list[CalendarEvent]:
        """List events from several calendars concurrently, tagging each with its calendar.

        A calendar that fails is logged and skipped; if every calendar fails,
        the first error is raised.
        """
        if not calendars:
            return []
        results = await asyncio.gather(
            *(
                self.list_events(
                    calendar.id,
                    time_min,
                    time_max,
                    max_results,
                    query,
                    calendar_name=calendar.summary,
                )
                for calendar in calendars
            ),
            return_exceptions=True,
        )
        events: list[CalendarEvent] = []
        errors: list[BaseException] = []
        for calendar, result in zip(calendars, results, strict=True):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.warning("Listing events for calendar %s failed: %s", calendar.id, result)
                errors.append(result)
                continue
            events.extend(result)
        if errors and len(errors) == len(calendars):
            raise errors[0]
        events.sort(key=lambda e: e.start_at)
        return events

    async def get_event(self, event_id: str, calendar_id: str | None = None) -> CalendarEvent:
        event_id = (event_id or "").strip()
        if not event_id:
            raise ValidationError("eventId is required.")
        calendar_id = calendar_id or await self.ensure_managed_calendar()
        payload = await self.request(
            "GET", f"/calendars/{_segment(calendar_id)}/events/{_segment(event_id)}"
        )
        event = normalize_event(payload, calendar_id=calendar_id)
        if event is None:
            raise _malformed_event()
        return event

    async def create_event(self, data: EventCreate) -> CalendarEvent:
        if not data.summary:
            raise ValidationError("Event summary is required.")
        if data.end <= data.start:
            raise ValidationError("Event end must be later than start.")

        calendar_id = data.calendar_id or await self.ensure_managed_calendar()
        body: dict[str, Any] = {
            "summary": data.summary,
            "start": _boundary(data.start, data.time_zone),
            "end": _boundary(data.end, data.time_zone),
        }
        if data.description:
            body["description"] = data.description
        if data.location:
            body["location"] = data.location
        if data.attendees:
            body["attendees"] = [{"email": email} for email in data.attendees]

        payload = await self.request(
            "POST", f"/calendars/{_segment(calendar_id)}/events", json_body=body
        )
        event = normalize_event(payload, calendar_id=calendar_id)
        if event is None:
            raise _malformed_event()
        logger.info("Created event %s on calendar %s", event.id, calendar_id)
        return event

    async def update_event(
        self,
        event_id: str,
        patch: EventPatch,
        calendar_id: str | None = None,
    ) -> CalendarEvent:
        event_id = (event_id or "").strip()
        if not event_id:
            raise ValidationError("eventId is required.")
        body = patch.to_body()
        if not body:
            raise ValidationError("No update fields provided.")
        if patch.start is not None and patch.end is not None and patch.end <= patch.start:
            raise ValidationError("Event end must be later than start.")

        calendar_id = calendar_id or await self.ensure_managed_calendar()
        payload = await self.request(
            "PATCH",
            f"/calendars/{_segment(calendar_id)}/events/{_segment(event_id)}",
            json_body=body,
        )
        event = normalize_event(payload, calendar_id=calendar_id)
        if event is None:
            raise _malformed_event()
        return event

    async def delete_event(self, event_id: str, calendar_id: str | None = None) -> None:
        event_id = (event_id or "").strip()
        if not event_id:
            raise ValidationError("eventId is required.")
        calendar_id = calendar_id or await self.ensure_managed_calendar()
        await self.request(
            "DELETE", f"/calendars/{_segment(calendar_id)}/events/{_segment(event_id)}"
        )
        logger.info("Deleted event %s from calendar %s", event_id, calendar_id)

    # ------------------------------------------------------------------
    # Availability
    # ------------------------------------------------------------------

    async def get_availability(
        self,
        calendar_id: str | None = None,
        time_min: datetime | None = None,
        time_max: datetime | None = None,
        duration_minutes: int | None = None,
    ) -> CalendarAvailability:
        calendar_id = calendar_id or await self.default_calendar_id()
        start, end = self._window(time_min, time_max, self._config.default_window_days)
        duration = clamp_duration(duration_minutes, self._config.default_duration_minutes)

        payload = await self.request(
            "POST",
            "/freeBusy",
            json_body={
                "timeMin": google_rfc3339(start),
                "timeMax": google_rfc3339(end),
                "items": [{"id": calendar_id}],
            },
        )
        entry = (payload or {}).get("calendars", {}).get(calendar_id) or {}
        errors = entry.get("errors")
        if isinstance(errors, list) and errors:
            reasons = ", ".join(
                str(e.get("reason")) for e in errors if isinstance(e, dict) and e.get("reason")
            )
            raise ProviderError(
                status_code=404 if "notFound" in reasons else 502,
                message=f"Free/busy lookup for {calendar_id} failed: {reasons or 'unknown error'}",
            )

        busy: list[TimeSlot] = []
        for raw in entry.get("busy") or []:
            if not isinstance(raw, dict):
                continue
            try:
                busy.append(
                    TimeSlot(parse_google_datetime(raw["start"]), parse_google_datetime(raw["end"]))
                )
            except (KeyError, TypeError, ValueError):
                logger.debug("Skipping malformed busy interval: %r", raw)

        merged = merge_intervals(busy)
        return CalendarAvailability(
            calendar_id=calendar_id,
            time_min=start,
            time_max=end,
            duration_minutes=duration,
            busy=merged,
            free_slots=compute_free_slots(merged, start, end, duration),
        )

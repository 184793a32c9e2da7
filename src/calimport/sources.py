"""Google Calendar source: fetch one calendar's events for a window.

``CalendarSource.fetch`` is the read boundary of the import: it never raises.
Missing credentials, 404s, transport failures, and timeouts all come back as a
``FetchResult`` whose ``error`` is a user-facing string. The single-event
helpers used by create/edit flows (``get_event``, ``create_event``,
``update_event``) raise :mod:`calimport.errors` exceptions instead.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import re
from datetime import UTC, date, datetime
from typing import Any
from urllib.parse import quote

import httpx

from calimport.errors import (
    CalendarAuthError,
    CalendarError,
    CalendarNotFoundError,
    CalendarTransportError,
    upstream_error_message,
)
from calimport.models import (
    Attendee,
    AttendeeResponseStatus,
    Event,
    EventBoundary,
    EventDraft,
    EventVisibility,
    FetchResult,
    SourceSpec,
    TimeWindow,
    Transparency,
)
from calimport.tokens import TokenCache

logger = logging.getLogger(__name__)

GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
GCAL_EVENT_URL = "https://www.google.com/calendar/event?eid="
GCAL_EVENT_REGEX = re.compile(re.escape(GCAL_EVENT_URL) + r"(\w*)")
NOT_FOUND_MESSAGE = "Could not find calendar or it's not public."
DEFAULT_REQUEST_TIMEOUT_SECONDS = 30.0
MAX_RESULTS_PER_PAGE = 250


def must_authenticate_message(account_label: str) -> str:
    return f"Error: must authenticate for {account_label}"


def _google_rfc3339(value: datetime) -> str:
    return value.astimezone(UTC).isoformat().replace("+00:00", "Z")


def _parse_google_datetime(value: str) -> datetime:
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise ValueError(f"Google Calendar returned an invalid dateTime: {value}") from exc
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def _text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _parse_boundary(payload: Any) -> EventBoundary:
    if not isinstance(payload, dict):
        return EventBoundary()

    date_time = payload.get("dateTime")
    if isinstance(date_time, str) and date_time.strip():
        return EventBoundary(date_time=_parse_google_datetime(date_time))

    day = payload.get("date")
    if isinstance(day, str) and day.strip():
        try:
            return EventBoundary(day=date.fromisoformat(day.strip()))
        except ValueError as exc:
            raise ValueError(f"Google Calendar returned an invalid date value: {day}") from exc
    return EventBoundary()


def _parse_attendees(payload: Any) -> list[Attendee]:
    if not isinstance(payload, list):
        return []

    attendees: list[Attendee] = []
    for entry in payload:
        if not isinstance(entry, dict):
            continue
        email = _text(entry.get("email"))
        if not email:
            continue

        response_status = None
        response_status_raw = entry.get("responseStatus")
        if isinstance(response_status_raw, str):
            try:
                response_status = AttendeeResponseStatus(response_status_raw.strip())
            except ValueError:
                pass

        attendees.append(
            Attendee(
                email=email,
                display_name=_text(entry.get("displayName")) or None,
                self_=entry.get("self") is True,
                response_status=response_status,
            )
        )
    return attendees


def _parse_visibility(value: Any) -> EventVisibility | None:
    if not isinstance(value, str):
        return None
    try:
        return EventVisibility(value.strip().lower())
    except ValueError:
        return None


def google_event_to_event(payload: dict[str, Any], *, calendar_id: str = "") -> Event | None:
    """Convert a Google Calendar event resource; cancelled events map to ``None``."""
    if _text(payload.get("status")).lower() == "cancelled":
        return None

    transparency = (
        Transparency.transparent
        if _text(payload.get("transparency")).lower() == Transparency.transparent
        else Transparency.opaque
    )
    return Event(
        event_id=_text(payload.get("id")),
        ical_uid=_text(payload.get("iCalUID")) or None,
        summary=_text(payload.get("summary")),
        description=_text(payload.get("description")),
        location=_text(payload.get("location")),
        html_link=_text(payload.get("htmlLink")),
        hangout_link=_text(payload.get("hangoutLink")),
        transparency=transparency,
        visibility=_parse_visibility(payload.get("visibility")),
        start=_parse_boundary(payload.get("start")),
        end=_parse_boundary(payload.get("end")),
        attendees=_parse_attendees(payload.get("attendees")),
        calendar_id=calendar_id,
    )


def event_id_from_link(text: str) -> str | None:
    """Return the event id encoded in a Google Calendar event link inside ``text``.

    The ``eid`` query value is base64 of ``"<event id> <calendar id>"``.
    """
    match = GCAL_EVENT_REGEX.search(text)
    if match is None or not match.group(1):
        return None
    eid = match.group(1)
    try:
        decoded = base64.b64decode(eid + "=" * (-len(eid) % 4)).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return None
    event_id = decoded.split(" ")[0]
    return event_id or None


class CalendarSource:
    """Reads and writes Google Calendar events for configured sources."""

    def __init__(
        self,
        tokens: TokenCache,
        http_client: httpx.AsyncClient,
        *,
        base_url: str = GOOGLE_CALENDAR_API_BASE_URL,
    ) -> None:
        self._tokens = tokens
        self._http_client = http_client
        self._base_url = base_url.rstrip("/")

    async def fetch(self, spec: SourceSpec, window: TimeWindow) -> FetchResult:
        """Fetch all single-instance events of ``spec`` that fall in ``window``."""
        try:
            token = await self._tokens.get_access_token(spec.account_label)
        except CalendarError as exc:
            logger.warning("Token lookup failed for %s: %s", spec, exc)
            token = ""
        if not token:
            return FetchResult(source=spec, error=must_authenticate_message(spec.account_label))

        try:
            events = await self._list_events(spec, window)
        except CalendarNotFoundError:
            error = f"Error for calendar {spec.calendar_id}: {NOT_FOUND_MESSAGE}"
        except CalendarAuthError:
            error = must_authenticate_message(spec.account_label)
        except CalendarTransportError as exc:
            if exc.message:
                error = f"Error for calendar {spec.calendar_id}: {exc.message}"
            else:
                error = f"Error for calendar {spec.calendar_id}"
        except CalendarError:
            error = f"Error for calendar {spec.calendar_id}"
        else:
            logger.debug("Fetched %d event(s) from %s", len(events), spec)
            return FetchResult(source=spec, events=events)

        logger.warning("Fetch failed for %s: %s", spec, error)
        return FetchResult(source=spec, error=error)

    async def _list_events(self, spec: SourceSpec, window: TimeWindow) -> list[Event]:
        path = f"/calendars/{quote(spec.calendar_id, safe='')}/events"
        params: dict[str, Any] = {
            "timeMin": _google_rfc3339(window.start),
            "timeMax": _google_rfc3339(window.end),
            "orderBy": "startTime",
            "singleEvents": True,
            "maxResults": MAX_RESULTS_PER_PAGE,
        }

        events: list[Event] = []
        while True:
            payload = await self._request_json(
                "GET", path, spec=spec, params=params, not_found=spec.calendar_id
            )
            items = payload.get("items")
            if not isinstance(items, list):
                raise CalendarTransportError(
                    status_code=None, message="Google Calendar response missing items array"
                )
            for item in items:
                if not isinstance(item, dict):
                    continue
                try:
                    event = google_event_to_event(item)
                except ValueError as exc:
                    logger.warning("Skipping invalid event %s: %s", item.get("id"), exc)
                    continue
                if event is not None:
                    events.append(event)

            page_token = payload.get("nextPageToken")
            if not isinstance(page_token, str) or not page_token:
                return events
            params = {**params, "pageToken": page_token}

    async def get_event(self, spec: SourceSpec, event_id: str) -> Event | None:
        """Fetch one event, or ``None`` when the calendar does not have it."""
        path = self._event_path(spec, event_id)
        try:
            payload = await self._request_json("GET", path, spec=spec, not_found=event_id)
        except CalendarNotFoundError:
            return None
        return google_event_to_event(payload, calendar_id=spec.calendar_id)

    async def create_event(self, spec: SourceSpec, draft: EventDraft) -> Event:
        path = f"/calendars/{quote(spec.calendar_id, safe='')}/events"
        payload = await self._request_json(
            "POST", path, spec=spec, json_body=draft.to_google_body(), not_found=spec.calendar_id
        )
        return self._written_event(payload, spec)

    async def update_event(self, spec: SourceSpec, event_id: str, draft: EventDraft) -> Event:
        path = self._event_path(spec, event_id)
        payload = await self._request_json(
            "PUT", path, spec=spec, json_body=draft.to_google_body(), not_found=event_id
        )
        return self._written_event(payload, spec)

    async def find_event_owner(
        self, specs: list[SourceSpec], event_id: str
    ) -> tuple[SourceSpec, Event] | None:
        """Probe every source for ``event_id``; the first match in ``specs`` order wins."""
        results = await asyncio.gather(
            *(self.get_event(spec, event_id) for spec in specs),
            return_exceptions=True,
        )
        for spec, result in zip(specs, results, strict=True):
            if isinstance(result, CalendarError):
                logger.debug("Event lookup in %s failed: %s", spec, result)
                continue
            if isinstance(result, BaseException):
                raise result
            if result is not None:
                return spec, result
        return None

    def _event_path(self, spec: SourceSpec, event_id: str) -> str:
        normalized_event_id = event_id.strip()
        if not normalized_event_id:
            raise ValueError("event_id must be a non-empty string")
        return (
            f"/calendars/{quote(spec.calendar_id, safe='')}"
            f"/events/{quote(normalized_event_id, safe='')}"
        )

    def _written_event(self, payload: dict[str, Any], spec: SourceSpec) -> Event:
        event = google_event_to_event(payload, calendar_id=spec.calendar_id)
        if event is None:
            raise CalendarTransportError(
                status_code=None, message="Google Calendar returned a cancelled event after write"
            )
        return event

    async def _request_json(
        self,
        method: str,
        path: str,
        *,
        spec: SourceSpec,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
        not_found: str,
    ) -> dict[str, Any]:
        url = f"{self._base_url}{path}"
        response = await self._request_once(method, url, spec, params, json_body, False)
        if response.status_code == 401:
            response = await self._request_once(method, url, spec, params, json_body, True)

        if response.status_code == 404:
            raise CalendarNotFoundError(not_found, upstream_error_message(response) or "")
        if response.status_code == 401:
            raise CalendarAuthError(must_authenticate_message(spec.account_label))
        if response.status_code < 200 or response.status_code >= 300:
            raise CalendarTransportError(
                status_code=response.status_code,
                message=upstream_error_message(response) or "",
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise CalendarTransportError(
                status_code=response.status_code,
                message="Google Calendar API returned invalid JSON",
            ) from exc
        if not isinstance(payload, dict):
            raise CalendarTransportError(
                status_code=response.status_code,
                message="Google Calendar API returned an unexpected JSON payload shape",
            )
        return payload

    async def _request_once(
        self,
        method: str,
        url: str,
        spec: SourceSpec,
        params: dict[str, Any] | None,
        json_body: dict[str, Any] | None,
        force_refresh: bool,
    ) -> httpx.Response:
        token = await self._tokens.get_access_token(
            spec.account_label, force_refresh=force_refresh
        )
        if not token:
            raise CalendarAuthError(must_authenticate_message(spec.account_label))
        try:
            return await self._http_client.request(
                method,
                url,
                params=params,
                json=json_body,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.TimeoutException as exc:
            raise CalendarTransportError(status_code=None, message="Request timed out") from exc
        except httpx.HTTPError as exc:
            raise CalendarTransportError(status_code=None, message=str(exc)) from exc

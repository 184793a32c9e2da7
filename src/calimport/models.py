"""Data model shared by the token cache, sources, aggregator, and templates."""

from __future__ import annotations

from datetime import date, datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

DEFAULT_ACCOUNT_LABEL = "default"


class Transparency(StrEnum):
    """Whether an event blocks time (``opaque``) or shows as free."""

    opaque = "opaque"
    transparent = "transparent"


class EventVisibility(StrEnum):
    """Event visibility levels as reported by Google Calendar."""

    default = "default"
    public = "public"
    private = "private"
    confidential = "confidential"


class AttendeeResponseStatus(StrEnum):
    """RSVP response status for a calendar event attendee."""

    needs_action = "needsAction"
    accepted = "accepted"
    declined = "declined"
    tentative = "tentative"


class Credential(BaseModel):
    """Cached OAuth credential for one account label.

    ``issued_at + expires_in_seconds`` is the authoritative expiry instant. A
    credential without a ``refresh_token`` cannot refresh itself once expired.
    """

    model_config = ConfigDict(frozen=True)

    account_label: str = DEFAULT_ACCOUNT_LABEL
    access_token: str
    expires_in_seconds: int = 3600
    refresh_token: str | None = None
    issued_at: datetime

    @field_validator("issued_at")
    @classmethod
    def _require_aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            raise ValueError("issued_at must be timezone-aware")
        return value

    def is_expired(self, now: datetime) -> bool:
        return (now - self.issued_at).total_seconds() > self.expires_in_seconds


class SourceSpec(BaseModel):
    """One (account, calendar id) pair to query."""

    model_config = ConfigDict(frozen=True)

    calendar_id: str = Field(min_length=1)
    account_label: str = DEFAULT_ACCOUNT_LABEL

    def __str__(self) -> str:
        if self.account_label == DEFAULT_ACCOUNT_LABEL:
            return self.calendar_id
        return f"{self.calendar_id} ({self.account_label})"


class TimeWindow(BaseModel):
    """Half-open fetch window ``[start, end)``."""

    model_config = ConfigDict(frozen=True)

    start: datetime
    end: datetime

    @model_validator(mode="after")
    def _check_order(self) -> TimeWindow:
        if self.start.tzinfo is None or self.end.tzinfo is None:
            raise ValueError("window boundaries must be timezone-aware")
        if self.end <= self.start:
            raise ValueError("window end must be after window start")
        return self


class Attendee(BaseModel):
    model_config = ConfigDict(frozen=True)

    email: str
    display_name: str | None = None
    self_: bool = False
    response_status: AttendeeResponseStatus | None = None

    @property
    def label(self) -> str:
        return self.display_name or self.email


class EventBoundary(BaseModel):
    """Start or end of an event: a ``date_time`` instant, or all-day (``day`` only)."""

    model_config = ConfigDict(frozen=True)

    date_time: datetime | None = None
    day: date | None = None

    @property
    def is_all_day(self) -> bool:
        return self.date_time is None


class Event(BaseModel):
    """A single calendar event as fetched for one import run."""

    model_config = ConfigDict(frozen=True)

    event_id: str = ""
    ical_uid: str | None = None
    summary: str = ""
    description: str = ""
    location: str = ""
    html_link: str = ""
    hangout_link: str = ""
    transparency: Transparency = Transparency.opaque
    visibility: EventVisibility | None = None
    start: EventBoundary = Field(default_factory=EventBoundary)
    end: EventBoundary = Field(default_factory=EventBoundary)
    attendees: list[Attendee] = Field(default_factory=list)
    # Set by the aggregator, never by the API payload.
    calendar_id: str = ""

    @property
    def identity(self) -> str:
        return self.ical_uid or self.event_id

    def declined_by_self(self) -> bool:
        return any(
            attendee.self_ and attendee.response_status == AttendeeResponseStatus.declined
            for attendee in self.attendees
        )


class FetchResult(BaseModel):
    """Outcome of fetching one source; ``error`` and ``events`` may both be empty."""

    model_config = ConfigDict(frozen=True)

    source: SourceSpec
    events: list[Event] = Field(default_factory=list)
    error: str | None = None


class AggregateResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    events: list[Event] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)


class TemplateNode(BaseModel):
    """Recursive template: text with placeholders plus ordered children."""

    model_config = ConfigDict(frozen=True)

    text: str = ""
    children: list[TemplateNode] = Field(default_factory=list)


class OutputNode(BaseModel):
    """Fully substituted text node ready for the write collaborator."""

    model_config = ConfigDict(frozen=True)

    text: str
    children: list[OutputNode] = Field(default_factory=list)


class EventDraft(BaseModel):
    """Body for creating or updating a single event."""

    summary: str = "No Summary"
    description: str = ""
    location: str = ""
    start: datetime
    end: datetime

    @model_validator(mode="after")
    def _check_order(self) -> EventDraft:
        if self.end < self.start:
            raise ValueError("event end must not be before event start")
        return self

    def to_google_body(self) -> dict[str, object]:
        return {
            "summary": self.summary,
            "description": self.description,
            "location": self.location,
            "start": {"dateTime": _rfc3339(self.start)},
            "end": {"dateTime": _rfc3339(self.end)},
        }


def _rfc3339(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.astimezone()
    return value.isoformat()

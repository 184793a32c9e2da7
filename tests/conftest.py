"""Shared fixtures for the calimport test suite."""

from __future__ import annotations

from datetime import UTC, date, datetime
from typing import Any

import httpx
import pytest

from calimport.models import Credential, Event, EventBoundary, FetchResult, SourceSpec, TimeWindow

ISSUED_AT = datetime(2026, 10, 19, 8, 0, tzinfo=UTC)


def make_event(
    summary: str = "Standup",
    *,
    start: datetime | None = None,
    end: datetime | None = None,
    all_day: date | None = None,
    **fields: Any,
) -> Event:
    """Build an ``Event`` with sensible timed defaults on 2026-10-19 (UTC)."""
    if all_day is not None:
        start_boundary = EventBoundary(day=all_day)
        end_boundary = EventBoundary(day=all_day)
    else:
        start = start or datetime(2026, 10, 19, 9, 0, tzinfo=UTC)
        end = end or datetime(2026, 10, 19, 9, 30, tzinfo=UTC)
        start_boundary = EventBoundary(date_time=start)
        end_boundary = EventBoundary(date_time=end)
    return Event(summary=summary, start=start_boundary, end=end_boundary, **fields)


def make_credential(
    label: str = "default",
    *,
    access_token: str = "access-1",
    refresh_token: str | None = "refresh-1",
    expires_in_seconds: int = 3600,
    issued_at: datetime = ISSUED_AT,
) -> Credential:
    return Credential(
        account_label=label,
        access_token=access_token,
        refresh_token=refresh_token,
        expires_in_seconds=expires_in_seconds,
        issued_at=issued_at,
    )


def mock_response(
    *,
    status_code: int,
    url: str,
    method: str = "GET",
    json_body: Any = None,
    text: str = "",
) -> httpx.Response:
    request = httpx.Request(method, url)
    if json_body is not None:
        return httpx.Response(status_code=status_code, json=json_body, request=request)
    return httpx.Response(status_code=status_code, text=text, request=request)


class StubFetcher:
    """EventFetcher returning canned results per calendar id."""

    def __init__(self, results: dict[str, FetchResult]) -> None:
        self.results = results
        self.calls: list[tuple[SourceSpec, TimeWindow]] = []

    async def fetch(self, spec: SourceSpec, window: TimeWindow) -> FetchResult:
        self.calls.append((spec, window))
        return self.results.get(spec.calendar_id, FetchResult(source=spec))


@pytest.fixture
def window() -> TimeWindow:
    return TimeWindow(
        start=datetime(2026, 10, 19, tzinfo=UTC),
        end=datetime(2026, 10, 20, tzinfo=UTC),
    )

"""Tests for merging per-source fetch results into one ordered event list."""

from __future__ import annotations

import asyncio
import itertools
from datetime import UTC, date, datetime
from zoneinfo import ZoneInfo

import httpx
import pytest

from calimport.aggregator import Aggregator, event_sort_key, merge_results
from calimport.models import (
    Attendee,
    AttendeeResponseStatus,
    FetchResult,
    SourceSpec,
    TimeWindow,
    Transparency,
)
from calimport.sources import CalendarSource
from calimport.storage import JsonFileCredentialStore
from calimport.tokens import TokenCache
from conftest import StubFetcher, make_event

pytestmark = pytest.mark.unit

_A = SourceSpec(calendar_id="a@example.com")
_B = SourceSpec(calendar_id="b@example.com")
_C = SourceSpec(calendar_id="c@example.com", account_label="work")


def _at(hour: int, minute: int = 0) -> datetime:
    return datetime(2026, 10, 19, hour, minute, tzinfo=UTC)


def _summaries(result) -> list[str]:
    return [event.summary for event in result.events]


# ============================================================================
# Ordering
# ============================================================================


class TestOrdering:
    def test_all_day_events_come_first(self):
        results = [
            FetchResult(
                source=_A,
                events=[
                    make_event("Late", start=_at(15), end=_at(16)),
                    make_event("Holiday", all_day=date(2026, 10, 19)),
                    make_event("Early", start=_at(8), end=_at(9)),
                ],
            )
        ]
        assert _summaries(merge_results(results)) == ["Holiday", "Early", "Late"]

    def test_same_start_orders_by_summary(self):
        results = [
            FetchResult(
                source=_A,
                events=[
                    make_event("Banana", event_id="1", start=_at(9)),
                    make_event("apple", event_id="2", start=_at(9)),
                    make_event("Cherry", event_id="3", start=_at(9)),
                ],
            )
        ]
        assert _summaries(merge_results(results)) == ["apple", "Banana", "Cherry"]

    def test_case_only_breaks_summary_ties(self):
        results = [
            FetchResult(
                source=_A,
                events=[
                    make_event("Apple", event_id="1", start=_at(9)),
                    make_event("apple", event_id="2", start=_at(9)),
                ],
            )
        ]
        assert _summaries(merge_results(results)) == ["apple", "Apple"]

    def test_instants_compared_across_zones(self):
        berlin = datetime(2026, 10, 19, 10, 0, tzinfo=ZoneInfo("Europe/Berlin"))  # 08:00 UTC
        results = [
            FetchResult(source=_A, events=[make_event("Utc nine", event_id="1", start=_at(9), end=_at(10))]),
            FetchResult(
                source=_B,
                events=[make_event("Berlin ten", event_id="2", start=berlin, end=_at(9))],
            ),
        ]
        assert _summaries(merge_results(results)) == ["Berlin ten", "Utc nine"]

    def test_order_is_independent_of_arrival_order(self):
        results = [
            FetchResult(source=_A, events=[make_event("Sync", event_id="a1", start=_at(10))]),
            FetchResult(source=_B, events=[make_event("Sync", event_id="b1", start=_at(10))]),
            FetchResult(source=_C, events=[make_event("Review", event_id="c1", start=_at(9))]),
        ]
        orders = {
            tuple((e.calendar_id, e.event_id) for e in merge_results(permutation).events)
            for permutation in itertools.permutations(results)
        }
        assert len(orders) == 1

    def test_sort_key_ties_broken_by_calendar_then_id(self):
        first = make_event("Same", event_id="x", calendar_id="a")
        second = make_event("Same", event_id="x", calendar_id="b")
        assert event_sort_key(first) < event_sort_key(second)


# ============================================================================
# Tagging and dedupe
# ============================================================================


class TestTaggingAndDedupe:
    def test_events_tagged_with_source_calendar(self):
        results = [
            FetchResult(source=_A, events=[make_event("One", event_id="1")]),
            FetchResult(source=_C, events=[make_event("Two", event_id="2", start=_at(10))]),
        ]
        merged = merge_results(results)
        assert [e.calendar_id for e in merged.events] == ["a@example.com", "c@example.com"]

    def test_duplicate_ical_uid_kept_once(self):
        shared = {"ical_uid": "meeting@google.com"}
        results = [
            FetchResult(source=_B, events=[make_event("Sync", event_id="b-copy", **shared)]),
            FetchResult(source=_A, events=[make_event("Sync", event_id="a-copy", **shared)]),
        ]
        merged = merge_results(results)
        assert len(merged.events) == 1
        assert merged.events[0].calendar_id == "a@example.com"

    def test_events_without_identity_are_never_collapsed(self):
        results = [FetchResult(source=_A, events=[make_event("Blank"), make_event("Blank")])]
        assert len(merge_results(results).events) == 2


# ============================================================================
# Filters
# ============================================================================


class TestFilters:
    def test_skip_free_drops_transparent_events(self):
        results = [
            FetchResult(
                source=_A,
                events=[
                    make_event("Busy", event_id="1"),
                    make_event("Free", event_id="2", transparency=Transparency.transparent),
                ],
            )
        ]
        assert _summaries(merge_results(results, skip_free=True)) == ["Busy"]
        assert _summaries(merge_results(results, skip_free=False)) == ["Busy", "Free"]

    def test_declined_events_always_dropped(self):
        declined = Attendee(
            email="me@x.com", self_=True, response_status=AttendeeResponseStatus.declined
        )
        results = [
            FetchResult(
                source=_A,
                events=[
                    make_event("Going", event_id="1"),
                    make_event("Skipping", event_id="2", attendees=[declined]),
                ],
            )
        ]
        assert _summaries(merge_results(results)) == ["Going"]

    def test_filter_matches_summary_or_description(self):
        results = [
            FetchResult(
                source=_A,
                events=[
                    make_event("Deep work", event_id="1", start=_at(8)),
                    make_event("1:1", event_id="2", start=_at(9), description="focus: planning"),
                    make_event("Lunch", event_id="3", start=_at(12)),
                ],
            )
        ]
        merged = merge_results(results, filter_pattern=r"(?i)deep|focus")
        assert _summaries(merged) == ["Deep work", "1:1"]

    def test_blank_filter_keeps_everything(self):
        results = [FetchResult(source=_A, events=[make_event("Lunch", event_id="1")])]
        assert _summaries(merge_results(results, filter_pattern="  ")) == ["Lunch"]


# ============================================================================
# Errors
# ============================================================================


class TestErrors:
    def test_errors_kept_in_source_order(self):
        results = [
            FetchResult(source=_A, error="Error for calendar a@example.com"),
            FetchResult(source=_B, events=[make_event("Kept", event_id="1")]),
            FetchResult(source=_C, error="Error: must authenticate for work"),
        ]
        merged = merge_results(results)
        assert _summaries(merged) == ["Kept"]
        assert merged.errors == ["Error for calendar a@example.com", "Error: must authenticate for work"]

    def test_errors_survive_when_everything_is_filtered(self):
        results = [
            FetchResult(source=_A, events=[make_event("Lunch", event_id="1")]),
            FetchResult(source=_B, error="Error for calendar b@example.com"),
        ]
        merged = merge_results(results, filter_pattern="nothing-matches")
        assert merged.events == []
        assert merged.errors == ["Error for calendar b@example.com"]


# ============================================================================
# Aggregator.run
# ============================================================================


class TestAggregatorRun:
    async def test_fetches_every_source_with_window(self, window):
        fetcher = StubFetcher(
            {
                "a@example.com": FetchResult(source=_A, events=[make_event("A", event_id="1", start=_at(11))]),
                "b@example.com": FetchResult(source=_B, events=[make_event("B", event_id="2", start=_at(10))]),
            }
        )
        result = await Aggregator(fetcher).run([_A, _B], window)

        assert _summaries(result) == ["B", "A"]
        assert [spec for spec, _ in fetcher.calls] == [_A, _B]
        assert all(w == window for _, w in fetcher.calls)

    async def test_slow_source_does_not_change_order(self, window):
        class _SlowFirst(StubFetcher):
            async def fetch(self, spec: SourceSpec, window: TimeWindow) -> FetchResult:
                if spec == _A:
                    await asyncio.sleep(0.01)
                return await super().fetch(spec, window)

        fetcher = _SlowFirst(
            {
                "a@example.com": FetchResult(source=_A, events=[make_event("Same", event_id="1")]),
                "b@example.com": FetchResult(source=_B, events=[make_event("Same", event_id="2")]),
            }
        )
        result = await Aggregator(fetcher).run([_A, _B], window)
        assert [e.calendar_id for e in result.events] == ["a@example.com", "b@example.com"]

    async def test_applies_configured_filters(self, window):
        fetcher = StubFetcher(
            {
                "a@example.com": FetchResult(
                    source=_A,
                    events=[
                        make_event("Focus", event_id="1"),
                        make_event("Free", event_id="2", transparency=Transparency.transparent),
                        make_event("Lunch", event_id="3"),
                    ],
                )
            }
        )
        result = await Aggregator(fetcher, skip_free=True, filter_pattern="Focus|Free").run([_A], window)
        assert _summaries(result) == ["Focus"]

    async def test_unreadable_credentials_do_not_abort_run(self, tmp_path, window):
        path = tmp_path / "credentials.json"
        path.write_bytes(b'{"default": "\xff\xfe"}')
        transport = httpx.MockTransport(lambda request: httpx.Response(500))
        async with httpx.AsyncClient(transport=transport) as client:
            source = CalendarSource(TokenCache(JsonFileCredentialStore(path), client), client)
            result = await Aggregator(source).run([_A, _C], window)

        assert result.events == []
        assert result.errors == [
            "Error: must authenticate for default",
            "Error: must authenticate for work",
        ]


# ============================================================================
# Splitting sources
# ============================================================================


def _first_per_identity(events) -> list[tuple[str, str]]:
    seen: set[str] = set()
    kept = []
    for event in sorted(events, key=event_sort_key):
        if event.identity in seen:
            continue
        seen.add(event.identity)
        kept.append((event.calendar_id, event.event_id))
    return kept


class TestSplitSources:
    """Aggregating halves of the source list and combining them matches one full run.

    The same meeting on two calendars is collapsed on each side independently,
    so the halves are combined by re-sorting and keeping the first copy of each
    identity. The surviving copy is the same one a full run keeps.
    """

    _RESULTS = {
        "a@example.com": FetchResult(
            source=_A,
            events=[
                make_event("Sync", event_id="a-sync", ical_uid="sync@google.com", start=_at(10)),
                make_event("Focus", event_id="a-focus", start=_at(8)),
            ],
        ),
        "b@example.com": FetchResult(
            source=_B,
            events=[
                make_event("Sync", event_id="b-sync", ical_uid="sync@google.com", start=_at(10)),
                make_event("Holiday", event_id="b-day", all_day=date(2026, 10, 19)),
            ],
        ),
        "c@example.com": FetchResult(
            source=_C,
            events=[make_event("lunch", event_id="c-lunch", start=_at(12))],
            error="Error for calendar c@example.com",
        ),
    }

    @pytest.mark.parametrize("split", [1, 2])
    async def test_halves_combine_to_full_run(self, window, split):
        specs = [_A, _B, _C]
        aggregator = Aggregator(StubFetcher(self._RESULTS))

        full = await aggregator.run(specs, window)
        left = await aggregator.run(specs[:split], window)
        right = await aggregator.run(specs[split:], window)

        combined = _first_per_identity(left.events + right.events)
        assert combined == [(e.calendar_id, e.event_id) for e in full.events]
        assert {e.identity for e in full.events} == {
            e.identity for e in left.events + right.events
        }
        assert left.errors + right.errors == full.errors

"""Fan-out over configured sources, then merge, sort, dedupe, and filter.

Order of operations in :func:`merge_results`:

1. tag every event with the calendar id of the source it came from
2. sort with :func:`event_sort_key` (all-day first, then start instant, then summary)
3. collapse events sharing an identity (``iCalUID`` or id) to the first one
4. drop free (``transparent``) events when ``skip_free`` is set
5. drop events the caller declined
6. keep only events whose summary or description matches ``filter_pattern``

Errors are collected in source order and returned even when no event survives.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Protocol

from calimport.models import AggregateResult, Event, FetchResult, SourceSpec, TimeWindow, Transparency

logger = logging.getLogger(__name__)

_ALL_DAY_INSTANT = datetime.min.replace(tzinfo=UTC)


class EventFetcher(Protocol):
    async def fetch(self, spec: SourceSpec, window: TimeWindow) -> FetchResult: ...


def event_sort_key(event: Event) -> tuple[int, datetime, str, str, str, str]:
    """Total order: all-day events first, then by start instant, then by summary.

    Summaries compare the way a locale collator does: ignoring case first, then
    lowercase ahead of uppercase.

    Calendar id and event id only break ties between otherwise identical
    events so that the merged order never depends on response arrival order.
    """
    start = event.start.date_time
    summary = (event.summary.casefold(), event.summary.swapcase())
    if start is None:
        return (0, _ALL_DAY_INSTANT, *summary, event.calendar_id, event.event_id)
    return (1, start, *summary, event.calendar_id, event.event_id)


def _compile_filter(filter_pattern: str | re.Pattern[str] | None) -> re.Pattern[str] | None:
    if filter_pattern is None or isinstance(filter_pattern, re.Pattern):
        return filter_pattern
    if not filter_pattern.strip():
        return None
    return re.compile(filter_pattern)


def merge_results(
    results: Iterable[FetchResult],
    *,
    skip_free: bool = False,
    filter_pattern: str | re.Pattern[str] | None = None,
) -> AggregateResult:
    pattern = _compile_filter(filter_pattern)
    tagged: list[Event] = []
    errors: list[str] = []
    for result in results:
        tagged.extend(
            event.model_copy(update={"calendar_id": result.source.calendar_id})
            for event in result.events
        )
        if result.error:
            errors.append(result.error)

    ordered = sorted(tagged, key=event_sort_key)

    seen: set[str] = set()
    unique: list[Event] = []
    for event in ordered:
        identity = event.identity
        if identity:
            if identity in seen:
                continue
            seen.add(identity)
        unique.append(event)

    kept = unique
    if skip_free:
        kept = [event for event in kept if event.transparency != Transparency.transparent]
    free_dropped = len(unique) - len(kept)

    before_declined = len(kept)
    kept = [event for event in kept if not event.declined_by_self()]
    declined_dropped = before_declined - len(kept)

    before_filter = len(kept)
    if pattern is not None:
        kept = [
            event
            for event in kept
            if pattern.search(event.summary) or pattern.search(event.description)
        ]

    logger.info(
        "Aggregated %d event(s): kept=%d duplicates=%d free=%d declined=%d filtered=%d errors=%d",
        len(tagged),
        len(kept),
        len(tagged) - len(unique),
        free_dropped,
        declined_dropped,
        before_filter - len(kept),
        len(errors),
    )
    return AggregateResult(events=kept, errors=errors)


class Aggregator:
    """Runs every source fetch concurrently and merges what comes back."""

    def __init__(
        self,
        source: EventFetcher,
        *,
        skip_free: bool = False,
        filter_pattern: str | re.Pattern[str] | None = None,
    ) -> None:
        self._source = source
        self._skip_free = skip_free
        self._filter = _compile_filter(filter_pattern)

    async def run(self, specs: list[SourceSpec], window: TimeWindow) -> AggregateResult:
        # fetch() never raises, so gather waits for every source to settle.
        results = await asyncio.gather(*(self._source.fetch(spec, window) for spec in specs))
        return merge_results(results, skip_free=self._skip_free, filter_pattern=self._filter)

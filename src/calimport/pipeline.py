"""Import orchestration: one day of events in, an ordered list of output nodes out.

The list returned by :meth:`ImportPipeline.import_day` is final. It holds one
node per surviving event (in aggregator order) followed by one flat node per
source error; when both are empty it holds exactly the empty-day sentinel.
It is never empty.
"""

from __future__ import annotations

import logging
import re
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from datetime import date, datetime, timedelta, tzinfo
from typing import TYPE_CHECKING, Protocol

import httpx

from calimport.aggregator import Aggregator, EventFetcher
from calimport.core.logging import set_import_context
from calimport.dates import day_window
from calimport.models import Event, EventDraft, OutputNode, SourceSpec, TemplateNode
from calimport.sources import CalendarSource, event_id_from_link
from calimport.storage import CredentialStore, JsonFileCredentialStore
from calimport.templates import EventFormatter, TemplateEngine, with_todo_prefix
from calimport.tokens import TokenCache

if TYPE_CHECKING:
    from calimport.config import ImportConfig

logger = logging.getLogger(__name__)

EMPTY_MESSAGE = "No Events Scheduled for Today!"
NO_SOURCES_MESSAGE = "Error: Could not find a calendar to import."
LOADING_TEXT = "Loading..."
DEFAULT_EVENT_MINUTES = 30

_ATTRIBUTE_LINE = re.compile(r"^\s*(?P<key>[^:]+?)\s*::\s*(?P<value>.*?)\s*$")


class NodeWriter(Protocol):
    """Host document collaborator that stores output nodes."""

    async def create_node(self, parent_ref: str, node: OutputNode, order: int) -> None: ...

    async def update_node(self, ref: str, node: OutputNode) -> None: ...

    async def read_subtree(self, ref: str) -> TemplateNode: ...


class ImportPipeline:
    def __init__(
        self,
        source: EventFetcher,
        *,
        template: TemplateNode | None = None,
        include_link: bool = False,
        skip_free: bool = False,
        filter_pattern: str | None = None,
        add_todo_prefix: bool = False,
        tz: tzinfo | None = None,
    ) -> None:
        template = template or TemplateNode()
        self._template = with_todo_prefix(template) if add_todo_prefix else template
        self._include_link = include_link
        self._engine = TemplateEngine(tz=tz)
        self._aggregator = Aggregator(source, skip_free=skip_free, filter_pattern=filter_pattern)

    @classmethod
    def from_config(cls, config: ImportConfig, source: EventFetcher) -> ImportPipeline:
        return cls(
            source,
            template=config.template,
            include_link=config.include_link,
            skip_free=config.skip_free,
            filter_pattern=config.filter_pattern,
            add_todo_prefix=config.add_todo_prefix,
            tz=config.tz,
        )

    @property
    def engine(self) -> TemplateEngine:
        return self._engine

    async def import_day(
        self,
        sources: Sequence[SourceSpec],
        day: date,
        custom_formatter: EventFormatter | None = None,
    ) -> list[OutputNode]:
        set_import_context(day.isoformat())
        if not sources:
            logger.warning("No calendars configured; nothing to import")
            return [OutputNode(text=NO_SOURCES_MESSAGE)]

        window = day_window(day, self._engine.tz)
        result = await self._aggregator.run(list(sources), window)
        if not result.events and not result.errors:
            return [OutputNode(text=EMPTY_MESSAGE)]

        nodes = [
            self._engine.format(event, self._template, self._include_link, custom_formatter)
            for event in result.events
        ]
        nodes.extend(OutputNode(text=error) for error in result.errors)
        logger.info(
            "Imported %d event node(s) and %d error node(s)",
            len(result.events),
            len(result.errors),
        )
        return nodes


async def push_nodes(
    writer: NodeWriter,
    loading_ref: str,
    parent_ref: str,
    order: int,
    nodes: Sequence[OutputNode],
) -> None:
    """Replace the placeholder at ``loading_ref`` with ``nodes[0]``; add the rest after it."""
    if not nodes:
        raise ValueError("nodes must not be empty")
    await writer.update_node(loading_ref, nodes[0])
    for offset, node in enumerate(nodes[1:], start=1):
        await writer.create_node(parent_ref, node, order + offset)


def _parse_attribute_datetime(key: str, value: str, tz: tzinfo | None) -> datetime:
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as exc:
        raise ValueError(f"{key} must be an ISO-8601 date/time, got {value!r}") from exc
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=tz) if tz is not None else parsed.astimezone()
    return parsed


def event_draft_from_node(
    node: TemplateNode,
    *,
    now: datetime | None = None,
    tz: tzinfo | None = None,
) -> EventDraft:
    """Build an event draft from a node: text is the summary, children are ``key:: value``."""
    attributes: dict[str, str] = {}
    for child in node.children:
        match = _ATTRIBUTE_LINE.match(child.text)
        if match is not None:
            attributes[match.group("key").strip().lower()] = match.group("value")

    start = (
        _parse_attribute_datetime("start", attributes["start"], tz)
        if attributes.get("start")
        else (now or datetime.now(tz).astimezone(tz))
    )
    end = (
        _parse_attribute_datetime("end", attributes["end"], tz)
        if attributes.get("end")
        else start + timedelta(minutes=DEFAULT_EVENT_MINUTES)
    )
    return EventDraft(
        summary=node.text.strip() or "No Summary",
        description=attributes.get("description", ""),
        location=attributes.get("location", ""),
        start=start,
        end=end,
    )


async def locate_linked_event(
    source: CalendarSource,
    sources: Sequence[SourceSpec],
    text: str,
) -> tuple[SourceSpec, Event] | None:
    """Find the configured source owning the event linked from ``text``."""
    event_id = event_id_from_link(text)
    if event_id is None:
        return None
    return await source.find_event_owner(list(sources), event_id)


@asynccontextmanager
async def calendar_session(
    config: ImportConfig,
    *,
    store: CredentialStore | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> AsyncIterator[CalendarSource]:
    """Yield a ``CalendarSource`` wired to a token cache; closes the client it created."""
    owns_client = http_client is None
    client = http_client or httpx.AsyncClient(timeout=config.request_timeout_seconds)
    try:
        tokens = TokenCache(
            store or JsonFileCredentialStore(config.credentials_path),
            client,
            refresh_url=config.refresh_url,
        )
        yield CalendarSource(tokens, client)
    finally:
        if owns_client:
            await client.aclose()

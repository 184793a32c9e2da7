"""Render one event through a template tree into output nodes.

Template text is rewritten by an ordered list of :class:`SubstitutionRule`
objects. Text is kept as segments: literal template text, and text a rule has
already produced. Rules only ever match inside literal segments, so a summary
that happens to contain ``{link}`` is never expanded a second time.

Rules, in application order:

==================  ========================================  ===============
Token               Expands to                                Occurrences
==================  ========================================  ===============
``/Summary``        summary (never linked)                    first only
``/Link``           ``htmlLink``                              first only
``/Hangout``        ``hangoutLink``                           first only
``/Location``       location                                  first only
``/Start Time``     start, default pattern                    first only
``/End Time``       end, default pattern                      first only
``{summary}``       summary, linked when ``include_link``     every
``{link}``          ``htmlLink``                              every
``{hangout}``       ``hangoutLink``                           every
``{confLink}``      `` - [Meet](..)`` then `` - [Zoom](..)``  every
``{location}``      location                                  every
``{attendees:F}``   attendees rendered with ``F``, ``, ``     every
``{start:F}``       start rendered with pattern ``F``         every
``{end:F}``         end rendered with pattern ``F``           every
``{calendar}``      calendar id the event was imported from   every
``{duration}``      minutes from start to end (1440 all-day)  every
``{custom}``        custom formatter output, else unchanged   every
==================  ========================================  ===============

The slash-prefixed tokens are the deprecated first-generation syntax.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import tzinfo
from typing import Protocol

from calimport.dates import format_instant, local_timezone
from calimport.models import Event, EventBoundary, EventVisibility, OutputNode, TemplateNode

logger = logging.getLogger(__name__)

DEFAULT_DATE_FORMAT = "hh:mm a"
DEFAULT_TEMPLATE = "{summary} ({start:hh:mm a} - {end:hh:mm a}){confLink}"
TODO_PREFIX = "{{[[TODO]]}} "
ALL_DAY_TEXT = "All Day"
PRIVATE_SUMMARY = "busy"
EMPTY_SUMMARY = "No Summary"
ALL_DAY_MINUTES = 24 * 60


class EventFormatter(Protocol):
    """Caller-supplied strategy that renders ``{custom}`` for an event."""

    def __call__(self, event: Event) -> str: ...


@dataclass(frozen=True)
class RenderContext:
    event: Event
    include_link: bool
    custom_formatter: EventFormatter | None
    tz: tzinfo


# Returns the replacement text, or None to leave the match unexpanded.
Resolver = Callable[[re.Match[str], RenderContext], str | None]


@dataclass(frozen=True)
class _Segment:
    text: str
    literal: bool


@dataclass(frozen=True)
class SubstitutionRule:
    name: str
    pattern: re.Pattern[str]
    resolve: Resolver
    first_only: bool = False

    def apply(self, segments: list[_Segment], ctx: RenderContext) -> list[_Segment]:
        result: list[_Segment] = []
        done = False
        for segment in segments:
            if done or not segment.literal:
                result.append(segment)
                continue
            position = 0
            for match in self.pattern.finditer(segment.text):
                replacement = self.resolve(match, ctx)
                if match.start() > position:
                    result.append(_Segment(segment.text[position : match.start()], True))
                result.append(
                    _Segment(match.group(0) if replacement is None else replacement, False)
                )
                position = match.end()
                if self.first_only:
                    done = True
                    break
            if position < len(segment.text):
                result.append(_Segment(segment.text[position:], True))
        return result


def _literal_rule(token: str, resolve: Callable[[RenderContext], str]) -> SubstitutionRule:
    return SubstitutionRule(
        name=token,
        pattern=re.compile(re.escape(token)),
        resolve=lambda _match, ctx: resolve(ctx),
        first_only=True,
    )


def _tag_rule(tag: str, resolve: Resolver, *, with_argument: bool = False) -> SubstitutionRule:
    if with_argument:
        pattern = re.compile(r"\{" + re.escape(tag) + r"(?::([^}]*))?\}")
    else:
        pattern = re.compile(r"\{" + re.escape(tag) + r"\}")
    return SubstitutionRule(name=f"{{{tag}}}", pattern=pattern, resolve=resolve)


# ---------------------------------------------------------------------------
# Field resolvers
# ---------------------------------------------------------------------------


def resolve_summary(event: Event) -> str:
    if event.visibility == EventVisibility.private:
        return PRIVATE_SUMMARY
    return event.summary or EMPTY_SUMMARY


def linked_summary(event: Event, include_link: bool) -> str:
    summary = resolve_summary(event)
    if include_link and event.html_link:
        return f"[{summary}]({event.html_link})"
    return summary


def resolve_boundary(boundary: EventBoundary, pattern: str | None, tz: tzinfo) -> str:
    if boundary.date_time is None:
        return ALL_DAY_TEXT
    return format_instant(boundary.date_time.astimezone(tz), pattern or DEFAULT_DATE_FORMAT)


def resolve_attendees(event: Event, pattern: str | None) -> str:
    item_format = pattern or "NAME"
    return ", ".join(item_format.replace("NAME", attendee.label) for attendee in event.attendees)


def resolve_duration(event: Event) -> str:
    start, end = event.start.date_time, event.end.date_time
    if start is None or end is None:
        return str(ALL_DAY_MINUTES)
    # Whole minutes, truncated toward zero.
    return str(int((end - start).total_seconds() / 60))


def resolve_conference_links(event: Event) -> str:
    meet = f" - [Meet]({event.hangout_link})" if event.hangout_link else ""
    zoom = f" - [Zoom]({event.location})" if "zoom.us" in event.location else ""
    return meet + zoom


def _resolve_custom(_match: re.Match[str], ctx: RenderContext) -> str | None:
    if ctx.custom_formatter is None:
        return None
    try:
        return str(ctx.custom_formatter(ctx.event))
    except Exception:
        logger.exception("Custom event formatter failed for event %s", ctx.event.event_id)
        return None


LEGACY_RULES: tuple[SubstitutionRule, ...] = (
    _literal_rule("/Summary", lambda ctx: resolve_summary(ctx.event)),
    _literal_rule("/Link", lambda ctx: ctx.event.html_link),
    _literal_rule("/Hangout", lambda ctx: ctx.event.hangout_link),
    _literal_rule("/Location", lambda ctx: ctx.event.location),
    _literal_rule("/Start Time", lambda ctx: resolve_boundary(ctx.event.start, None, ctx.tz)),
    _literal_rule("/End Time", lambda ctx: resolve_boundary(ctx.event.end, None, ctx.tz)),
)

TAG_RULES: tuple[SubstitutionRule, ...] = (
    _tag_rule("summary", lambda _m, ctx: linked_summary(ctx.event, ctx.include_link)),
    _tag_rule("link", lambda _m, ctx: ctx.event.html_link),
    _tag_rule("hangout", lambda _m, ctx: ctx.event.hangout_link),
    _tag_rule("confLink", lambda _m, ctx: resolve_conference_links(ctx.event)),
    _tag_rule("location", lambda _m, ctx: ctx.event.location),
    _tag_rule(
        "attendees",
        lambda m, ctx: resolve_attendees(ctx.event, m.group(1)),
        with_argument=True,
    ),
    _tag_rule(
        "start",
        lambda m, ctx: resolve_boundary(ctx.event.start, m.group(1), ctx.tz),
        with_argument=True,
    ),
    _tag_rule(
        "end",
        lambda m, ctx: resolve_boundary(ctx.event.end, m.group(1), ctx.tz),
        with_argument=True,
    ),
    _tag_rule("calendar", lambda _m, ctx: ctx.event.calendar_id),
    _tag_rule("duration", lambda _m, ctx: resolve_duration(ctx.event)),
    _tag_rule("custom", _resolve_custom),
)

DEFAULT_RULES: tuple[SubstitutionRule, ...] = LEGACY_RULES + TAG_RULES


def with_todo_prefix(template: TemplateNode) -> TemplateNode:
    """Prepend the TODO marker to the root text (the default template when empty)."""
    root_text = template.text or DEFAULT_TEMPLATE
    return template.model_copy(update={"text": f"{TODO_PREFIX}{root_text}"})


class TemplateEngine:
    """Formats events against template trees. Pure: no I/O, deterministic output.

    Instants are rendered in ``tz`` (the viewer's zone when omitted).
    """

    def __init__(
        self,
        rules: tuple[SubstitutionRule, ...] = DEFAULT_RULES,
        *,
        tz: tzinfo | None = None,
    ) -> None:
        self._rules = rules
        self._tz = tz or local_timezone()

    @property
    def tz(self) -> tzinfo:
        return self._tz

    def render_text(
        self,
        event: Event,
        text: str,
        include_link: bool = False,
        custom_formatter: EventFormatter | None = None,
    ) -> str:
        ctx = RenderContext(
            event=event,
            include_link=include_link,
            custom_formatter=custom_formatter,
            tz=self._tz,
        )
        segments = [_Segment(text, True)]
        for rule in self._rules:
            segments = rule.apply(segments, ctx)
        return "".join(segment.text for segment in segments)

    def format(
        self,
        event: Event,
        template: TemplateNode | str,
        include_link: bool = False,
        custom_formatter: EventFormatter | None = None,
    ) -> OutputNode:
        """Render ``template`` (root text defaults to ``DEFAULT_TEMPLATE``) for ``event``."""
        if isinstance(template, str):
            template = TemplateNode(text=template)
        root = template.model_copy(update={"text": template.text or DEFAULT_TEMPLATE})
        return self._format_node(event, root, include_link, custom_formatter)

    def _format_node(
        self,
        event: Event,
        node: TemplateNode,
        include_link: bool,
        custom_formatter: EventFormatter | None,
    ) -> OutputNode:
        return OutputNode(
            text=self.render_text(event, node.text, include_link, custom_formatter),
            children=[
                self._format_node(event, child, include_link, custom_formatter)
                for child in node.children
            ],
        )

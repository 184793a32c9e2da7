"""Command-line entry points: import a day of calendar events as an outline."""

from __future__ import annotations

import asyncio
import sys
from collections.abc import Sequence
from datetime import date, datetime
from pathlib import Path

import click

from calimport.config import DEFAULT_CONFIG_PATH, ConfigError, ImportConfig, load_config
from calimport.core.logging import configure_logging
from calimport.dates import parse_day
from calimport.errors import CalendarError
from calimport.models import DEFAULT_ACCOUNT_LABEL, EventDraft, OutputNode, SourceSpec, TemplateNode
from calimport.pipeline import (
    ImportPipeline,
    calendar_session,
    event_draft_from_node,
    locate_linked_event,
)

_config_option = click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path),
    default=DEFAULT_CONFIG_PATH,
    show_default=True,
    help="Path to the calimport TOML config",
)


def _load(config_path: Path) -> ImportConfig:
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        click.echo(f"Config error: {exc}", err=True)
        sys.exit(1)
    configure_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_file=config.logging.log_file,
    )
    return config


def render_outline(nodes: Sequence[OutputNode], depth: int = 0) -> list[str]:
    """Flatten output nodes into indented ``- `` bullet lines."""
    lines: list[str] = []
    for node in nodes:
        lines.append(f"{'  ' * depth}- {node.text}")
        lines.extend(render_outline(node.children, depth + 1))
    return lines


@click.group()
@click.version_option(version="0.1.0")
def cli() -> None:
    """Pull calendar events into outline text."""


@cli.command("import-day")
@_config_option
@click.option("--day", "day_text", default=None, help="ISO date or daily-page title")
def import_day(config_path: Path, day_text: str | None) -> None:
    """Print one day's events, formatted with the configured template."""
    config = _load(config_path)
    # An unparsable day falls back to today.
    day = parse_day(day_text) or datetime.now(config.tz).date()
    nodes = asyncio.run(_import_day(config, day))
    click.echo("\n".join(render_outline(nodes)))


async def _import_day(config: ImportConfig, day: date) -> list[OutputNode]:
    async with calendar_session(config) as source:
        pipeline = ImportPipeline.from_config(config, source)
        return await pipeline.import_day(config.sources, day)


@cli.command("add-event")
@_config_option
@click.option("--calendar", "calendar_id", default="primary", show_default=True)
@click.option("--account", default=DEFAULT_ACCOUNT_LABEL, show_default=True)
@click.option("--summary", required=True)
@click.option("--start", default=None, help="ISO-8601 start (default: now)")
@click.option("--end", default=None, help="ISO-8601 end (default: start + 30 minutes)")
@click.option("--description", default="")
@click.option("--location", default="")
def add_event(
    config_path: Path,
    calendar_id: str,
    account: str,
    summary: str,
    start: str | None,
    end: str | None,
    description: str,
    location: str,
) -> None:
    """Create a single event and print its link."""
    config = _load(config_path)
    attributes = {
        "description": description,
        "location": location,
        "start": start,
        "end": end,
    }
    node = TemplateNode(
        text=summary,
        children=[TemplateNode(text=f"{key}:: {value}") for key, value in attributes.items() if value],
    )
    try:
        draft = event_draft_from_node(node, tz=config.tz)
    except ValueError as exc:
        raise click.BadParameter(str(exc)) from exc

    spec = SourceSpec(calendar_id=calendar_id, account_label=account)
    try:
        link = asyncio.run(_create_event(config, spec, draft))
    except CalendarError as exc:
        click.echo(f"Could not create event: {exc}", err=True)
        sys.exit(1)
    click.echo(link)


async def _create_event(config: ImportConfig, spec: SourceSpec, draft: EventDraft) -> str:
    async with calendar_session(config) as source:
        event = await source.create_event(spec, draft)
    return event.html_link


@cli.command("find-event")
@_config_option
@click.argument("text")
def find_event(config_path: Path, text: str) -> None:
    """Report which configured calendar owns the event linked in TEXT."""
    config = _load(config_path)
    match = asyncio.run(_find_event(config, text))
    if match is None:
        click.echo("No configured calendar has this event.")
        sys.exit(1)
    spec, event = match
    click.echo(f"{spec}: {event.summary or 'No Summary'}")


async def _find_event(config: ImportConfig, text: str):
    async with calendar_session(config) as source:
        return await locate_linked_event(source, config.sources, text)


@cli.command("edit-event")
@_config_option
@click.argument("text")
@click.option("--summary", default=None)
@click.option("--start", default=None, help="ISO-8601 start")
@click.option("--end", default=None, help="ISO-8601 end")
@click.option("--description", default=None)
@click.option("--location", default=None)
def edit_event(
    config_path: Path,
    text: str,
    summary: str | None,
    start: str | None,
    end: str | None,
    description: str | None,
    location: str | None,
) -> None:
    """Update the event linked in TEXT; unset options keep their current values."""
    config = _load(config_path)
    changes = {
        "summary": summary,
        "start": start,
        "end": end,
        "description": description,
        "location": location,
    }
    try:
        link = asyncio.run(_edit_event(config, text, changes))
    except ValueError as exc:
        raise click.BadParameter(str(exc)) from exc
    except CalendarError as exc:
        click.echo(f"Could not update event: {exc}", err=True)
        sys.exit(1)
    if link is None:
        click.echo("No configured calendar has this event.")
        sys.exit(1)
    click.echo(link)


async def _edit_event(config: ImportConfig, text: str, changes: dict[str, str | None]) -> str | None:
    async with calendar_session(config) as source:
        match = await locate_linked_event(source, config.sources, text)
        if match is None:
            return None
        spec, event = match
        old_start, old_end = event.start.date_time, event.end.date_time
        current = {
            "description": event.description,
            "location": event.location,
            "start": old_start.isoformat() if old_start else None,
            "end": old_end.isoformat() if old_end else None,
        }
        merged = {key: changes.get(key) or value for key, value in current.items()}
        keep_length = bool(changes.get("start")) and not changes.get("end")
        if keep_length:
            merged["end"] = None
        node = TemplateNode(
            text=changes.get("summary") or event.summary,
            children=[TemplateNode(text=f"{key}:: {value}") for key, value in merged.items() if value],
        )
        draft = event_draft_from_node(node, tz=config.tz)
        if keep_length and old_start and old_end:
            # Moving the start keeps the event's length.
            draft = draft.model_copy(update={"end": draft.start + (old_end - old_start)})
        updated = await source.update_event(spec, event.event_id, draft)
    return updated.html_link


def main() -> None:
    cli()


if __name__ == "__main__":
    main()

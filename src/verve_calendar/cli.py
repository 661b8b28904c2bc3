"""CLI for Verve Calendar — manage events and Google Calendar sync."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import date, datetime
from pathlib import Path
from typing import TypeVar

import click

from verve_calendar import __version__
from verve_calendar.config import ConfigError, VerveConfig, load_config
from verve_calendar.core.logging import configure_logging
from verve_calendar.core.telemetry import init_telemetry
from verve_calendar.errors import CalendarError
from verve_calendar.models import Event
from verve_calendar.remote import GOOGLE_CALENDAR_SCOPES
from verve_calendar.service import CalendarService
from verve_calendar.sync import SyncReport

T = TypeVar("T")

ACCESS_TOKEN_ENV = "VERVE_GOOGLE_ACCESS_TOKEN"


class ClickNotifier:
    """Notifier that prints user messages to the terminal."""

    def info(self, title: str, message: str) -> None:
        click.echo(f"{title}: {message}")

    def error(self, title: str, message: str) -> None:
        click.echo(f"{title}: {message}", err=True)


def _run(config: VerveConfig, operation: Callable[[CalendarService], Awaitable[T]]) -> T:
    """Open the calendar, run *operation*, and wait for background sync to settle."""

    async def _main() -> T:
        service = await CalendarService.open(config.calendar, notifier=ClickNotifier())
        try:
            return await operation(service)
        finally:
            await service.close()

    try:
        return asyncio.run(_main())
    except (CalendarError, ValueError) as exc:
        raise click.ClickException(str(exc)) from exc


def _format_event(event: Event) -> str:
    box = "[x]" if event.completed else "[ ]"
    origin = "  (Google)" if event.google_event_id else ""
    return (
        f"{event.id}  {event.start_time}-{event.end_time}  {box} {event.progress:>3}%  "
        f"{event.title}{origin}"
    )


def _echo_report(report: SyncReport | None) -> None:
    if report is None:
        return
    if report.merge is not None:
        click.echo(
            f"Fetched: {len(report.merge.added)} new, "
            f"{len(report.merge.skipped)} already local, {len(report.merge.adopted)} linked"
        )
    click.echo(f"Pushed: {len(report.push.pushed)}, failed: {len(report.push.failed)}")


def _parse_day(value: datetime | None) -> date:
    return value.date() if value is not None else date.today()


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, path_type=Path),
    default=None,
    help="Path to verve.toml (or a directory containing it)",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None) -> None:
    """Verve Calendar — personal calendar with Google Calendar sync."""
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc

    configure_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_root=Path(config.logging.log_root) if config.logging.log_root else None,
        profile=config.calendar.calendar_id,
    )
    init_telemetry()
    ctx.obj = config


@cli.command()
@click.argument("title")
@click.option("--date", "day", type=click.DateTime(formats=["%Y-%m-%d"]), help="Defaults to today")
@click.option("--start", "start_time", default="09:00", show_default=True, help="HH:MM")
@click.option("--end", "end_time", default="10:00", show_default=True, help="HH:MM")
@click.option("--description", default=None)
@click.pass_obj
def add(
    config: VerveConfig,
    title: str,
    day: datetime | None,
    start_time: str,
    end_time: str,
    description: str | None,
) -> None:
    """Add an event."""

    async def _add(service: CalendarService) -> Event:
        return await service.add_event(
            title=title,
            day=_parse_day(day),
            start_time=start_time,
            end_time=end_time,
            description=description,
        )

    event = _run(config, _add)
    click.echo(f"Added {event.id}: {event.title} on {event.date.isoformat()}")


@cli.command("list")
@click.option("--date", "day", type=click.DateTime(formats=["%Y-%m-%d"]), help="Defaults to today")
@click.pass_obj
def list_cmd(config: VerveConfig, day: datetime | None) -> None:
    """List the events of one day."""
    target = _parse_day(day)

    async def _list(service: CalendarService) -> list[Event]:
        return service.events_for(target)

    events = _run(config, _list)
    click.echo(f"Events for {target:%B} {target.day}, {target.year}")
    if not events:
        click.echo("No events scheduled for this day")
        return
    for event in events:
        click.echo(_format_event(event))


@cli.command()
@click.argument("event_id")
@click.argument("value", type=click.IntRange(0, 100))
@click.pass_obj
def progress(config: VerveConfig, event_id: str, value: int) -> None:
    """Set an event's progress (0-100, steps of 10)."""

    async def _progress(service: CalendarService) -> Event:
        return await service.set_progress(event_id, value)

    event = _run(config, _progress)
    click.echo(_format_event(event))


@cli.command()
@click.argument("event_id")
@click.option("--undo", is_flag=True, help="Mark the event as not complete")
@click.pass_obj
def complete(config: VerveConfig, event_id: str, undo: bool) -> None:
    """Mark an event complete (or reopen it with --undo)."""

    async def _complete(service: CalendarService) -> Event:
        return await service.set_completed(event_id, not undo)

    event = _run(config, _complete)
    click.echo(_format_event(event))


@cli.command()
@click.option(
    "--token",
    envvar=ACCESS_TOKEN_ENV,
    prompt="Google access token",
    hide_input=True,
    help=f"OAuth access token with scopes: {' '.join(GOOGLE_CALENDAR_SCOPES)}",
)
@click.pass_obj
def connect(config: VerveConfig, token: str) -> None:
    """Connect Google Calendar and run the initial sync."""

    async def _connect(service: CalendarService) -> SyncReport | None:
        return await service.connect(token)

    _echo_report(_run(config, _connect))


@cli.command()
@click.pass_obj
def disconnect(config: VerveConfig) -> None:
    """Forget the stored Google token."""

    async def _disconnect(service: CalendarService) -> None:
        await service.disconnect()

    _run(config, _disconnect)


@cli.command()
@click.pass_obj
def sync(config: VerveConfig) -> None:
    """Fetch from and push to Google Calendar now."""

    async def _sync(service: CalendarService) -> SyncReport | None:
        return await service.sync_now()

    _echo_report(_run(config, _sync))


@cli.command()
@click.pass_obj
def status(config: VerveConfig) -> None:
    """Show the sync state and event counts."""

    async def _status(service: CalendarService) -> tuple[str, int, int]:
        events = service.store.all()
        unsynced = len(service.store.unsynced())
        return str(service.sync_state), len(events), unsynced

    state, total, unsynced = _run(config, _status)
    click.echo(f"Google Calendar: {state}")
    click.echo(f"Events: {total} ({unsynced} not yet on Google)")

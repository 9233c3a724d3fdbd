"""Command-line interface for the habits engine."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

import typer

from .config import EngineSettings, MonitorSettings
from .db import SQLiteEventStore
from .models import from_millis, to_millis
from .paths import get_db_path
from .reminders import next_fire_time, schedule_predicate
from .schedule import is_active_at, summarize_schedule
from .server_runner import run_server

app = typer.Typer(help="Local-first presence and screen-habit engine.")

_MINUTE_FORMAT = "%Y-%m-%d %H:%M"


@app.callback(no_args_is_help=True)
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logs.")) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


@app.command()
def summary(
    date: Optional[str] = typer.Option(
        None,
        "--date",
        help="Date (YYYY-MM-DD) to summarize. Defaults to today.",
    ),
    bin_minutes: int = typer.Option(60, "--bin-minutes", min=1, help="Statistics bin width."),
    db_path: Optional[Path] = typer.Option(
        None,
        "--db",
        path_type=Path,
        help="Location of the habits SQLite database.",
    ),
) -> None:
    """Print screen time, pickups, sleep and top apps for a day."""
    from .reporting import SummaryPrinter

    target = _parse_date(date)
    printer = SummaryPrinter(db_path=db_path or get_db_path())
    printer.print_daily_summary(target, bin_size=timedelta(minutes=bin_minutes))


@app.command()
def timeline(
    date: Optional[str] = typer.Option(
        None,
        "--date",
        help="Date (YYYY-MM-DD) to render. Defaults to today.",
    ),
    db_path: Optional[Path] = typer.Option(
        None, "--db", path_type=Path, help="Location of the habits SQLite database."
    ),
) -> None:
    """Print the screen-on periods of a day with the apps used in each."""
    from .reporting import SummaryPrinter

    target = _parse_date(date)
    SummaryPrinter(db_path=db_path or get_db_path()).print_timeline(target)


@app.command("schedule-check")
def schedule_check(
    schedule_id: str = typer.Option(..., "--schedule-id", help="Schedule to evaluate."),
    at: Optional[str] = typer.Option(
        None, "--at", help="Local time (YYYY-MM-DD HH:MM). Defaults to now."
    ),
    db_path: Optional[Path] = typer.Option(
        None, "--db", path_type=Path, help="Location of the habits SQLite database."
    ),
) -> None:
    """Report whether a schedule is active at a given time."""
    instant = _parse_minute(at, "--at") if at else datetime.now()
    store = SQLiteEventStore(db_path or get_db_path())
    try:
        resolved = store.get_schedule(schedule_id)
    finally:
        store.close()
    if not resolved.ok:
        typer.echo(resolved.error.message, err=True)
        raise typer.Exit(code=1)

    schedule = resolved.value
    state = "active" if is_active_at(schedule, to_millis(instant)) else "inactive"
    typer.echo(f"{schedule.name}: {state} at {instant.strftime(_MINUTE_FORMAT)}")
    typer.echo(summarize_schedule(schedule))


@app.command("next-reminder")
def next_reminder(
    last: Optional[str] = typer.Option(
        None, "--last", help="Last fire time (YYYY-MM-DD HH:MM). Defaults to now."
    ),
    interval: int = typer.Option(60, "--interval", help="Reminder interval in minutes."),
    snooze_until: Optional[str] = typer.Option(
        None, "--snooze-until", help="Snooze end (YYYY-MM-DD HH:MM)."
    ),
    schedule_id: Optional[str] = typer.Option(
        None, "--schedule-id", help="Only fire while this schedule is active."
    ),
    db_path: Optional[Path] = typer.Option(
        None, "--db", path_type=Path, help="Location of the habits SQLite database."
    ),
) -> None:
    """Compute when the next reminder is allowed to fire."""
    last_fire = _parse_minute(last, "--last") if last else datetime.now()
    snooze = _parse_minute(snooze_until, "--snooze-until") if snooze_until else None

    store = SQLiteEventStore(db_path or get_db_path())
    try:
        result = next_fire_time(
            to_millis(last_fire),
            interval,
            to_millis(snooze) if snooze else None,
            schedule_predicate(store, schedule_id),
        )
    finally:
        store.close()
    if not result.ok:
        typer.echo(result.error.message, err=True)
        raise typer.Exit(code=1)
    typer.echo(f"Next reminder: {from_millis(result.value).strftime(_MINUTE_FORMAT)}")


@app.command()
def web(
    host: str = typer.Option("127.0.0.1", "--host", help="Interface to bind the service."),
    port: int = typer.Option(
        8765, "--port", min=1, max=65535, help="TCP port for the service."
    ),
    db_path: Optional[Path] = typer.Option(
        None, "--db", path_type=Path, help="Location of the habits SQLite database."
    ),
    inactivity_minutes: float = typer.Option(
        30.0,
        "--inactivity-threshold",
        min=0.5,
        help="Minutes of screen-off time in the bedtime window before SLEEPING.",
    ),
    tick_seconds: float = typer.Option(
        60.0,
        "--tick-interval",
        min=1.0,
        help="Seconds between periodic re-evaluations.",
    ),
    no_bedtime_tracking: bool = typer.Option(
        False, "--no-bedtime-tracking", help="Never leave AWAKE for sleep states."
    ),
    open_browser: bool = typer.Option(
        False,
        "--open-browser/--no-open-browser",
        help="Open the interactive API docs in your default browser.",
    ),
) -> None:
    """Start the HTTP service with the background presence monitor."""
    settings = EngineSettings.from_minutes(
        inactivity_minutes=inactivity_minutes,
        bedtime_tracking_enabled=not no_bedtime_tracking,
    )
    run_server(
        host=host,
        port=port,
        db_path=db_path or get_db_path(),
        settings=settings,
        monitor_settings=MonitorSettings(tick_interval=timedelta(seconds=tick_seconds)),
        open_browser=open_browser,
    )


def _parse_date(value: Optional[str]) -> datetime:
    if not value:
        return datetime.now()
    try:
        return datetime.strptime(value, "%Y-%m-%d")
    except ValueError:
        raise typer.BadParameter("expected YYYY-MM-DD", param_hint="--date") from None


def _parse_minute(value: str, option: str) -> datetime:
    try:
        return datetime.strptime(value, _MINUTE_FORMAT)
    except ValueError:
        raise typer.BadParameter("expected YYYY-MM-DD HH:MM", param_hint=option) from None

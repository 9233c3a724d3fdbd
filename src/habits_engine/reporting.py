"""Simple reporting utilities for CLI output."""

from __future__ import annotations

from collections import defaultdict
from datetime import datetime, timedelta, tzinfo
from pathlib import Path
from typing import Callable, Iterable, Optional

from .db import SQLiteEventStore
from .models import (
    MILLIS_PER_SECOND,
    PresenceState,
    TimelineSegment,
    UsageTimelineModel,
    from_millis,
    now_millis,
    to_millis,
)
from .presence import reconstruct_segments
from .statistics import aggregate
from .timeline import build_timeline


class SummaryPrinter:
    """Render human-readable summaries in the console."""

    def __init__(self, db_path: Path, clock: Optional[Callable[[], int]] = None) -> None:
        self.db_path = Path(db_path)
        self.clock = clock or now_millis

    def print_daily_summary(self, day: datetime, bin_size: timedelta = timedelta(hours=1)) -> None:
        now = self.clock()
        start, end = day_bounds(day)
        end = min(end, now)
        if end <= start:
            print("No activity recorded for the selected day.")
            return

        store = SQLiteEventStore(self.db_path)
        try:
            screen_events = store.screen_events_in_range(start, end)
            app_events = store.app_usage_events_in_range(start, end)
            presence = store.presence_events_in_range(start, end)
            preceding = store.latest_presence_before(start)
        finally:
            store.close()

        # The store also returns the last screen event before the day.
        recorded = [event for event in screen_events if event.timestamp >= start]
        if not recorded and not app_events and not presence:
            print("No activity recorded for the selected day.")
            return

        stats = aggregate(
            screen_events,
            app_events,
            start,
            end,
            int(bin_size.total_seconds() * MILLIS_PER_SECOND),
            now=now,
        ).unwrap()

        print(f"Summary for {day.strftime('%Y-%m-%d')}")
        print("-" * 40)
        print(f"Screen time: {format_duration(stats.total_screen_on_time)}")
        print(f"Pickups:     {stats.pickup_count}")

        segments = reconstruct_segments(presence, start, end, preceding).unwrap()
        totals = presence_totals(segments)
        if totals.get(PresenceState.SLEEPING):
            print(f"Asleep:      {format_duration(totals[PresenceState.SLEEPING])}")
        print()

        top_apps = sorted(stats.total_usage_per_app.items(), key=lambda item: item[1], reverse=True)
        if top_apps:
            print("Top apps:")
            for package, millis in top_apps[:5]:
                opens = stats.total_opens_per_app.get(package, 0)
                print(f"  {package:<35} {format_duration(millis)}  ({opens} opens)")

    def print_timeline(self, day: datetime) -> None:
        now = self.clock()
        start, end = day_bounds(day)
        end = min(end, now)
        if end <= start:
            print("No screen-on periods in range.")
            return

        store = SQLiteEventStore(self.db_path)
        try:
            model = build_timeline(
                store.screen_events_in_range(start, end),
                store.app_usage_events_in_range(start, end),
                start,
                end,
                now=now,
            ).unwrap()
        finally:
            store.close()
        for line in format_timeline(model):
            print(line)


def day_bounds(day: datetime) -> tuple[int, int]:
    """Epoch-millis bounds of the local calendar day containing ``day``."""
    start = day.replace(hour=0, minute=0, second=0, microsecond=0)
    return to_millis(start), to_millis(start + timedelta(days=1))


def presence_totals(segments: Iterable[TimelineSegment]) -> dict[PresenceState, int]:
    totals: defaultdict[PresenceState, int] = defaultdict(int)
    for segment in segments:
        totals[segment.state] += segment.duration
    return dict(totals)


def format_timeline(model: UsageTimelineModel) -> list[str]:
    if not model.periods:
        return ["No screen-on periods in range."]
    lines = []
    for period in model.periods:
        lines.append(
            f"{format_clock(period.start)} - {format_clock(period.end)}"
            f"  {format_duration(period.duration)}"
        )
        for segment in period.segments:
            lines.append(
                f"    {format_clock(segment.start)} {segment.package_name:<35}"
                f" {format_duration(segment.duration)}"
            )
    lines.append(
        f"Total: {format_duration(model.total_screen_on_time)} across {model.pickup_count} pickups"
    )
    return lines


def format_clock(millis: int, tz: Optional[tzinfo] = None) -> str:
    return from_millis(millis, tz).strftime("%H:%M:%S")


def format_duration(millis: float) -> str:
    total_seconds = int(round(millis / MILLIS_PER_SECOND))
    hours, remainder = divmod(total_seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"

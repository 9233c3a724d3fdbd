"""Reconstruct screen-on periods and per-app segments from raw event logs."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Iterable, Mapping, Optional

from .errors import Result, check_range
from .models import (
    AppSegment,
    AppUsageEvent,
    ScreenEvent,
    ScreenEventType,
    ScreenOnPeriod,
    UsageTimelineModel,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RawPeriod:
    """An ON -> OFF pair before clipping; ``synthetic`` marks an implied ON."""

    on: int
    off: int
    synthetic: bool = False


def repair_screen_events(
    events: Iterable[ScreenEvent], view_start: int, view_end: int
) -> list[ScreenEvent]:
    """Return an alternating ON/OFF stream that starts with ON and ends with OFF."""
    repaired, _ = _repair(events, view_start, view_end)
    return repaired


def _repair(
    events: Iterable[ScreenEvent], view_start: int, view_end: int
) -> tuple[list[ScreenEvent], bool]:
    ordered = sorted(events, key=lambda e: e.timestamp)
    repaired: list[ScreenEvent] = []
    duplicates = 0
    for event in ordered:
        if repaired and repaired[-1].type == event.type:
            duplicates += 1
            continue
        repaired.append(event)
    if duplicates:
        logger.debug("Dropped %d duplicate screen events during repair.", duplicates)

    if not repaired:
        return repaired, False

    synthetic_on = False
    if repaired[0].type == ScreenEventType.OFF:
        repaired.insert(
            0,
            ScreenEvent(
                timestamp=min(view_start, repaired[0].timestamp),
                type=ScreenEventType.ON,
            ),
        )
        synthetic_on = True
    if repaired[-1].type == ScreenEventType.ON:
        repaired.append(
            ScreenEvent(
                timestamp=max(view_end, repaired[-1].timestamp),
                type=ScreenEventType.OFF,
            )
        )
    return repaired, synthetic_on


def pair_screen_events(
    events: Iterable[ScreenEvent], view_start: int, view_end: int
) -> list[RawPeriod]:
    """Pair a repaired stream into unclipped ON -> OFF periods."""
    repaired, synthetic_on = _repair(events, view_start, view_end)
    periods: list[RawPeriod] = []
    for index in range(0, len(repaired) - 1, 2):
        on_event, off_event = repaired[index], repaired[index + 1]
        periods.append(
            RawPeriod(
                on=on_event.timestamp,
                off=off_event.timestamp,
                synthetic=synthetic_on and index == 0,
            )
        )
    return periods


def clip(start: int, end: int, lower: int, upper: int) -> Optional[tuple[int, int]]:
    """Intersect ``[start, end)`` with ``[lower, upper)``; None when empty."""
    clipped_start = max(start, lower)
    clipped_end = min(end, upper)
    if clipped_end <= clipped_start:
        return None
    return clipped_start, clipped_end


def count_pickups(periods: Iterable[RawPeriod], view_start: int, view_end: int) -> int:
    return sum(
        1 for p in periods if not p.synthetic and view_start <= p.on < view_end
    )


def resolve_overlaps(events: Iterable[AppUsageEvent]) -> list[AppUsageEvent]:
    """Truncate same-package sessions that overlap a later-starting one.

    The later session is authoritative; sessions left empty are dropped.
    """
    by_package: dict[str, list[AppUsageEvent]] = {}
    for event in events:
        by_package.setdefault(event.package_name, []).append(event)

    resolved: list[AppUsageEvent] = []
    for package_events in by_package.values():
        package_events.sort(key=lambda e: e.start)
        for current, following in zip(package_events, package_events[1:] + [None]):
            if following is not None and (current.end is None or current.end > following.start):
                logger.debug(
                    "Truncating overlapping %s session at %d", current.package_name, following.start
                )
                current = replace(current, end=following.start)
            if current.end is not None and current.end <= current.start:
                continue
            resolved.append(current)
    resolved.sort(key=lambda e: (e.start, e.package_name))
    return resolved


def build_timeline(
    screen_events: Iterable[ScreenEvent],
    app_events: Iterable[AppUsageEvent],
    view_start: int,
    view_end: int,
    colors: Optional[Mapping[str, str]] = None,
    now: Optional[int] = None,
) -> Result[UsageTimelineModel]:
    """Build the nested screen-on / app segment timeline for a view.

    Args:
        screen_events: Raw screen events; duplicates and gaps are repaired.
        app_events: Raw app usage sessions, possibly still open.
        view_start: Inclusive start of the view, epoch millis.
        view_end: Exclusive end of the view, epoch millis.
        colors: Package name to colour; unmapped packages get None.
        now: End used for still-open app sessions; defaults to the period end.

    Returns:
        Result holding a UsageTimelineModel, or INVALID_RANGE.
    """
    invalid = check_range(view_start, view_end)
    if invalid is not None:
        return invalid

    colors = colors or {}
    raw_periods = pair_screen_events(screen_events, view_start, view_end)
    sessions = resolve_overlaps(app_events)

    periods: list[ScreenOnPeriod] = []
    for raw in raw_periods:
        bounds = clip(raw.on, raw.off, view_start, view_end)
        if bounds is None:
            continue
        period_start, period_end = bounds
        segments = []
        for session in sessions:
            if session.start >= period_end:
                break
            session_end = session.end
            if session_end is None:
                session_end = now if now is not None else period_end
            segment_bounds = clip(session.start, session_end, period_start, period_end)
            if segment_bounds is None:
                continue
            segments.append(
                AppSegment(
                    package_name=session.package_name,
                    start=segment_bounds[0],
                    end=segment_bounds[1],
                    color=colors.get(session.package_name),
                )
            )
        segments.sort(key=lambda s: (s.start, s.package_name))
        periods.append(
            ScreenOnPeriod(start=period_start, end=period_end, segments=tuple(segments))
        )

    return Result.success(
        UsageTimelineModel(
            periods=tuple(periods),
            view_start=view_start,
            view_end=view_end,
            pickup_count=count_pickups(raw_periods, view_start, view_end),
            total_screen_on_time=sum(p.duration for p in periods),
        )
    )

"""Recurring weekly time windows and point-in-time membership checks."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, tzinfo
from enum import Enum
from typing import Any, Iterable, Optional, Protocol, Union

from .errors import ErrorKind, Result
from .models import from_millis

logger = logging.getLogger(__name__)

MINUTES_PER_DAY = 24 * 60
MINUTES_PER_WEEK = 7 * MINUTES_PER_DAY

DEFAULT_SLEEP_SCHEDULE_ID = "default_sleep_schedule_id"

Instant = Union[int, datetime]


class DayOfWeek(Enum):
    """Days of the week; values match :meth:`datetime.weekday`."""

    MONDAY = 0
    TUESDAY = 1
    WEDNESDAY = 2
    THURSDAY = 3
    FRIDAY = 4
    SATURDAY = 5
    SUNDAY = 6

    @property
    def next_day(self) -> "DayOfWeek":
        return DayOfWeek((self.value + 1) % 7)

    @property
    def short_name(self) -> str:
        return self.name[:3].title()


class WindowPrecedence(Enum):
    """Which bedtime source wins when both a schedule and a manual pair exist."""

    SCHEDULE_FIRST = "schedule_first"
    MANUAL_FIRST = "manual_first"


@dataclass(frozen=True, slots=True)
class TimeBlock:
    """A window on one weekday; ``end < start`` spills into the next day."""

    day: DayOfWeek
    start_minute: int
    end_minute: int

    def __post_init__(self) -> None:
        for value in (self.start_minute, self.end_minute):
            if not 0 <= value < MINUTES_PER_DAY:
                raise ValueError(f"minute of day out of range: {value}")
        if self.start_minute == self.end_minute:
            raise ValueError("time block start and end must differ")

    @property
    def wraps(self) -> bool:
        return self.end_minute < self.start_minute

    @property
    def length_minutes(self) -> int:
        if self.wraps:
            return MINUTES_PER_DAY - self.start_minute + self.end_minute
        return self.end_minute - self.start_minute

    def contains(self, day: DayOfWeek, minute_of_day: int) -> bool:
        if not self.wraps:
            return day == self.day and self.start_minute <= minute_of_day < self.end_minute
        if day == self.day and minute_of_day >= self.start_minute:
            return True
        return day == self.day.next_day and minute_of_day < self.end_minute


@dataclass(frozen=True, slots=True)
class ScheduleGroup:
    """Named set of blocks with union semantics."""

    name: str
    blocks: tuple[TimeBlock, ...] = ()
    id: str = ""

    @classmethod
    def for_days(
        cls,
        name: str,
        days: Iterable[DayOfWeek],
        ranges: Iterable[tuple[int, int]],
        group_id: str = "",
    ) -> "ScheduleGroup":
        ranges = list(ranges)
        blocks = tuple(
            TimeBlock(day=day, start_minute=start, end_minute=end)
            for day in sorted(set(days), key=lambda d: d.value)
            for start, end in ranges
        )
        return cls(name=name, blocks=blocks, id=group_id)


@dataclass(frozen=True, slots=True)
class Schedule:
    id: str
    name: str
    groups: tuple[ScheduleGroup, ...] = ()

    def blocks(self) -> Iterable[TimeBlock]:
        for group in self.groups:
            yield from group.blocks


@dataclass(frozen=True, slots=True)
class ScheduleCoverage:
    total_hours: float
    coverage_percentage: float


@dataclass(frozen=True, slots=True)
class ManualSleepSchedule:
    """A bedtime/wake-up pair set by hand instead of a schedule."""

    bedtime_hour: Optional[int] = None
    bedtime_minute: Optional[int] = None
    wake_hour: Optional[int] = None
    wake_minute: Optional[int] = None

    @property
    def bedtime_minute_of_day(self) -> Optional[int]:
        if self.bedtime_hour is None or self.bedtime_minute is None:
            return None
        return self.bedtime_hour * 60 + self.bedtime_minute

    @property
    def wake_minute_of_day(self) -> Optional[int]:
        if self.wake_hour is None or self.wake_minute is None:
            return None
        return self.wake_hour * 60 + self.wake_minute

    @property
    def is_complete(self) -> bool:
        return self.bedtime_minute_of_day is not None and self.wake_minute_of_day is not None

    def contains(self, instant: Instant, tz: Optional[tzinfo] = None) -> bool:
        bedtime = self.bedtime_minute_of_day
        wake = self.wake_minute_of_day
        if bedtime is None or wake is None or bedtime == wake:
            return False
        minute = _minute_of_day(_local_datetime(instant, tz))
        if bedtime < wake:
            return bedtime <= minute < wake
        return minute >= bedtime or minute < wake


DEFAULT_SLEEP_SCHEDULE = Schedule(
    id=DEFAULT_SLEEP_SCHEDULE_ID,
    name="Default Sleep (10 PM - 6 AM)",
    groups=(
        ScheduleGroup.for_days(
            "All Days", list(DayOfWeek), [(22 * 60, 6 * 60)], group_id="all_days"
        ),
    ),
)


def is_active_at(
    schedule: Optional[Schedule], instant: Instant, tz: Optional[tzinfo] = None
) -> bool:
    """Return True when any block of ``schedule`` contains ``instant``."""
    if schedule is None:
        return False
    local = _local_datetime(instant, tz)
    day = DayOfWeek(local.weekday())
    minute = _minute_of_day(local)
    return any(block.contains(day, minute) for block in schedule.blocks())


def schedule_coverage(schedule: Schedule) -> ScheduleCoverage:
    """Hours per week covered by the schedule, overlapping blocks counted once."""
    covered = [False] * MINUTES_PER_WEEK
    for block in schedule.blocks():
        offset = block.day.value * MINUTES_PER_DAY + block.start_minute
        for minute in range(offset, offset + block.length_minutes):
            covered[minute % MINUTES_PER_WEEK] = True
    minutes = sum(covered)
    return ScheduleCoverage(
        total_hours=minutes / 60.0,
        coverage_percentage=minutes / MINUTES_PER_WEEK * 100.0,
    )


def daily_coverage(schedule: Schedule) -> dict[DayOfWeek, ScheduleCoverage]:
    """Per-day coverage; an overnight block counts wholly toward its start day."""
    result: dict[DayOfWeek, ScheduleCoverage] = {}
    for day in DayOfWeek:
        covered = [False] * (2 * MINUTES_PER_DAY)
        for block in schedule.blocks():
            if block.day != day:
                continue
            for minute in range(block.start_minute, block.start_minute + block.length_minutes):
                covered[minute] = True
        minutes = sum(covered)
        result[day] = ScheduleCoverage(
            total_hours=minutes / 60.0,
            coverage_percentage=minutes / MINUTES_PER_DAY * 100.0,
        )
    return result


def summarize_schedule(schedule: Schedule) -> str:
    """Human-readable summary, e.g. ``"Mon-Fri: 10 PM - 6 AM (+1d)"``."""
    shapes: dict[DayOfWeek, tuple[tuple[int, int], ...]] = {}
    for day in DayOfWeek:
        ranges = sorted(
            {(b.start_minute, b.end_minute) for b in schedule.blocks() if b.day == day}
        )
        if ranges:
            shapes[day] = tuple(ranges)

    if not shapes:
        return "No schedule set."

    days_by_shape: dict[tuple[tuple[int, int], ...], list[DayOfWeek]] = {}
    for day, shape in shapes.items():
        days_by_shape.setdefault(shape, []).append(day)

    lines = []
    for shape, days in sorted(days_by_shape.items(), key=lambda item: item[1][0].value):
        times = ", ".join(
            f"{format_minute_of_day(start)} - {format_minute_of_day(end)}"
            + (" (+1d)" if end < start else "")
            for start, end in shape
        )
        lines.append(f"{_format_day_group(days)}: {times}")
    return "\n".join(lines)


def format_minute_of_day(minute_of_day: int) -> str:
    """Format as a 12-hour clock time such as ``"9:30 AM"`` or ``"8 PM"``."""
    if not 0 <= minute_of_day < MINUTES_PER_DAY:
        return "Invalid Time"
    hour, minute = divmod(minute_of_day, 60)
    suffix = "AM" if hour < 12 else "PM"
    display_hour = hour % 12 or 12
    if minute == 0:
        return f"{display_hour} {suffix}"
    return f"{display_hour}:{minute:02d} {suffix}"


def _format_day_group(days: list[DayOfWeek]) -> str:
    if len(days) == 7:
        return "Every day"
    ordered = sorted(days, key=lambda d: d.value)
    parts: list[str] = []
    i = 0
    while i < len(ordered):
        j = i
        while j + 1 < len(ordered) and ordered[j + 1].value == ordered[j].value + 1:
            j += 1
        first, last = ordered[i], ordered[j]
        if first == last:
            parts.append(first.short_name)
        elif last.value == first.value + 1:
            parts.extend([first.short_name, last.short_name])
        else:
            parts.append(f"{first.short_name}-{last.short_name}")
        i = j + 1
    return ", ".join(parts)


def _local_datetime(instant: Instant, tz: Optional[tzinfo]) -> datetime:
    if isinstance(instant, datetime):
        if tz is not None and instant.tzinfo is not None:
            return instant.astimezone(tz)
        return instant
    return from_millis(instant, tz)


def _minute_of_day(value: datetime) -> int:
    return value.hour * 60 + value.minute


def schedule_to_dict(schedule: Schedule) -> dict[str, Any]:
    return {
        "id": schedule.id,
        "name": schedule.name,
        "groups": [
            {
                "id": group.id,
                "name": group.name,
                "blocks": [
                    {
                        "day": block.day.name,
                        "start_minute": block.start_minute,
                        "end_minute": block.end_minute,
                    }
                    for block in group.blocks
                ],
            }
            for group in schedule.groups
        ],
    }


def schedule_from_dict(data: dict[str, Any]) -> Schedule:
    groups = tuple(
        ScheduleGroup(
            id=group.get("id", ""),
            name=group["name"],
            blocks=tuple(
                TimeBlock(
                    day=DayOfWeek[block["day"]],
                    start_minute=int(block["start_minute"]),
                    end_minute=int(block["end_minute"]),
                )
                for block in group.get("blocks", [])
            ),
        )
        for group in data.get("groups", [])
    )
    return Schedule(id=data["id"], name=data["name"], groups=groups)


class ScheduleStore(Protocol):
    def get_schedule(self, schedule_id: str) -> Result[Schedule]: ...

    def list_schedules(self) -> list[Schedule]: ...


@dataclass
class MemoryScheduleStore:
    """In-process schedule store, always able to resolve the default schedule."""

    schedules: dict[str, Schedule] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def get_schedule(self, schedule_id: str) -> Result[Schedule]:
        with self._lock:
            schedule = self.schedules.get(schedule_id)
        if schedule is None and schedule_id == DEFAULT_SLEEP_SCHEDULE_ID:
            schedule = DEFAULT_SLEEP_SCHEDULE
        if schedule is None:
            return Result.failure(
                ErrorKind.SCHEDULE_NOT_FOUND, f"No schedule with id={schedule_id}"
            )
        return Result.success(schedule)

    def list_schedules(self) -> list[Schedule]:
        with self._lock:
            stored = list(self.schedules.values())
        if DEFAULT_SLEEP_SCHEDULE_ID not in {s.id for s in stored}:
            stored.insert(0, DEFAULT_SLEEP_SCHEDULE)
        return stored

    def save_schedule(self, schedule: Schedule) -> None:
        with self._lock:
            self.schedules[schedule.id] = schedule

    def delete_schedule(self, schedule_id: str) -> bool:
        with self._lock:
            return self.schedules.pop(schedule_id, None) is not None


def is_in_bedtime_window(
    instant: Instant,
    *,
    store: ScheduleStore,
    schedule_id: Optional[str],
    manual: Optional[ManualSleepSchedule] = None,
    precedence: WindowPrecedence = WindowPrecedence.SCHEDULE_FIRST,
    tz: Optional[tzinfo] = None,
) -> bool:
    """Resolve the bedtime window from a schedule and/or a manual pair.

    A schedule id that cannot be resolved degrades to the manual pair, or to
    "not active" when no complete manual pair exists.
    """
    manual_usable = manual is not None and manual.is_complete

    if precedence == WindowPrecedence.MANUAL_FIRST and manual_usable:
        return manual.contains(instant, tz)  # type: ignore[union-attr]

    if schedule_id is not None:
        resolved = store.get_schedule(schedule_id)
        if resolved.ok:
            return is_active_at(resolved.value, instant, tz)
        logger.warning(
            "Bedtime schedule unavailable (%s); falling back to manual window.",
            resolved.error.message if resolved.error else schedule_id,
        )

    if manual_usable:
        return manual.contains(instant, tz)  # type: ignore[union-attr]
    return False

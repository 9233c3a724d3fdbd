"""Domain models for presence and device usage events.

Timestamps are integer epoch milliseconds throughout.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone, tzinfo
from enum import Enum
from typing import Optional

MILLIS_PER_SECOND = 1000
MILLIS_PER_MINUTE = 60 * MILLIS_PER_SECOND
MILLIS_PER_HOUR = 60 * MILLIS_PER_MINUTE
MILLIS_PER_DAY = 24 * MILLIS_PER_HOUR


class PresenceState(Enum):
    """Where the user is believed to be in their sleep cycle."""

    AWAKE = "AWAKE"
    SLEEPING = "SLEEPING"
    WINDING_DOWN = "WINDING_DOWN"
    UNKNOWN = "UNKNOWN"  # Monitoring stopped or no data yet


class ScreenEventType(Enum):
    ON = "SCREEN_ON"
    OFF = "SCREEN_OFF"


@dataclass(frozen=True, slots=True)
class PresenceEvent:
    """An observed presence transition."""

    timestamp: int
    state: PresenceState


@dataclass(frozen=True, slots=True)
class ScreenEvent:
    timestamp: int
    type: ScreenEventType


@dataclass(frozen=True, slots=True)
class AppUsageEvent:
    """A foreground session for a single package; ``end`` is None while open."""

    package_name: str
    start: int
    end: Optional[int] = None

    @property
    def is_open(self) -> bool:
        return self.end is None


@dataclass(frozen=True, slots=True)
class TimelineSegment:
    start: int
    end: int
    state: PresenceState

    @property
    def duration(self) -> int:
        return self.end - self.start


@dataclass(frozen=True, slots=True)
class AppSegment:
    package_name: str
    start: int
    end: int
    color: Optional[str] = None

    @property
    def duration(self) -> int:
        return self.end - self.start


@dataclass(frozen=True, slots=True)
class ScreenOnPeriod:
    start: int
    end: int
    segments: tuple[AppSegment, ...] = ()

    @property
    def duration(self) -> int:
        return self.end - self.start


@dataclass(frozen=True, slots=True)
class UsageTimelineModel:
    periods: tuple[ScreenOnPeriod, ...]
    view_start: int
    view_end: int
    pickup_count: int
    total_screen_on_time: int


@dataclass(frozen=True, slots=True)
class UsageTimeBin:
    start: int
    end: int
    total_screen_on_time: int = 0
    app_usage: dict[str, int] = field(default_factory=dict)
    app_opens: dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class UsageStatistics:
    bins: tuple[UsageTimeBin, ...]
    total_screen_on_time: int
    pickup_count: int
    total_usage_per_app: dict[str, int]
    total_opens_per_app: dict[str, int]


def now_millis() -> int:
    return int(time.time() * MILLIS_PER_SECOND)


def to_millis(value: datetime) -> int:
    """Convert a datetime to epoch millis; naive values are read as local time."""
    return int(value.timestamp() * MILLIS_PER_SECOND)


def from_millis(millis: int, tz: Optional[tzinfo] = None) -> datetime:
    """Convert epoch millis to an aware datetime in ``tz`` (local zone when None)."""
    if tz is None:
        return datetime.fromtimestamp(millis / MILLIS_PER_SECOND, timezone.utc).astimezone()
    return datetime.fromtimestamp(millis / MILLIS_PER_SECOND, tz)

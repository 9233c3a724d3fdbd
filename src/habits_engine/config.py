"""Configuration models and helpers for the presence engine."""

from __future__ import annotations

import threading
from dataclasses import dataclass, replace
from datetime import timedelta
from typing import Any, Optional, Protocol

from .models import MILLIS_PER_SECOND
from .schedule import DEFAULT_SLEEP_SCHEDULE_ID, ManualSleepSchedule, WindowPrecedence


@dataclass(frozen=True, slots=True)
class EngineSettings:
    """Read-mostly snapshot of user toggles consumed by each evaluation."""

    bedtime_tracking_enabled: bool = True
    inactivity_threshold: timedelta = timedelta(minutes=30)
    selected_schedule_id: Optional[str] = DEFAULT_SLEEP_SCHEDULE_ID
    manual_schedule: Optional[ManualSleepSchedule] = None
    window_precedence: WindowPrecedence = WindowPrecedence.SCHEDULE_FIRST
    bin_size: timedelta = timedelta(hours=1)
    reminders_enabled: bool = False
    reminder_interval: timedelta = timedelta(minutes=60)
    reminder_snooze: timedelta = timedelta(minutes=15)
    snooze_until: Optional[int] = None
    reminder_schedule_id: Optional[str] = None

    @property
    def inactivity_threshold_ms(self) -> int:
        return int(self.inactivity_threshold.total_seconds() * MILLIS_PER_SECOND)

    @property
    def bin_size_ms(self) -> int:
        return int(self.bin_size.total_seconds() * MILLIS_PER_SECOND)

    @property
    def reminder_interval_minutes(self) -> int:
        return int(self.reminder_interval.total_seconds() // 60)

    @classmethod
    def from_minutes(
        cls,
        inactivity_minutes: float = 30.0,
        bin_minutes: Optional[float] = None,
        reminder_interval_minutes: Optional[float] = None,
        **overrides: Any,
    ) -> "EngineSettings":
        bin_size = bin_minutes if bin_minutes is not None else 60.0
        interval = reminder_interval_minutes if reminder_interval_minutes is not None else 60.0
        return cls(
            inactivity_threshold=timedelta(minutes=inactivity_minutes),
            bin_size=timedelta(minutes=bin_size),
            reminder_interval=timedelta(minutes=interval),
            **overrides,
        )


@dataclass(frozen=True, slots=True)
class MonitorSettings:
    """Runtime configuration for the evaluation loop."""

    tick_interval: timedelta = timedelta(seconds=60)
    reorder_window: timedelta = timedelta(seconds=2)

    @property
    def tick_interval_ms(self) -> int:
        return int(self.tick_interval.total_seconds() * MILLIS_PER_SECOND)

    @property
    def reorder_window_ms(self) -> int:
        return int(self.reorder_window.total_seconds() * MILLIS_PER_SECOND)


class SettingsProvider(Protocol):
    def snapshot(self) -> EngineSettings: ...


class StaticSettingsProvider:
    """Holds one settings value, replaced wholesale on update."""

    def __init__(self, settings: Optional[EngineSettings] = None) -> None:
        self._settings = settings or EngineSettings()
        self._lock = threading.Lock()

    def snapshot(self) -> EngineSettings:
        with self._lock:
            return self._settings

    def update(self, **changes: Any) -> EngineSettings:
        with self._lock:
            self._settings = replace(self._settings, **changes)
            return self._settings

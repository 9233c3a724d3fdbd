"""Event source contracts and an in-memory implementation."""

from __future__ import annotations

import threading
from typing import Optional, Protocol

from .models import AppUsageEvent, PresenceEvent, ScreenEvent


class EventSource(Protocol):
    """Read side of the event storage collaborator."""

    def presence_events_in_range(self, start: int, end: int) -> list[PresenceEvent]: ...

    def latest_presence_before(self, timestamp: int) -> Optional[PresenceEvent]: ...

    def screen_events_in_range(self, start: int, end: int) -> list[ScreenEvent]: ...

    def app_usage_events_in_range(self, start: int, end: int) -> list[AppUsageEvent]: ...


class EventSink(Protocol):
    """Write side; each append is durable once it returns."""

    def append_presence_event(self, event: PresenceEvent) -> None: ...

    def append_screen_event(self, event: ScreenEvent) -> None: ...

    def append_app_usage_event(self, event: AppUsageEvent) -> None: ...


class MemoryEventStore:
    """Thread-safe list-backed store, mostly for tests and embedding."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.presence_events: list[PresenceEvent] = []
        self.screen_events: list[ScreenEvent] = []
        self.app_usage_events: list[AppUsageEvent] = []

    def append_presence_event(self, event: PresenceEvent) -> None:
        with self._lock:
            self.presence_events.append(event)

    def append_screen_event(self, event: ScreenEvent) -> None:
        with self._lock:
            self.screen_events.append(event)

    def append_app_usage_event(self, event: AppUsageEvent) -> None:
        with self._lock:
            self.app_usage_events.append(event)

    def presence_events_in_range(self, start: int, end: int) -> list[PresenceEvent]:
        with self._lock:
            events = [e for e in self.presence_events if start <= e.timestamp < end]
        return sorted(events, key=lambda e: e.timestamp)

    def latest_presence_before(self, timestamp: int) -> Optional[PresenceEvent]:
        with self._lock:
            earlier = [e for e in self.presence_events if e.timestamp <= timestamp]
        return max(earlier, key=lambda e: e.timestamp) if earlier else None

    def screen_events_in_range(self, start: int, end: int) -> list[ScreenEvent]:
        with self._lock:
            events = [e for e in self.screen_events if start <= e.timestamp < end]
        return sorted(events, key=lambda e: e.timestamp)

    def app_usage_events_in_range(self, start: int, end: int) -> list[AppUsageEvent]:
        with self._lock:
            events = [
                e
                for e in self.app_usage_events
                if e.start < end and (e.end is None or e.end > start)
            ]
        return sorted(events, key=lambda e: e.start)

"""FastAPI application that exposes the presence engine and usage queries."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import timedelta, tzinfo
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field

from .config import EngineSettings, MonitorSettings, StaticSettingsProvider
from .db import SQLiteEventStore
from .errors import ErrorKind, Result
from .limits import WhitelistedApp, check_usage_limits, color_map
from .models import (
    MILLIS_PER_DAY,
    MILLIS_PER_MINUTE,
    AppUsageEvent,
    ScreenEvent,
    ScreenEventType,
    from_millis,
    now_millis,
    to_millis,
)
from .monitor import PresenceMonitor
from .normalization import is_valid_package_name, normalize_color, normalize_package_name
from .paths import get_db_path
from .presence import PresenceSignal, PresenceStateMachine, SignalKind, reconstruct_segments
from .reminders import evaluate_reminder, next_fire_time, schedule_predicate
from .schedule import (
    DEFAULT_SLEEP_SCHEDULE_ID,
    DayOfWeek,
    Schedule,
    ScheduleGroup,
    TimeBlock,
    WindowPrecedence,
    daily_coverage,
    is_active_at,
    schedule_coverage,
    schedule_to_dict,
    summarize_schedule,
)
from .signals import SleepClassification, confirmation_from_classification
from .statistics import aggregate
from .timeline import build_timeline

logger = logging.getLogger(__name__)

_STATUS_BY_KIND = {
    ErrorKind.INVALID_RANGE: 400,
    ErrorKind.INVALID_BIN_SIZE: 400,
    ErrorKind.INVALID_INTERVAL: 400,
    ErrorKind.SCHEDULE_NOT_FOUND: 404,
    ErrorKind.UNBOUNDED_LOOK_AHEAD: 422,
}


class ScreenEventPayload(BaseModel):
    type: ScreenEventType
    timestamp: Optional[int] = None

    model_config = ConfigDict(extra="forbid")


class SleepConfirmationPayload(BaseModel):
    timestamp: Optional[int] = None
    confirmed: bool = True

    model_config = ConfigDict(extra="forbid")


class SleepClassificationPayload(BaseModel):
    timestamp: Optional[int] = None
    confidence: int = Field(ge=0, le=100)
    light: int = Field(ge=1, le=6)
    motion: int = Field(ge=1, le=6)

    model_config = ConfigDict(extra="forbid")


class WhitelistedAppPayload(BaseModel):
    color: str
    daily_limit_minutes: Optional[int] = Field(default=None, gt=0)
    session_limit_minutes: Optional[int] = Field(default=None, gt=0)

    model_config = ConfigDict(extra="forbid")


class AppUsagePayload(BaseModel):
    package_name: str
    start: Optional[int] = None
    end: Optional[int] = None

    model_config = ConfigDict(extra="forbid")


class TimeBlockPayload(BaseModel):
    day: str
    start_minute: int = Field(ge=0, le=1439)
    end_minute: int = Field(ge=0, le=1439)


class ScheduleGroupPayload(BaseModel):
    name: str
    id: str = ""
    blocks: list[TimeBlockPayload] = Field(default_factory=list)


class SchedulePayload(BaseModel):
    name: str
    groups: list[ScheduleGroupPayload] = Field(default_factory=list)

    model_config = ConfigDict(extra="forbid")


class SettingsUpdate(BaseModel):
    bedtime_tracking_enabled: Optional[bool] = None
    inactivity_minutes: Optional[float] = Field(default=None, gt=0)
    selected_schedule_id: Optional[str] = None
    window_precedence: Optional[WindowPrecedence] = None
    reminders_enabled: Optional[bool] = None
    reminder_interval_minutes: Optional[float] = Field(default=None, gt=0)
    reminder_schedule_id: Optional[str] = None
    snooze_until: Optional[int] = None

    model_config = ConfigDict(extra="forbid")


def create_app(
    *,
    db_path: Optional[Path] = None,
    settings: Optional[EngineSettings] = None,
    monitor_settings: Optional[MonitorSettings] = None,
    run_monitor: bool = True,
    clock: Optional[Callable[[], int]] = None,
    tz: Optional[tzinfo] = None,
) -> FastAPI:
    """Instantiate the FastAPI application.

    With ``run_monitor`` False the presence monitor is not threaded and each
    submitted signal is evaluated synchronously.
    """
    resolved_db_path = Path(db_path or get_db_path())
    clock = clock or now_millis
    store = SQLiteEventStore(resolved_db_path)
    settings_provider = StaticSettingsProvider(settings or EngineSettings())
    machine = PresenceStateMachine(event_log=store)
    monitor = PresenceMonitor(
        machine,
        settings_provider,
        store,
        monitor_settings=monitor_settings,
        clock=clock,
        tz=tz,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logging.basicConfig(
            level=logging.INFO,
            format="%(asctime)s %(levelname)s %(name)s %(message)s",
        )
        monitor.start(background=run_monitor)
        if not run_monitor:
            monitor.pump(flush=True)
        try:
            yield
        finally:
            monitor.stop()
            store.close()

    app = FastAPI(title="Habits Engine", version="0.1.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.db_path = resolved_db_path
    app.state.store = store
    app.state.settings = settings_provider
    app.state.monitor = monitor

    def dispatch(signal: PresenceSignal) -> None:
        monitor.submit(signal)
        if not monitor.is_running():
            monitor.pump(flush=True)

    @app.get("/api/status")
    def status(request: Request) -> Dict[str, Any]:
        snapshot = machine.cell.get()
        current = settings_provider.snapshot()
        return {
            "monitor_running": request.app.state.monitor.is_running(),
            "database_path": str(request.app.state.db_path),
            "presence_state": snapshot.state.value,
            "presence_since": snapshot.since,
            "bedtime_tracking_enabled": current.bedtime_tracking_enabled,
            "inactivity_minutes": current.inactivity_threshold.total_seconds() / 60.0,
            "selected_schedule_id": current.selected_schedule_id,
        }

    @app.patch("/api/settings")
    def update_settings(payload: SettingsUpdate) -> Dict[str, Any]:
        updates = payload.model_dump(exclude_unset=True)
        changes: Dict[str, Any] = {}
        for key, value in updates.items():
            if key == "inactivity_minutes":
                changes["inactivity_threshold"] = timedelta(minutes=value)
            elif key == "reminder_interval_minutes":
                changes["reminder_interval"] = timedelta(minutes=value)
            else:
                changes[key] = value
        current = settings_provider.update(**changes)
        return {
            "bedtime_tracking_enabled": current.bedtime_tracking_enabled,
            "inactivity_minutes": current.inactivity_threshold.total_seconds() / 60.0,
            "selected_schedule_id": current.selected_schedule_id,
            "window_precedence": current.window_precedence.value,
            "reminders_enabled": current.reminders_enabled,
            "reminder_interval_minutes": current.reminder_interval_minutes,
            "reminder_schedule_id": current.reminder_schedule_id,
            "snooze_until": current.snooze_until,
        }

    @app.post("/api/screen-events", status_code=201)
    def record_screen_event(payload: ScreenEventPayload) -> Dict[str, Any]:
        event = ScreenEvent(timestamp=_or_now(payload.timestamp, clock), type=payload.type)
        store.append_screen_event(event)
        kind = SignalKind.SCREEN_ON if event.type == ScreenEventType.ON else SignalKind.SCREEN_OFF
        dispatch(PresenceSignal(kind, event.timestamp))
        return {"timestamp": event.timestamp, "type": event.type.value}

    @app.post("/api/sleep-confirmations", status_code=202)
    def record_sleep_confirmation(payload: SleepConfirmationPayload) -> Dict[str, Any]:
        timestamp = _or_now(payload.timestamp, clock)
        dispatch(PresenceSignal(SignalKind.SLEEP_CONFIRMED, timestamp, payload.confirmed))
        return {"timestamp": timestamp, "confirmed": payload.confirmed}

    @app.post("/api/sleep-classifications", status_code=202)
    def record_sleep_classification(payload: SleepClassificationPayload) -> Dict[str, Any]:
        sample = SleepClassification(
            timestamp=_or_now(payload.timestamp, clock),
            confidence=payload.confidence,
            light=payload.light,
            motion=payload.motion,
        )
        signal = confirmation_from_classification(sample)
        if signal is not None:
            dispatch(signal)
        return {"timestamp": sample.timestamp, "confirmed": signal is not None}

    @app.post("/api/app-usage", status_code=201)
    def record_app_usage(payload: AppUsagePayload) -> Dict[str, Any]:
        package_name = normalize_package_name(payload.package_name)
        if not package_name or not is_valid_package_name(package_name):
            raise HTTPException(status_code=400, detail="package_name is invalid")
        start = _or_now(payload.start, clock)
        if payload.end is not None and payload.end <= start:
            raise HTTPException(status_code=400, detail="end must be after start")
        store.append_app_usage_event(
            AppUsageEvent(package_name=package_name, start=start, end=payload.end)
        )
        return {"package_name": package_name, "start": start, "end": payload.end}

    @app.get("/api/apps")
    def list_apps() -> Dict[str, Any]:
        return {"apps": [asdict(entry) for entry in store.whitelisted_apps()]}

    @app.put("/api/apps/{package_name}")
    def save_app(package_name: str, payload: WhitelistedAppPayload) -> Dict[str, Any]:
        normalized = normalize_package_name(package_name)
        if not normalized or not is_valid_package_name(normalized):
            raise HTTPException(status_code=400, detail="package_name is invalid")
        color = normalize_color(payload.color)
        if color is None:
            raise HTTPException(status_code=400, detail="color must be #RRGGBB or #AARRGGBB")
        entry = WhitelistedApp(
            package_name=normalized,
            color=color,
            daily_limit_minutes=payload.daily_limit_minutes,
            session_limit_minutes=payload.session_limit_minutes,
        )
        store.save_whitelisted_app(entry)
        return asdict(entry)

    @app.get("/api/limits/breaches")
    def limit_breaches() -> Dict[str, Any]:
        now = clock()
        day_start = to_millis(
            from_millis(now, tz).replace(hour=0, minute=0, second=0, microsecond=0)
        )
        day_end = day_start + MILLIS_PER_DAY
        sessions = store.app_usage_events_in_range(day_start, day_end)
        usage = _unwrap(
            aggregate([], sessions, day_start, day_end, MILLIS_PER_DAY, now=now)
        ).total_usage_per_app
        open_since = {s.package_name: s.start for s in sessions if s.is_open}

        breaches = []
        for entry in store.whitelisted_apps():
            started = open_since.get(entry.package_name)
            breach = check_usage_limits(
                entry,
                usage.get(entry.package_name, 0),
                session_ms=now - started if started is not None else None,
            )
            if breach is not None:
                breaches.append(
                    {
                        "package_name": breach.package_name,
                        "kind": breach.kind.value,
                        "used_ms": breach.used_ms,
                        "limit_minutes": breach.limit_minutes,
                    }
                )
        return {"breaches": breaches}

    @app.get("/api/presence/segments")
    def presence_segments(
        start: Optional[int] = Query(default=None, description="Range start, epoch millis."),
        end: Optional[int] = Query(default=None, description="Range end, epoch millis."),
    ) -> Dict[str, Any]:
        range_start, range_end = _resolve_range(start, end, clock)
        events = store.presence_events_in_range(range_start, range_end)
        preceding = store.latest_presence_before(range_start)
        segments = _unwrap(reconstruct_segments(events, range_start, range_end, preceding))
        return {
            "start": range_start,
            "end": range_end,
            "segments": [
                {
                    "start": segment.start,
                    "end": segment.end,
                    "state": segment.state.value,
                    "duration": segment.duration,
                }
                for segment in segments
            ],
        }

    @app.get("/api/usage/timeline")
    def usage_timeline(
        start: Optional[int] = Query(default=None, description="View start, epoch millis."),
        end: Optional[int] = Query(default=None, description="View end, epoch millis."),
    ) -> Dict[str, Any]:
        view_start, view_end = _resolve_range(start, end, clock)
        model = _unwrap(
            build_timeline(
                store.screen_events_in_range(view_start, view_end),
                store.app_usage_events_in_range(view_start, view_end),
                view_start,
                view_end,
                colors=color_map(store.whitelisted_apps()),
                now=clock(),
            )
        )
        return asdict(model)

    @app.get("/api/usage/statistics")
    def usage_statistics(
        start: Optional[int] = Query(default=None, description="Range start, epoch millis."),
        end: Optional[int] = Query(default=None, description="Range end, epoch millis."),
        bin_minutes: Optional[int] = Query(default=None, description="Bin width in minutes."),
    ) -> Dict[str, Any]:
        range_start, range_end = _resolve_range(start, end, clock)
        bin_size_ms = (
            bin_minutes * MILLIS_PER_MINUTE
            if bin_minutes is not None
            else settings_provider.snapshot().bin_size_ms
        )
        stats = _unwrap(
            aggregate(
                store.screen_events_in_range(range_start, range_end),
                store.app_usage_events_in_range(range_start, range_end),
                range_start,
                range_end,
                bin_size_ms,
                now=clock(),
            )
        )
        return asdict(stats)

    @app.get("/api/reminders/next")
    def next_reminder(
        last_fire: Optional[int] = Query(default=None, description="Last fire time, epoch millis."),
        interval_minutes: Optional[int] = Query(default=None),
    ) -> Dict[str, Any]:
        current = settings_provider.snapshot()
        interval = (
            interval_minutes if interval_minutes is not None else current.reminder_interval_minutes
        )
        fire_at = _unwrap(
            next_fire_time(
                last_fire if last_fire is not None else clock(),
                interval,
                current.snooze_until,
                schedule_predicate(store, current.reminder_schedule_id, tz),
            )
        )
        return {"next_fire_time": fire_at, "interval_minutes": interval}

    @app.get("/api/reminders/decision")
    def reminder_decision(
        due_at: int = Query(description="When the reminder became due, epoch millis."),
    ) -> Dict[str, Any]:
        now = clock()
        current = settings_provider.snapshot()
        is_active = schedule_predicate(store, current.reminder_schedule_id, tz)
        decision = evaluate_reminder(now, due_at, current, machine.state, is_active(now))
        return {"decision": decision.value, "presence_state": machine.state.value}

    @app.get("/api/schedules")
    def list_schedules() -> Dict[str, Any]:
        return {
            "schedules": [
                {
                    **schedule_to_dict(schedule),
                    "summary": summarize_schedule(schedule),
                    "coverage_percentage": schedule_coverage(schedule).coverage_percentage,
                    "daily_hours": {
                        day.name: coverage.total_hours
                        for day, coverage in daily_coverage(schedule).items()
                    },
                }
                for schedule in store.list_schedules()
            ]
        }

    @app.put("/api/schedules/{schedule_id}")
    def save_schedule(schedule_id: str, payload: SchedulePayload) -> Dict[str, Any]:
        try:
            schedule = Schedule(
                id=schedule_id,
                name=payload.name.strip(),
                groups=tuple(
                    ScheduleGroup(
                        id=group.id,
                        name=group.name,
                        blocks=tuple(
                            TimeBlock(
                                day=_parse_day(block.day),
                                start_minute=block.start_minute,
                                end_minute=block.end_minute,
                            )
                            for block in group.blocks
                        ),
                    )
                    for group in payload.groups
                ),
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        if not schedule.name:
            raise HTTPException(status_code=400, detail="name is required")
        store.save_schedule(schedule)
        return {**schedule_to_dict(schedule), "summary": summarize_schedule(schedule)}

    @app.delete("/api/schedules/{schedule_id}", status_code=204)
    def delete_schedule(schedule_id: str) -> None:
        conflict = _deletion_conflict(schedule_id, settings_provider.snapshot())
        if conflict is not None:
            raise HTTPException(status_code=409, detail=conflict)
        if not store.delete_schedule(schedule_id):
            raise HTTPException(status_code=404, detail="Schedule not found")

    @app.get("/api/schedules/{schedule_id}/active")
    def schedule_active(
        schedule_id: str,
        at: Optional[int] = Query(default=None, description="Instant, epoch millis."),
    ) -> Dict[str, Any]:
        schedule = _unwrap(store.get_schedule(schedule_id))
        instant = _or_now(at, clock)
        return {"schedule_id": schedule_id, "at": instant, "active": is_active_at(schedule, instant, tz)}

    return app


def _resolve_range(
    start: Optional[int], end: Optional[int], clock: Callable[[], int]
) -> tuple[int, int]:
    """Default to the trailing 24 hours when bounds are omitted."""
    range_end = end if end is not None else clock()
    range_start = start if start is not None else range_end - MILLIS_PER_DAY
    return range_start, range_end


def _unwrap(result: Result) -> Any:
    if result.error is not None:
        raise HTTPException(
            status_code=_STATUS_BY_KIND.get(result.error.kind, 400),
            detail=result.error.message,
        )
    return result.value


def _or_now(value: Optional[int], clock: Callable[[], int]) -> int:
    return value if value is not None else clock()


def _parse_day(value: str) -> DayOfWeek:
    try:
        return DayOfWeek[value.strip().upper()]
    except KeyError:
        raise ValueError(f"Unknown day of week: {value}") from None


def _deletion_conflict(schedule_id: str, settings: EngineSettings) -> Optional[str]:
    """Explain why a schedule must not be deleted, or None when it may be."""
    if schedule_id == DEFAULT_SLEEP_SCHEDULE_ID:
        return "The default schedule cannot be deleted."
    uses = []
    if settings.selected_schedule_id == schedule_id:
        uses.append("sleep tracking")
    if settings.reminder_schedule_id == schedule_id:
        uses.append("reminders")
    if not uses:
        return None
    return f"Cannot delete schedule. It's assigned to {' and '.join(uses)}."

"""Decide when recurring reminders fire."""

from __future__ import annotations

import logging
from datetime import timedelta, tzinfo
from enum import Enum
from typing import Callable, Optional

from .config import EngineSettings
from .errors import ErrorKind, Result
from .models import MILLIS_PER_MINUTE, MILLIS_PER_SECOND, PresenceState
from .schedule import ScheduleStore, is_active_at

logger = logging.getLogger(__name__)

DEFAULT_MAX_LOOK_AHEAD = timedelta(days=7)

ActivePredicate = Callable[[int], bool]


class ReminderDecision(Enum):
    FIRE = "fire"
    NOT_DUE = "not_due"
    SNOOZED = "snoozed"
    DISABLED = "disabled"
    NOT_AWAKE = "not_awake"
    OUTSIDE_SCHEDULE = "outside_schedule"


def next_fire_time(
    last_fire_time: int,
    interval_minutes: int,
    snooze_until: Optional[int],
    is_active: ActivePredicate,
    max_look_ahead: timedelta = DEFAULT_MAX_LOOK_AHEAD,
) -> Result[int]:
    """Compute the next eligible firing time in epoch millis.

    The candidate starts one interval after ``last_fire_time``, moves to
    ``snooze_until`` when that is later, then advances one interval at a time
    until ``is_active`` accepts it. Giving up past ``max_look_ahead`` is
    reported as UNBOUNDED_LOOK_AHEAD.
    """
    if interval_minutes <= 0:
        return Result.failure(
            ErrorKind.INVALID_INTERVAL,
            f"reminder interval must be positive, got {interval_minutes}",
        )

    step = interval_minutes * MILLIS_PER_MINUTE
    candidate = last_fire_time + step
    if snooze_until is not None and snooze_until > candidate:
        candidate = snooze_until

    limit = candidate + int(max_look_ahead.total_seconds() * MILLIS_PER_SECOND)
    while not is_active(candidate):
        candidate += step
        if candidate > limit:
            return Result.failure(
                ErrorKind.UNBOUNDED_LOOK_AHEAD,
                f"no eligible reminder time within {max_look_ahead}; "
                "is the reminder schedule ever active?",
            )
    return Result.success(candidate)


def schedule_predicate(
    store: ScheduleStore, schedule_id: Optional[str], tz: Optional[tzinfo] = None
) -> ActivePredicate:
    """Predicate accepting instants inside the reminder schedule.

    Without a schedule, or when it cannot be resolved, every instant is
    eligible.
    """
    if schedule_id is None:
        return lambda _: True
    resolved = store.get_schedule(schedule_id)
    if not resolved.ok:
        logger.warning("Reminder schedule %s not found; reminders are unrestricted.", schedule_id)
        return lambda _: True
    schedule = resolved.value
    return lambda instant: is_active_at(schedule, instant, tz)


def evaluate_reminder(
    now: int,
    due_at: int,
    settings: EngineSettings,
    presence_state: PresenceState,
    schedule_active: bool,
) -> ReminderDecision:
    """Decide whether a reminder due at ``due_at`` should fire at ``now``."""
    if not settings.reminders_enabled:
        return ReminderDecision.DISABLED
    if now < due_at:
        return ReminderDecision.NOT_DUE
    if is_snoozed(now, settings.snooze_until):
        return ReminderDecision.SNOOZED
    if presence_state != PresenceState.AWAKE:
        logger.debug("Reminder held back: user is %s", presence_state.value)
        return ReminderDecision.NOT_AWAKE
    if not schedule_active:
        return ReminderDecision.OUTSIDE_SCHEDULE
    return ReminderDecision.FIRE


def snooze_until(now: int, snooze: timedelta) -> int:
    return now + int(snooze.total_seconds() * MILLIS_PER_SECOND)


def is_snoozed(now: int, until: Optional[int]) -> bool:
    return until is not None and now < until

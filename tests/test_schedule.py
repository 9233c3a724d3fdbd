"""Tests for weekly schedules and bedtime window resolution."""

from datetime import datetime, timedelta, timezone

import pytest

from habits_engine.errors import ErrorKind
from habits_engine.models import to_millis
from habits_engine.schedule import (
    DEFAULT_SLEEP_SCHEDULE,
    DEFAULT_SLEEP_SCHEDULE_ID,
    DayOfWeek,
    ManualSleepSchedule,
    MemoryScheduleStore,
    Schedule,
    ScheduleGroup,
    TimeBlock,
    WindowPrecedence,
    daily_coverage,
    format_minute_of_day,
    is_active_at,
    is_in_bedtime_window,
    schedule_coverage,
    schedule_from_dict,
    schedule_to_dict,
    summarize_schedule,
)

UTC = timezone.utc

# 2024-01-01 is a Monday
MONDAY = datetime(2024, 1, 1, tzinfo=UTC)


def at(days: int, hour: int, minute: int = 0) -> int:
    return to_millis(MONDAY + timedelta(days=days, hours=hour, minutes=minute))


@pytest.fixture
def monday_overnight():
    """Mon 23:00 to Tue 07:00."""
    return Schedule(
        id="overnight",
        name="Overnight",
        groups=(
            ScheduleGroup(
                name="Monday",
                blocks=(TimeBlock(DayOfWeek.MONDAY, 23 * 60, 7 * 60),),
            ),
        ),
    )


def test_time_block_rejects_bad_minutes():
    with pytest.raises(ValueError):
        TimeBlock(DayOfWeek.MONDAY, -1, 60)
    with pytest.raises(ValueError):
        TimeBlock(DayOfWeek.MONDAY, 0, 1440)
    with pytest.raises(ValueError):
        TimeBlock(DayOfWeek.MONDAY, 600, 600)


def test_overnight_block_spills_into_next_day(monday_overnight):
    assert is_active_at(monday_overnight, at(0, 23, 30), UTC)
    assert is_active_at(monday_overnight, at(1, 3), UTC)
    assert not is_active_at(monday_overnight, at(1, 7), UTC)
    assert not is_active_at(monday_overnight, at(0, 22, 59), UTC)


def test_overnight_block_does_not_fire_on_other_days(monday_overnight):
    # Tuesday 23:30 and Wednesday 03:00 belong to no block
    assert not is_active_at(monday_overnight, at(1, 23, 30), UTC)
    assert not is_active_at(monday_overnight, at(2, 3), UTC)


def test_active_at_is_weekly_periodic(monday_overnight):
    for hour in (0, 3, 6, 12, 22, 23):
        instant = at(0, hour, 15)
        week_later = instant + 7 * 24 * 60 * 60 * 1000
        assert is_active_at(monday_overnight, instant, UTC) == is_active_at(
            monday_overnight, week_later, UTC
        )


def test_active_at_accepts_datetimes(monday_overnight):
    assert is_active_at(monday_overnight, MONDAY + timedelta(hours=23, minutes=30))
    assert not is_active_at(None, MONDAY)


def test_default_schedule_covers_every_night():
    for day in range(7):
        assert is_active_at(DEFAULT_SLEEP_SCHEDULE, at(day, 23), UTC)
        assert is_active_at(DEFAULT_SLEEP_SCHEDULE, at(day, 5, 59), UTC)
        assert not is_active_at(DEFAULT_SLEEP_SCHEDULE, at(day, 6), UTC)
        assert not is_active_at(DEFAULT_SLEEP_SCHEDULE, at(day, 12), UTC)


def test_coverage_counts_overlaps_once():
    schedule = Schedule(
        id="s",
        name="Overlap",
        groups=(
            ScheduleGroup.for_days("A", [DayOfWeek.MONDAY], [(9 * 60, 12 * 60)]),
            ScheduleGroup.for_days("B", [DayOfWeek.MONDAY], [(11 * 60, 13 * 60)]),
        ),
    )

    coverage = schedule_coverage(schedule)

    assert coverage.total_hours == pytest.approx(4.0)
    assert coverage.coverage_percentage == pytest.approx(4 / 168 * 100)


def test_default_schedule_coverage():
    coverage = schedule_coverage(DEFAULT_SLEEP_SCHEDULE)
    assert coverage.total_hours == pytest.approx(56.0)
    assert coverage.coverage_percentage == pytest.approx(56 / 168 * 100)


def test_daily_coverage_attributes_wrap_to_start_day(monday_overnight):
    per_day = daily_coverage(monday_overnight)
    assert per_day[DayOfWeek.MONDAY].total_hours == pytest.approx(8.0)
    assert per_day[DayOfWeek.TUESDAY].total_hours == 0


def test_summary_groups_days_with_same_shape():
    schedule = Schedule(
        id="weekdays",
        name="Weekdays",
        groups=(
            ScheduleGroup.for_days(
                "Work nights",
                [DayOfWeek.MONDAY, DayOfWeek.TUESDAY, DayOfWeek.WEDNESDAY, DayOfWeek.THURSDAY, DayOfWeek.FRIDAY],
                [(22 * 60, 6 * 60)],
            ),
            ScheduleGroup.for_days("Weekend", [DayOfWeek.SATURDAY], [(23 * 60 + 30, 8 * 60)]),
        ),
    )

    assert summarize_schedule(schedule) == (
        "Mon-Fri: 10 PM - 6 AM (+1d)\nSat: 11:30 PM - 8 AM (+1d)"
    )


def test_summary_every_day_and_empty():
    assert summarize_schedule(DEFAULT_SLEEP_SCHEDULE) == "Every day: 10 PM - 6 AM (+1d)"
    assert summarize_schedule(Schedule(id="e", name="Empty")) == "No schedule set."


def test_format_minute_of_day():
    assert format_minute_of_day(0) == "12 AM"
    assert format_minute_of_day(9 * 60 + 30) == "9:30 AM"
    assert format_minute_of_day(12 * 60) == "12 PM"
    assert format_minute_of_day(20 * 60) == "8 PM"
    assert format_minute_of_day(1440) == "Invalid Time"


def test_schedule_dict_round_trip(monday_overnight):
    assert schedule_from_dict(schedule_to_dict(monday_overnight)) == monday_overnight


def test_memory_store_resolves_default_and_reports_missing():
    store = MemoryScheduleStore()

    assert store.get_schedule(DEFAULT_SLEEP_SCHEDULE_ID).value == DEFAULT_SLEEP_SCHEDULE
    missing = store.get_schedule("nope")
    assert not missing.ok
    assert missing.error.kind == ErrorKind.SCHEDULE_NOT_FOUND
    assert [s.id for s in store.list_schedules()] == [DEFAULT_SLEEP_SCHEDULE_ID]


def test_manual_window_wraps_midnight():
    manual = ManualSleepSchedule(bedtime_hour=23, bedtime_minute=0, wake_hour=7, wake_minute=0)

    assert manual.is_complete
    assert manual.contains(at(0, 23, 30), UTC)
    assert manual.contains(at(1, 6, 59), UTC)
    assert not manual.contains(at(1, 7), UTC)
    assert not manual.contains(at(0, 22), UTC)


def test_incomplete_manual_window_never_contains():
    manual = ManualSleepSchedule(bedtime_hour=23, bedtime_minute=0)
    assert not manual.is_complete
    assert not manual.contains(at(0, 23, 30), UTC)


def test_bedtime_window_prefers_schedule_by_default(monday_overnight):
    store = MemoryScheduleStore({"overnight": monday_overnight})
    manual = ManualSleepSchedule(bedtime_hour=12, bedtime_minute=0, wake_hour=13, wake_minute=0)

    noon = at(0, 12, 30)
    assert not is_in_bedtime_window(
        noon, store=store, schedule_id="overnight", manual=manual, tz=UTC
    )
    assert is_in_bedtime_window(
        noon,
        store=store,
        schedule_id="overnight",
        manual=manual,
        precedence=WindowPrecedence.MANUAL_FIRST,
        tz=UTC,
    )


def test_bedtime_window_falls_back_to_manual_when_schedule_missing(caplog):
    store = MemoryScheduleStore()
    manual = ManualSleepSchedule(bedtime_hour=12, bedtime_minute=0, wake_hour=13, wake_minute=0)

    assert is_in_bedtime_window(
        at(0, 12, 30), store=store, schedule_id="deleted", manual=manual, tz=UTC
    )
    assert "falling back" in caplog.text


def test_bedtime_window_inactive_without_any_source():
    store = MemoryScheduleStore()
    assert not is_in_bedtime_window(at(0, 23), store=store, schedule_id="deleted", tz=UTC)
    assert not is_in_bedtime_window(at(0, 23), store=store, schedule_id=None, tz=UTC)

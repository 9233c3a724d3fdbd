"""Tests for the HTTP API."""

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from habits_engine.config import EngineSettings, MonitorSettings
from habits_engine.models import MILLIS_PER_MINUTE, to_millis
from habits_engine.schedule import DEFAULT_SLEEP_SCHEDULE_ID, ManualSleepSchedule
from habits_engine.webapp import create_app

UTC = timezone.utc
# Monday 23:00 UTC, inside the 22:00-06:00 manual window
T0 = to_millis(datetime(2024, 1, 1, 23, 0, tzinfo=UTC))


class FakeClock:
    def __init__(self, now: int) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now


@pytest.fixture
def clock():
    return FakeClock(T0)


@pytest.fixture
def client(tmp_path, clock):
    app = create_app(
        db_path=tmp_path / "habits.sqlite3",
        settings=EngineSettings(
            selected_schedule_id=None,
            manual_schedule=ManualSleepSchedule(
                bedtime_hour=22, bedtime_minute=0, wake_hour=6, wake_minute=0
            ),
        ),
        monitor_settings=MonitorSettings(reorder_window=timedelta(0)),
        run_monitor=False,
        clock=clock,
        tz=UTC,
    )
    with TestClient(app) as test_client:
        yield test_client


def test_status_after_startup(client):
    response = client.get("/api/status")

    assert response.status_code == 200
    body = response.json()
    assert body["presence_state"] == "AWAKE"
    assert body["presence_since"] == T0
    assert body["monitor_running"] is False


def test_screen_off_then_confirmation_reaches_sleeping(client, clock):
    clock.now = T0 + 10_000

    response = client.post("/api/screen-events", json={"type": "SCREEN_OFF", "timestamp": T0 + 1_000})
    assert response.status_code == 201
    assert client.get("/api/status").json()["presence_state"] == "WINDING_DOWN"

    response = client.post("/api/sleep-confirmations", json={"timestamp": T0 + 2_000})
    assert response.status_code == 202
    assert client.get("/api/status").json()["presence_state"] == "SLEEPING"

    segments = client.get(
        "/api/presence/segments", params={"start": T0, "end": T0 + 10_000}
    ).json()["segments"]
    assert [(s["start"], s["end"], s["state"]) for s in segments] == [
        (T0, T0 + 1_000, "AWAKE"),
        (T0 + 1_000, T0 + 2_000, "WINDING_DOWN"),
        (T0 + 2_000, T0 + 10_000, "SLEEPING"),
    ]


def test_screen_event_rejects_unknown_type(client):
    response = client.post("/api/screen-events", json={"type": "BLINK"})
    assert response.status_code == 422


def test_screen_event_rejects_extra_fields(client):
    response = client.post("/api/screen-events", json={"type": "SCREEN_ON", "source": "x"})
    assert response.status_code == 422


def test_segments_reject_invalid_range(client):
    response = client.get("/api/presence/segments", params={"start": 10, "end": 10})
    assert response.status_code == 400


def test_app_usage_is_normalized_and_validated(client):
    response = client.post(
        "/api/app-usage",
        json={"package_name": " Com.Example.Mail/.MainActivity ", "start": T0, "end": T0 + 60_000},
    )
    assert response.status_code == 201
    assert response.json()["package_name"] == "com.example.mail"

    assert client.post("/api/app-usage", json={"package_name": "mail"}).status_code == 400
    bad_end = client.post(
        "/api/app-usage", json={"package_name": "com.example.mail", "start": T0, "end": T0}
    )
    assert bad_end.status_code == 400


def _record_morning(client):
    base = T0
    for offset, kind in [(0, "SCREEN_ON"), (10, "SCREEN_OFF"), (20, "SCREEN_ON"), (30, "SCREEN_OFF")]:
        client.post(
            "/api/screen-events",
            json={"type": kind, "timestamp": base + offset * MILLIS_PER_MINUTE},
        )
    client.post(
        "/api/app-usage",
        json={
            "package_name": "com.example.mail",
            "start": base + 2 * MILLIS_PER_MINUTE,
            "end": base + 8 * MILLIS_PER_MINUTE,
        },
    )


def test_usage_timeline(client, clock):
    clock.now = T0 + 60 * MILLIS_PER_MINUTE
    _record_morning(client)

    body = client.get(
        "/api/usage/timeline", params={"start": T0, "end": T0 + 60 * MILLIS_PER_MINUTE}
    ).json()

    assert body["pickup_count"] == 2
    assert body["total_screen_on_time"] == 20 * MILLIS_PER_MINUTE
    first_period = body["periods"][0]
    assert [s["package_name"] for s in first_period["segments"]] == ["com.example.mail"]
    assert first_period["segments"][0]["color"] is None


def test_usage_statistics(client, clock):
    clock.now = T0 + 60 * MILLIS_PER_MINUTE
    _record_morning(client)

    body = client.get(
        "/api/usage/statistics",
        params={"start": T0, "end": T0 + 60 * MILLIS_PER_MINUTE, "bin_minutes": 15},
    ).json()

    assert len(body["bins"]) == 4
    assert [b["total_screen_on_time"] for b in body["bins"]] == [
        10 * MILLIS_PER_MINUTE,
        10 * MILLIS_PER_MINUTE,
        0,
        0,
    ]
    assert body["total_usage_per_app"] == {"com.example.mail": 6 * MILLIS_PER_MINUTE}
    assert body["total_opens_per_app"] == {"com.example.mail": 1}


def test_usage_statistics_rejects_bad_bin(client):
    response = client.get(
        "/api/usage/statistics", params={"start": 0, "end": 100, "bin_minutes": 0}
    )
    assert response.status_code == 400


def test_next_reminder(client):
    body = client.get(
        "/api/reminders/next", params={"last_fire": 0, "interval_minutes": 60}
    ).json()
    assert body["next_fire_time"] == 60 * MILLIS_PER_MINUTE

    bad = client.get("/api/reminders/next", params={"last_fire": 0, "interval_minutes": 0})
    assert bad.status_code == 400


def test_next_reminder_with_never_active_schedule(client):
    assert client.put("/api/schedules/never", json={"name": "Never"}).status_code == 200
    client.patch("/api/settings", json={"reminder_schedule_id": "never"})

    response = client.get("/api/reminders/next", params={"last_fire": 0})

    assert response.status_code == 422


def test_schedule_crud(client):
    listed = client.get("/api/schedules").json()["schedules"]
    assert [s["id"] for s in listed] == [DEFAULT_SLEEP_SCHEDULE_ID]
    assert listed[0]["summary"] == "Every day: 10 PM - 6 AM (+1d)"

    payload = {
        "name": "Work nights",
        "groups": [
            {
                "name": "Weeknights",
                "blocks": [{"day": "monday", "start_minute": 23 * 60, "end_minute": 7 * 60}],
            }
        ],
    }
    saved = client.put("/api/schedules/work", json=payload)
    assert saved.status_code == 200
    assert saved.json()["summary"] == "Mon: 11 PM - 7 AM (+1d)"

    tuesday_3am = to_millis(datetime(2024, 1, 2, 3, 0, tzinfo=UTC))
    active = client.get("/api/schedules/work/active", params={"at": tuesday_3am}).json()
    assert active["active"] is True

    assert client.delete("/api/schedules/work").status_code == 204
    assert client.delete("/api/schedules/work").status_code == 404
    assert client.get("/api/schedules/work/active").status_code == 404


@pytest.mark.parametrize(
    ("block", "status"),
    [
        ({"day": "funday", "start_minute": 0, "end_minute": 60}, 400),
        ({"day": "monday", "start_minute": 60, "end_minute": 60}, 400),
        ({"day": "monday", "start_minute": 0, "end_minute": 2000}, 422),
    ],
)
def test_schedule_validation(client, block, status):
    payload = {"name": "Bad", "groups": [{"name": "g", "blocks": [block]}]}
    assert client.put("/api/schedules/bad", json=payload).status_code == status


def test_settings_update(client, clock):
    response = client.patch(
        "/api/settings", json={"bedtime_tracking_enabled": False, "inactivity_minutes": 10}
    )
    assert response.status_code == 200
    assert response.json()["inactivity_minutes"] == 10

    clock.now = T0 + 10_000
    client.post("/api/screen-events", json={"type": "SCREEN_OFF", "timestamp": T0 + 1_000})
    assert client.get("/api/status").json()["presence_state"] == "AWAKE"

    assert client.patch("/api/settings", json={"theme": "dark"}).status_code == 422


def test_synchronous_mode_with_default_reorder_window(tmp_path, clock):
    app = create_app(
        db_path=tmp_path / "habits.sqlite3",
        settings=EngineSettings(
            selected_schedule_id=None,
            manual_schedule=ManualSleepSchedule(
                bedtime_hour=22, bedtime_minute=0, wake_hour=6, wake_minute=0
            ),
        ),
        run_monitor=False,
        clock=clock,
        tz=UTC,
    )

    with TestClient(app) as test_client:
        assert test_client.get("/api/status").json()["presence_state"] == "AWAKE"

        clock.now = T0 + 60_000
        test_client.post("/api/screen-events", json={"type": "SCREEN_OFF"})
        assert test_client.get("/api/status").json()["presence_state"] == "WINDING_DOWN"


def test_default_schedule_cannot_be_deleted(client):
    response = client.delete(f"/api/schedules/{DEFAULT_SLEEP_SCHEDULE_ID}")

    assert response.status_code == 409
    assert response.json()["detail"] == "The default schedule cannot be deleted."


@pytest.mark.parametrize(
    ("settings", "usage"),
    [
        ({"selected_schedule_id": "naps"}, "sleep tracking"),
        ({"reminder_schedule_id": "naps"}, "reminders"),
        (
            {"selected_schedule_id": "naps", "reminder_schedule_id": "naps"},
            "sleep tracking and reminders",
        ),
    ],
)
def test_assigned_schedule_cannot_be_deleted(client, settings, usage):
    assert client.put("/api/schedules/naps", json={"name": "Naps"}).status_code == 200
    assert client.patch("/api/settings", json=settings).status_code == 200

    response = client.delete("/api/schedules/naps")

    assert response.status_code == 409
    assert response.json()["detail"] == f"Cannot delete schedule. It's assigned to {usage}."
    assert any(s["id"] == "naps" for s in client.get("/api/schedules").json()["schedules"])

    client.patch("/api/settings", json={"selected_schedule_id": None, "reminder_schedule_id": None})
    assert client.delete("/api/schedules/naps").status_code == 204


def test_background_monitor_runs_with_lifespan(tmp_path):
    app = create_app(
        db_path=tmp_path / "habits.sqlite3",
        monitor_settings=MonitorSettings(reorder_window=timedelta(0)),
    )

    with TestClient(app) as test_client:
        assert test_client.get("/api/status").json()["monitor_running"] is True
        monitor = app.state.monitor
        assert monitor.machine.cell.wait_for(lambda s: s.state.value == "AWAKE", timeout=5)

    assert not app.state.monitor.is_running()


def test_sleep_classification_confirms_sleep(client, clock):
    clock.now = T0 + 10_000
    client.post("/api/screen-events", json={"type": "SCREEN_OFF", "timestamp": T0 + 1_000})

    weak = client.post(
        "/api/sleep-classifications",
        json={"timestamp": T0 + 2_000, "confidence": 40, "light": 1, "motion": 1},
    )
    assert weak.json()["confirmed"] is False
    assert client.get("/api/status").json()["presence_state"] == "WINDING_DOWN"

    strong = client.post(
        "/api/sleep-classifications",
        json={"timestamp": T0 + 3_000, "confidence": 90, "light": 1, "motion": 4},
    )
    assert strong.status_code == 202
    assert strong.json()["confirmed"] is True
    assert client.get("/api/status").json()["presence_state"] == "SLEEPING"


def test_whitelisted_apps_and_limit_breaches(client):
    assert client.put("/api/apps/com.example.video", json={"color": "#ff0000"}).status_code == 200
    client.put(
        "/api/apps/com.example.video",
        json={"color": "ff0000", "daily_limit_minutes": 60, "session_limit_minutes": 20},
    )
    client.put("/api/apps/com.example.news", json={"color": "#00FF00", "daily_limit_minutes": 10})
    assert client.put("/api/apps/com.example.bad", json={"color": "red"}).status_code == 400

    apps = client.get("/api/apps").json()["apps"]
    assert {a["package_name"]: a["color"] for a in apps} == {
        "com.example.news": "#00FF00",
        "com.example.video": "#FF0000",
    }

    client.post(
        "/api/app-usage",
        json={
            "package_name": "com.example.news",
            "start": T0 - 120 * MILLIS_PER_MINUTE,
            "end": T0 - 105 * MILLIS_PER_MINUTE,
        },
    )
    client.post(
        "/api/app-usage",
        json={"package_name": "com.example.video", "start": T0 - 25 * MILLIS_PER_MINUTE},
    )

    breaches = client.get("/api/limits/breaches").json()["breaches"]

    assert {b["package_name"]: b["kind"] for b in breaches} == {
        "com.example.news": "daily",
        "com.example.video": "session",
    }


def test_timeline_uses_app_colors(client, clock):
    client.put("/api/apps/com.example.mail", json={"color": "#123456"})
    clock.now = T0 + 60 * MILLIS_PER_MINUTE
    _record_morning(client)

    body = client.get(
        "/api/usage/timeline", params={"start": T0, "end": T0 + 60 * MILLIS_PER_MINUTE}
    ).json()

    assert body["periods"][0]["segments"][0]["color"] == "#123456"


def test_reminder_decision(client):
    disabled = client.get("/api/reminders/decision", params={"due_at": T0 - 1}).json()
    assert disabled["decision"] == "disabled"

    client.patch("/api/settings", json={"reminders_enabled": True})

    assert client.get("/api/reminders/decision", params={"due_at": T0 - 1}).json() == {
        "decision": "fire",
        "presence_state": "AWAKE",
    }
    assert (
        client.get("/api/reminders/decision", params={"due_at": T0 + 1}).json()["decision"]
        == "not_due"
    )


def test_schedule_listing_includes_daily_hours(client):
    listed = client.get("/api/schedules").json()["schedules"][0]
    assert listed["daily_hours"]["MONDAY"] == 8.0
    assert listed["coverage_percentage"] == pytest.approx(56 / 168 * 100)

"""SQLite database layer for presence, screen and app usage events."""

from __future__ import annotations

import json
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterable, Iterator, Optional

from .errors import ErrorKind, Result
from .limits import WhitelistedApp
from .models import (
    AppUsageEvent,
    PresenceEvent,
    PresenceState,
    ScreenEvent,
    ScreenEventType,
)
from .schedule import (
    DEFAULT_SLEEP_SCHEDULE,
    DEFAULT_SLEEP_SCHEDULE_ID,
    Schedule,
    schedule_from_dict,
    schedule_to_dict,
)


def open_database(path: Path, *, check_same_thread: bool = True) -> sqlite3.Connection:
    """Open (and initialize) the SQLite database."""
    conn = sqlite3.connect(
        path,
        isolation_level=None,
        check_same_thread=check_same_thread,
    )
    conn.row_factory = sqlite3.Row
    initialize_schema(conn)
    return conn


@contextmanager
def database_connection(
    path: Path, *, check_same_thread: bool = True
) -> Iterator[sqlite3.Connection]:
    conn = open_database(path, check_same_thread=check_same_thread)
    try:
        yield conn
    finally:
        conn.close()


def initialize_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS presence_events (
            id INTEGER PRIMARY KEY,
            timestamp INTEGER NOT NULL,
            state TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_presence_timestamp
            ON presence_events(timestamp);

        CREATE TABLE IF NOT EXISTS screen_events (
            id INTEGER PRIMARY KEY,
            timestamp INTEGER NOT NULL,
            event_type TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_screen_timestamp
            ON screen_events(timestamp);

        CREATE TABLE IF NOT EXISTS app_usage_events (
            id INTEGER PRIMARY KEY,
            package_name TEXT NOT NULL,
            start_timestamp INTEGER NOT NULL,
            end_timestamp INTEGER
        );

        CREATE INDEX IF NOT EXISTS idx_app_usage_start
            ON app_usage_events(start_timestamp);

        CREATE TABLE IF NOT EXISTS schedules (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            body TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS whitelisted_apps (
            package_name TEXT PRIMARY KEY,
            color TEXT NOT NULL,
            daily_limit_minutes INTEGER,
            session_limit_minutes INTEGER
        );
        """
    )


def insert_presence_event(conn: sqlite3.Connection, event: PresenceEvent) -> None:
    conn.execute(
        "INSERT INTO presence_events (timestamp, state) VALUES (?, ?)",
        (event.timestamp, event.state.value),
    )


def insert_screen_events(conn: sqlite3.Connection, events: Iterable[ScreenEvent]) -> None:
    conn.executemany(
        "INSERT INTO screen_events (timestamp, event_type) VALUES (?, ?)",
        [(event.timestamp, event.type.value) for event in events],
    )


def insert_app_usage_event(conn: sqlite3.Connection, event: AppUsageEvent) -> int:
    """Insert a usage session and return its row id."""
    cur = conn.execute(
        """
        INSERT INTO app_usage_events (package_name, start_timestamp, end_timestamp)
        VALUES (?, ?, ?)
        """,
        (event.package_name, event.start, event.end),
    )
    return int(cur.lastrowid)


def close_open_sessions(conn: sqlite3.Connection, package_name: str, end: int) -> int:
    """Close every open session for ``package_name``; returns the row count."""
    cur = conn.execute(
        """
        UPDATE app_usage_events SET end_timestamp = MAX(start_timestamp, ?)
        WHERE package_name = ? AND end_timestamp IS NULL
        """,
        (end, package_name),
    )
    return cur.rowcount


def fetch_presence_events_in_range(
    conn: sqlite3.Connection, start: int, end: int
) -> list[PresenceEvent]:
    rows = conn.execute(
        """
        SELECT timestamp, state FROM presence_events
        WHERE timestamp >= ? AND timestamp < ?
        ORDER BY timestamp, id;
        """,
        (start, end),
    )
    return [_row_to_presence(row) for row in rows]


def fetch_latest_presence_before(
    conn: sqlite3.Connection, timestamp: int
) -> Optional[PresenceEvent]:
    row = conn.execute(
        """
        SELECT timestamp, state FROM presence_events
        WHERE timestamp <= ?
        ORDER BY timestamp DESC, id DESC
        LIMIT 1;
        """,
        (timestamp,),
    ).fetchone()
    return _row_to_presence(row) if row else None


def fetch_screen_events_in_range(
    conn: sqlite3.Connection, start: int, end: int
) -> list[ScreenEvent]:
    """Screen events in range, plus the last one before it so open periods survive."""
    rows = conn.execute(
        """
        SELECT timestamp, event_type FROM (
            SELECT id, timestamp, event_type FROM screen_events
            WHERE timestamp < ?
            ORDER BY timestamp DESC, id DESC
            LIMIT 1
        )
        UNION ALL
        SELECT timestamp, event_type FROM screen_events
        WHERE timestamp >= ? AND timestamp < ?
        ORDER BY timestamp;
        """,
        (start, start, end),
    )
    return [
        ScreenEvent(timestamp=row["timestamp"], type=ScreenEventType(row["event_type"]))
        for row in rows
    ]


def fetch_app_usage_in_range(
    conn: sqlite3.Connection, start: int, end: int
) -> list[AppUsageEvent]:
    rows = conn.execute(
        """
        SELECT package_name, start_timestamp, end_timestamp FROM app_usage_events
        WHERE start_timestamp < ? AND (end_timestamp IS NULL OR end_timestamp > ?)
        ORDER BY start_timestamp;
        """,
        (end, start),
    )
    return [
        AppUsageEvent(
            package_name=row["package_name"],
            start=row["start_timestamp"],
            end=row["end_timestamp"],
        )
        for row in rows
    ]


def upsert_schedule(conn: sqlite3.Connection, schedule: Schedule) -> None:
    conn.execute(
        """
        INSERT INTO schedules (id, name, body) VALUES (?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET name = excluded.name, body = excluded.body
        """,
        (schedule.id, schedule.name, json.dumps(schedule_to_dict(schedule))),
    )


def fetch_schedule(conn: sqlite3.Connection, schedule_id: str) -> Optional[Schedule]:
    row = conn.execute("SELECT body FROM schedules WHERE id = ?", (schedule_id,)).fetchone()
    if row is None:
        return None
    return schedule_from_dict(json.loads(row["body"]))


def fetch_schedules(conn: sqlite3.Connection) -> list[Schedule]:
    rows = conn.execute("SELECT body FROM schedules ORDER BY name COLLATE NOCASE")
    return [schedule_from_dict(json.loads(row["body"])) for row in rows]


def delete_schedule(conn: sqlite3.Connection, schedule_id: str) -> bool:
    cur = conn.execute("DELETE FROM schedules WHERE id = ?", (schedule_id,))
    return cur.rowcount > 0


def upsert_whitelisted_app(conn: sqlite3.Connection, app: WhitelistedApp) -> None:
    conn.execute(
        """
        INSERT INTO whitelisted_apps (
            package_name, color, daily_limit_minutes, session_limit_minutes
        ) VALUES (?, ?, ?, ?)
        ON CONFLICT(package_name) DO UPDATE SET
            color = excluded.color,
            daily_limit_minutes = excluded.daily_limit_minutes,
            session_limit_minutes = excluded.session_limit_minutes
        """,
        (app.package_name, app.color, app.daily_limit_minutes, app.session_limit_minutes),
    )


def fetch_whitelisted_apps(conn: sqlite3.Connection) -> list[WhitelistedApp]:
    rows = conn.execute(
        """
        SELECT package_name, color, daily_limit_minutes, session_limit_minutes
        FROM whitelisted_apps ORDER BY package_name
        """
    )
    return [
        WhitelistedApp(
            package_name=row["package_name"],
            color=row["color"],
            daily_limit_minutes=row["daily_limit_minutes"],
            session_limit_minutes=row["session_limit_minutes"],
        )
        for row in rows
    ]


def _row_to_presence(row: sqlite3.Row) -> PresenceEvent:
    return PresenceEvent(timestamp=row["timestamp"], state=PresenceState(row["state"]))


class SQLiteEventStore:
    """Event source, event log and schedule store over one shared connection."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self._conn = open_database(self.db_path, check_same_thread=False)
        self._lock = threading.Lock()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def append_presence_event(self, event: PresenceEvent) -> None:
        with self._lock:
            insert_presence_event(self._conn, event)

    def append_screen_event(self, event: ScreenEvent) -> None:
        with self._lock:
            insert_screen_events(self._conn, [event])

    def append_app_usage_event(self, event: AppUsageEvent) -> None:
        """Record a session; opening one closes any still-open session for the package."""
        with self._lock:
            close_open_sessions(self._conn, event.package_name, event.start)
            insert_app_usage_event(self._conn, event)

    def end_app_session(self, package_name: str, end: int) -> int:
        with self._lock:
            return close_open_sessions(self._conn, package_name, end)

    def presence_events_in_range(self, start: int, end: int) -> list[PresenceEvent]:
        with self._lock:
            return fetch_presence_events_in_range(self._conn, start, end)

    def latest_presence_before(self, timestamp: int) -> Optional[PresenceEvent]:
        with self._lock:
            return fetch_latest_presence_before(self._conn, timestamp)

    def screen_events_in_range(self, start: int, end: int) -> list[ScreenEvent]:
        with self._lock:
            return fetch_screen_events_in_range(self._conn, start, end)

    def app_usage_events_in_range(self, start: int, end: int) -> list[AppUsageEvent]:
        with self._lock:
            return fetch_app_usage_in_range(self._conn, start, end)

    def get_schedule(self, schedule_id: str) -> Result[Schedule]:
        with self._lock:
            schedule = fetch_schedule(self._conn, schedule_id)
        if schedule is None and schedule_id == DEFAULT_SLEEP_SCHEDULE_ID:
            schedule = DEFAULT_SLEEP_SCHEDULE
        if schedule is None:
            return Result.failure(
                ErrorKind.SCHEDULE_NOT_FOUND, f"No schedule with id={schedule_id}"
            )
        return Result.success(schedule)

    def list_schedules(self) -> list[Schedule]:
        with self._lock:
            stored = fetch_schedules(self._conn)
        if DEFAULT_SLEEP_SCHEDULE_ID not in {s.id for s in stored}:
            stored.insert(0, DEFAULT_SLEEP_SCHEDULE)
        return stored

    def save_schedule(self, schedule: Schedule) -> None:
        with self._lock:
            upsert_schedule(self._conn, schedule)

    def delete_schedule(self, schedule_id: str) -> bool:
        with self._lock:
            return delete_schedule(self._conn, schedule_id)

    def whitelisted_apps(self) -> list[WhitelistedApp]:
        with self._lock:
            return fetch_whitelisted_apps(self._conn)

    def save_whitelisted_app(self, app: WhitelistedApp) -> None:
        with self._lock:
            upsert_whitelisted_app(self._conn, app)

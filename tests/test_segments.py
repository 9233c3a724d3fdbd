"""Tests for projecting the presence log onto a time range."""

from habits_engine.errors import ErrorKind
from habits_engine.models import PresenceEvent, PresenceState, TimelineSegment
from habits_engine.presence import consolidate_segments, reconstruct_segments

AWAKE = PresenceState.AWAKE
WINDING = PresenceState.WINDING_DOWN
SLEEPING = PresenceState.SLEEPING
UNKNOWN = PresenceState.UNKNOWN


def spans(segments):
    return [(s.start, s.end, s.state) for s in segments]


def test_segments_follow_events_and_end_at_range_end():
    events = [
        PresenceEvent(10, AWAKE),
        PresenceEvent(40, WINDING),
        PresenceEvent(60, SLEEPING),
    ]

    segments = reconstruct_segments(events, 0, 100).unwrap()

    assert spans(segments) == [
        (0, 10, UNKNOWN),
        (10, 40, AWAKE),
        (40, 60, WINDING),
        (60, 100, SLEEPING),
    ]


def test_state_before_range_comes_from_latest_earlier_event():
    events = [
        PresenceEvent(5, AWAKE),
        PresenceEvent(15, SLEEPING),
        PresenceEvent(50, AWAKE),
    ]

    segments = reconstruct_segments(events, 20, 80).unwrap()

    assert spans(segments) == [(20, 50, SLEEPING), (50, 80, AWAKE)]


def test_preceding_event_anchors_the_range():
    events = [PresenceEvent(50, AWAKE)]

    segments = reconstruct_segments(
        events, 20, 80, preceding=PresenceEvent(3, SLEEPING)
    ).unwrap()

    assert spans(segments) == [(20, 50, SLEEPING), (50, 80, AWAKE)]


def test_event_exactly_at_range_start_sets_initial_state():
    segments = reconstruct_segments([PresenceEvent(20, AWAKE)], 20, 30).unwrap()
    assert spans(segments) == [(20, 30, AWAKE)]


def test_events_after_range_are_ignored():
    events = [PresenceEvent(10, AWAKE), PresenceEvent(120, SLEEPING)]
    segments = reconstruct_segments(events, 0, 100).unwrap()
    assert spans(segments) == [(0, 10, UNKNOWN), (10, 100, AWAKE)]


def test_empty_log_is_unknown_for_whole_range():
    segments = reconstruct_segments([], 0, 100).unwrap()
    assert spans(segments) == [(0, 100, UNKNOWN)]


def test_repeated_state_events_are_merged():
    events = [PresenceEvent(10, AWAKE), PresenceEvent(30, AWAKE)]
    segments = reconstruct_segments(events, 10, 50).unwrap()
    assert spans(segments) == [(10, 50, AWAKE)]


def test_segment_durations_cover_the_range():
    events = [PresenceEvent(t, state) for t, state in [(7, AWAKE), (33, WINDING), (34, AWAKE)]]
    segments = reconstruct_segments(events, 0, 90).unwrap()
    assert sum(s.duration for s in segments) == 90


def test_invalid_range_is_rejected():
    result = reconstruct_segments([], 10, 10)
    assert result.error.kind == ErrorKind.INVALID_RANGE


def test_consolidate_drops_empty_segments():
    merged = consolidate_segments(
        [
            TimelineSegment(0, 0, AWAKE),
            TimelineSegment(0, 5, SLEEPING),
            TimelineSegment(5, 9, SLEEPING),
        ]
    )
    assert spans(merged) == [(0, 9, SLEEPING)]

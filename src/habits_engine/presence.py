"""The presence state machine.

This module contains the pure decision logic. It accepts timestamped signals
plus an evaluation context and returns the state transitions they cause.
Transitions are appended to an event log and published on an observable
state cell; nothing here blocks on I/O or reads the wall clock.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable, Iterable, Optional, Protocol

from .errors import Result, check_range
from .models import PresenceEvent, PresenceState, TimelineSegment

logger = logging.getLogger(__name__)


class SignalKind(Enum):
    MONITORING_STARTED = "monitoring_started"
    MONITORING_STOPPED = "monitoring_stopped"
    SCREEN_ON = "screen_on"
    SCREEN_OFF = "screen_off"
    SLEEP_CONFIRMED = "sleep_confirmed"
    TICK = "tick"


@dataclass(frozen=True, slots=True)
class PresenceSignal:
    """A discrete trigger for one evaluation.

    Attributes:
        kind: What happened.
        timestamp: When it happened, in epoch millis.
        confirmed: Only meaningful for SLEEP_CONFIRMED; a False pulse is
            ignored rather than treated as evidence of wakefulness.
    """

    kind: SignalKind
    timestamp: int
    confirmed: bool = True


@dataclass(frozen=True, slots=True)
class EvaluationContext:
    """Inputs re-read from settings and schedules for every evaluation."""

    tracking_enabled: bool
    in_bedtime_window: bool
    inactivity_threshold_ms: int

    @property
    def sleep_relevant(self) -> bool:
        return self.tracking_enabled and self.in_bedtime_window


@dataclass(frozen=True, slots=True)
class PresenceRuntimeState:
    """Transient state owned by the machine.

    Attributes:
        state: Current presence state.
        since: Timestamp of the transition into ``state``.
        screen_on: Last known screen state, None before the first screen event.
        monitoring: Whether monitoring is running.
    """

    state: PresenceState = PresenceState.UNKNOWN
    since: Optional[int] = None
    screen_on: Optional[bool] = None
    monitoring: bool = False


@dataclass(frozen=True, slots=True)
class StateTransition:
    previous_state: PresenceState
    new_state: PresenceState
    timestamp: int
    reason: str


@dataclass(frozen=True, slots=True)
class EvaluationResult:
    """Result of one evaluation.

    Attributes:
        transitions: Transitions caused by the signal, in order.
        next_check: When the inactivity threshold elapses while winding
            down, so the caller can schedule a tick; otherwise None.
    """

    transitions: list[StateTransition] = field(default_factory=list)
    next_check: Optional[int] = None


@dataclass(frozen=True, slots=True)
class PresenceSnapshot:
    state: PresenceState
    since: Optional[int] = None


class PresenceEventLog(Protocol):
    def append_presence_event(self, event: PresenceEvent) -> None: ...


class PresenceStateCell:
    """Observable holder of the latest presence state.

    One writer (the state machine), any number of readers and subscribers.
    """

    def __init__(self, initial: PresenceState = PresenceState.UNKNOWN) -> None:
        self._value = PresenceSnapshot(state=initial)
        self._condition = threading.Condition()
        self._subscribers: list[Callable[[PresenceSnapshot], None]] = []

    def get(self) -> PresenceSnapshot:
        with self._condition:
            return self._value

    @property
    def state(self) -> PresenceState:
        return self.get().state

    def set(self, state: PresenceState, since: Optional[int]) -> None:
        snapshot = PresenceSnapshot(state=state, since=since)
        with self._condition:
            self._value = snapshot
            subscribers = list(self._subscribers)
            self._condition.notify_all()
        for callback in subscribers:
            try:
                callback(snapshot)
            except Exception:
                logger.exception("Presence subscriber %r failed", callback)

    def subscribe(
        self, callback: Callable[[PresenceSnapshot], None]
    ) -> Callable[[], None]:
        with self._condition:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._condition:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def wait_for(
        self,
        predicate: Callable[[PresenceSnapshot], bool],
        timeout: Optional[float] = None,
    ) -> bool:
        with self._condition:
            return self._condition.wait_for(lambda: predicate(self._value), timeout)


class PresenceStateMachine:
    """The functional core of presence detection."""

    def __init__(
        self,
        cell: Optional[PresenceStateCell] = None,
        event_log: Optional[PresenceEventLog] = None,
    ) -> None:
        """Initialize the machine.

        Args:
            cell: State cell to publish into; a fresh UNKNOWN cell by default.
            event_log: Collaborator receiving every emitted PresenceEvent.
        """
        self.cell = cell or PresenceStateCell()
        self.event_log = event_log
        snapshot = self.cell.get()
        self._runtime = PresenceRuntimeState(state=snapshot.state, since=snapshot.since)
        self._lock = threading.Lock()
        # Serializes evaluation and publishing so subscribers see states in order.
        self._evaluation_lock = threading.Lock()

    @property
    def runtime(self) -> PresenceRuntimeState:
        with self._lock:
            return self._runtime

    @property
    def state(self) -> PresenceState:
        return self.runtime.state

    def handle(self, signal: PresenceSignal, context: EvaluationContext) -> EvaluationResult:
        """Evaluate one signal and return the transitions it caused.

        Args:
            signal: The trigger, carrying its own timestamp.
            context: Settings and schedule membership at ``signal.timestamp``.

        Returns:
            EvaluationResult with transitions and the next inactivity check.
        """
        with self._evaluation_lock:
            with self._lock:
                result = self._apply(signal, context)
            # Subscribers run outside the state lock and may read the machine.
            for transition in result.transitions:
                self.cell.set(transition.new_state, transition.timestamp)
            return result

    def _apply(self, signal: PresenceSignal, context: EvaluationContext) -> EvaluationResult:
        transitions: list[StateTransition] = []
        now = signal.timestamp

        if signal.kind == SignalKind.MONITORING_STOPPED:
            self._runtime = replace(self._runtime, monitoring=False)
            if self._runtime.state != PresenceState.UNKNOWN:
                self._commit(PresenceState.UNKNOWN, now, "monitoring stopped", transitions)
            return EvaluationResult(transitions=transitions)

        if signal.kind == SignalKind.MONITORING_STARTED:
            self._runtime = replace(self._runtime, monitoring=True)
        elif not self._runtime.monitoring:
            logger.debug("Ignoring %s while monitoring is stopped", signal.kind.value)
            return EvaluationResult()

        if signal.kind == SignalKind.SCREEN_ON:
            self._runtime = replace(self._runtime, screen_on=True)
        elif signal.kind == SignalKind.SCREEN_OFF:
            self._runtime = replace(self._runtime, screen_on=False)

        confirmed = signal.kind == SignalKind.SLEEP_CONFIRMED and signal.confirmed

        # Transitions may chain, e.g. AWAKE -> WINDING_DOWN -> SLEEPING.
        for _ in range(len(PresenceState)):
            decision = self._next_state(signal.kind, context, confirmed, now)
            if decision is None:
                break
            new_state, reason = decision
            self._commit(new_state, now, reason, transitions)

        if not transitions:
            logger.debug(
                "State unchanged: %s (%s)", self._runtime.state.value, signal.kind.value
            )

        return EvaluationResult(
            transitions=transitions,
            next_check=self._next_check(context),
        )

    def _next_state(
        self,
        kind: SignalKind,
        context: EvaluationContext,
        confirmed: bool,
        now: int,
    ) -> Optional[tuple[PresenceState, str]]:
        runtime = self._runtime
        state = runtime.state

        if state == PresenceState.UNKNOWN:
            if kind == SignalKind.MONITORING_STARTED:
                return PresenceState.AWAKE, "monitoring started"
            if kind == SignalKind.SCREEN_ON:
                return PresenceState.AWAKE, "screen on"
            return None

        if state == PresenceState.AWAKE:
            if runtime.screen_on is False and context.sleep_relevant:
                return PresenceState.WINDING_DOWN, "screen off inside bedtime window"
            return None

        if state == PresenceState.WINDING_DOWN:
            if runtime.screen_on:
                return PresenceState.AWAKE, "screen on"
            if not context.sleep_relevant:
                return PresenceState.AWAKE, "bedtime window ended"
            if confirmed:
                return PresenceState.SLEEPING, "sleep confirmed"
            since = runtime.since if runtime.since is not None else now
            if now - since >= context.inactivity_threshold_ms:
                return PresenceState.SLEEPING, "inactivity threshold reached"
            return None

        if state == PresenceState.SLEEPING:
            if runtime.screen_on:
                return PresenceState.AWAKE, "screen on"
            if not context.sleep_relevant:
                return PresenceState.AWAKE, "bedtime window ended"
            return None

        raise ValueError(f"Unhandled presence state: {state}")

    def _commit(
        self,
        new_state: PresenceState,
        now: int,
        reason: str,
        transitions: list[StateTransition],
    ) -> None:
        previous = self._runtime.state
        self._runtime = replace(self._runtime, state=new_state, since=now)
        if self.event_log is not None:
            self.event_log.append_presence_event(PresenceEvent(timestamp=now, state=new_state))
        transitions.append(
            StateTransition(
                previous_state=previous,
                new_state=new_state,
                timestamp=now,
                reason=reason,
            )
        )
        logger.info("Presence %s -> %s (%s)", previous.value, new_state.value, reason)

    def _next_check(self, context: EvaluationContext) -> Optional[int]:
        runtime = self._runtime
        if runtime.state != PresenceState.WINDING_DOWN or runtime.since is None:
            return None
        return runtime.since + context.inactivity_threshold_ms


def reconstruct_segments(
    events: Iterable[PresenceEvent],
    range_start: int,
    range_end: int,
    preceding: Optional[PresenceEvent] = None,
) -> Result[list[TimelineSegment]]:
    """Project a presence event log onto ``[range_start, range_end)``.

    The state in force at ``range_start`` is taken from the latest event at
    or before it (from ``events`` or ``preceding``), else UNKNOWN.
    """
    invalid = check_range(range_start, range_end)
    if invalid is not None:
        return invalid

    ordered = sorted(events, key=lambda e: e.timestamp)
    anchor = preceding if preceding is not None and preceding.timestamp <= range_start else None
    in_range: list[PresenceEvent] = []
    for event in ordered:
        if event.timestamp <= range_start:
            if anchor is None or event.timestamp >= anchor.timestamp:
                anchor = event
        elif event.timestamp < range_end:
            in_range.append(event)

    state = anchor.state if anchor is not None else PresenceState.UNKNOWN
    cursor = range_start
    segments: list[TimelineSegment] = []
    for event in in_range:
        if event.timestamp > cursor:
            segments.append(TimelineSegment(start=cursor, end=event.timestamp, state=state))
        state = event.state
        cursor = event.timestamp
    if cursor < range_end:
        segments.append(TimelineSegment(start=cursor, end=range_end, state=state))

    return Result.success(consolidate_segments(segments))


def consolidate_segments(segments: Iterable[TimelineSegment]) -> list[TimelineSegment]:
    """Merge touching segments that share a state."""
    merged: list[TimelineSegment] = []
    for segment in segments:
        if segment.duration <= 0:
            continue
        if merged and merged[-1].state == segment.state and merged[-1].end == segment.start:
            merged[-1] = replace(merged[-1], end=segment.end)
        else:
            merged.append(segment)
    return merged

"""Single-consumer evaluation loop feeding the presence state machine."""

from __future__ import annotations

import heapq
import itertools
import logging
import queue
import threading
from dataclasses import replace
from datetime import tzinfo
from typing import Callable, Optional

from .config import MonitorSettings, SettingsProvider
from .models import MILLIS_PER_SECOND, now_millis
from .presence import (
    EvaluationContext,
    PresenceSignal,
    PresenceStateMachine,
    SignalKind,
    StateTransition,
)
from .schedule import ScheduleStore, is_in_bedtime_window

logger = logging.getLogger(__name__)

Clock = Callable[[], int]


class PresenceMonitor:
    """Buffers signals, orders them by timestamp and evaluates them one at a time.

    Producers call :meth:`submit` from any thread. Signals are held for
    ``reorder_window`` so late deliveries can be sorted in, then evaluated in
    timestamp order. Periodic ticks let time-based transitions (inactivity
    threshold, end of the bedtime window) fire without a new device event.
    """

    def __init__(
        self,
        machine: PresenceStateMachine,
        settings: SettingsProvider,
        schedules: ScheduleStore,
        *,
        monitor_settings: Optional[MonitorSettings] = None,
        clock: Optional[Clock] = None,
        tz: Optional[tzinfo] = None,
    ) -> None:
        self.machine = machine
        self.settings = settings
        self.schedules = schedules
        self.monitor_settings = monitor_settings or MonitorSettings()
        self.clock = clock or now_millis
        self.tz = tz

        self._queue: queue.Queue[PresenceSignal] = queue.Queue()
        self._heap: list[tuple[int, int, PresenceSignal]] = []
        self._sequence = itertools.count()
        self._pump_lock = threading.Lock()
        self._last_evaluated: Optional[int] = None
        self._next_check: Optional[int] = None
        self._next_tick: Optional[int] = None

        self._lock = threading.Lock()
        self._wakeup = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._stop_event: Optional[threading.Event] = None

    def submit(self, signal: PresenceSignal) -> None:
        self._queue.put(signal)
        self._wakeup.set()

    def context_at(self, timestamp: int) -> EvaluationContext:
        """Build the evaluation context from a fresh settings snapshot."""
        settings = self.settings.snapshot()
        in_window = is_in_bedtime_window(
            timestamp,
            store=self.schedules,
            schedule_id=settings.selected_schedule_id,
            manual=settings.manual_schedule,
            precedence=settings.window_precedence,
            tz=self.tz,
        )
        return EvaluationContext(
            tracking_enabled=settings.bedtime_tracking_enabled,
            in_bedtime_window=in_window,
            inactivity_threshold_ms=settings.inactivity_threshold_ms,
        )

    def pump(self, now: Optional[int] = None, *, flush: bool = False) -> list[StateTransition]:
        """Evaluate every buffered signal that has cleared the reorder window.

        Args:
            now: Current time in epoch millis; read from the clock when None.
            flush: Evaluate everything up to ``now`` without waiting out the
                reorder window. Used when the caller evaluates synchronously.

        Returns:
            Transitions produced, in order.
        """
        with self._pump_lock:
            now = self.clock() if now is None else now
            self._drain_queue()
            watermark = now if flush else now - self.monitor_settings.reorder_window_ms
            transitions: list[StateTransition] = []

            while self._heap and self._heap[0][0] <= watermark:
                _, _, signal = heapq.heappop(self._heap)
                transitions.extend(self._evaluate(signal))

            if self._timer_due(watermark):
                transitions.extend(self._evaluate(PresenceSignal(SignalKind.TICK, watermark)))
                self._next_tick = watermark + self.monitor_settings.tick_interval_ms

            return transitions

    def start(self, background: bool = True) -> None:
        """Begin monitoring; with ``background`` the loop runs on a daemon thread."""
        self.submit(PresenceSignal(SignalKind.MONITORING_STARTED, self.clock()))
        if not background:
            return
        with self._lock:
            if self._thread and self._thread.is_alive():
                return
            stop_event = threading.Event()
            thread = threading.Thread(
                target=self._run,
                args=(stop_event,),
                name="presence-monitor",
                daemon=True,
            )
            self._thread = thread
            self._stop_event = stop_event
            thread.start()
            logger.info("Presence monitor thread started.")

    def stop(self) -> list[StateTransition]:
        """Stop the loop, discard pending work and force the UNKNOWN state."""
        thread: Optional[threading.Thread] = None
        with self._lock:
            if self._thread and self._stop_event:
                self._stop_event.set()
                self._wakeup.set()
                thread = self._thread
            self._thread = None
            self._stop_event = None
        if thread:
            thread.join(timeout=10)

        with self._pump_lock:
            self._drain_queue()
            discarded = len(self._heap)
            self._heap.clear()
            self._next_check = None
            self._next_tick = None
            if discarded:
                logger.info("Discarded %d pending signals on stop.", discarded)
            transitions = self._evaluate(
                PresenceSignal(SignalKind.MONITORING_STOPPED, self.clock())
            )
        logger.info("Presence monitor stopped.")
        return transitions

    def is_running(self) -> bool:
        with self._lock:
            return bool(self._thread and self._thread.is_alive())

    def _run(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            try:
                self.pump()
            except Exception:
                logger.exception("Presence evaluation failed; continuing.")
            self._wakeup.wait(self._wait_seconds())
            self._wakeup.clear()

    def _wait_seconds(self) -> float:
        settings = self.monitor_settings
        wait_ms = settings.tick_interval_ms
        now = self.clock()
        with self._pump_lock:
            if self._heap:
                release_at = self._heap[0][0] + settings.reorder_window_ms
                wait_ms = min(wait_ms, release_at - now)
            if self._next_check is not None:
                wait_ms = min(wait_ms, self._next_check + settings.reorder_window_ms - now)
        return max(wait_ms, 10) / MILLIS_PER_SECOND

    def _drain_queue(self) -> None:
        while True:
            try:
                signal = self._queue.get_nowait()
            except queue.Empty:
                return
            heapq.heappush(self._heap, (signal.timestamp, next(self._sequence), signal))

    def _timer_due(self, watermark: int) -> bool:
        if self._next_check is not None and self._next_check <= watermark:
            return True
        return self._next_tick is not None and self._next_tick <= watermark

    def _evaluate(self, signal: PresenceSignal) -> list[StateTransition]:
        if self._last_evaluated is not None and signal.timestamp < self._last_evaluated:
            logger.warning(
                "Late %s signal at %d clamped to %d",
                signal.kind.value,
                signal.timestamp,
                self._last_evaluated,
            )
            signal = replace(signal, timestamp=self._last_evaluated)

        result = self.machine.handle(signal, self.context_at(signal.timestamp))
        self._last_evaluated = signal.timestamp
        self._next_check = result.next_check
        if self._next_tick is None and signal.kind == SignalKind.MONITORING_STARTED:
            self._next_tick = signal.timestamp + self.monitor_settings.tick_interval_ms
        return result.transitions

"""State machine for the single running task timer."""

from __future__ import annotations

import datetime as dt
import logging
import threading
from dataclasses import dataclass
from typing import Optional, Union

from .entities import MAX_ENTRY_DURATION_MS, TimeEntry
from .errors import TrackerError, ValidationError
from .events import TimerAutoStopped, TimerStarted, TimerStopped
from .utils import duration_ms

logger = logging.getLogger(__name__)

AUTO_STOP_JOB = "auto-stop"


@dataclass(frozen=True)
class Idle:
    pass


@dataclass(frozen=True)
class Running:
    task_id: str
    time_entry_id: str
    start_time: dt.datetime


TimerState = Union[Idle, Running]

IDLE = Idle()


class TimerStateMachine:
    def __init__(self, ledger, clock, scheduler, bus, *, guard=None, check_interval: float = 1.0) -> None:
        self.ledger = ledger
        self.clock = clock
        self.scheduler = scheduler
        self.bus = bus
        self.check_interval = check_interval
        self._guard = guard or threading.RLock()
        self._check = None
        self.state: TimerState = IDLE

    @property
    def is_running(self) -> bool:
        return isinstance(self.state, Running)

    def max_duration(self) -> int:
        """Effective cap: the configured maximum, never above the 12 hour entry limit."""
        return min(self.ledger.settings.timer_max_duration, MAX_ENTRY_DURATION_MS)

    def elapsed(self) -> int:
        if not isinstance(self.state, Running):
            return 0
        return max(duration_ms(self.state.start_time, self.clock.now()), 0)

    def _arm(self, entry_id: str) -> None:
        self._disarm()

        def check() -> None:
            with self._guard:
                self.check_auto_stop(entry_id)

        self._check = self.scheduler.every(self.check_interval, check, name=AUTO_STOP_JOB)

    def _disarm(self) -> None:
        if self._check is not None:
            self._check.cancel()
            self._check = None

    def restore(self) -> Optional[TimerAutoStopped]:
        """Resume a timer whose entry was left open by a previous run."""
        entry = self.ledger.running_entry()
        if entry is None:
            self.state = IDLE
            return None
        self.state = Running(entry.task_id, entry.id, entry.start_time)
        logger.info("Recovered running timer for task %s since %s", entry.task_id, entry.start_time)
        self._arm(entry.id)
        return self.check_auto_stop(entry.id)

    def start(self, task_id: str) -> TimeEntry:
        if isinstance(self.state, Running):
            raise ValidationError(
                "timer.already_running", f"A timer is already running for task {self.state.task_id}"
            )
        entry = self.ledger.open_time_entry(task_id, self.clock.now())
        self.state = Running(task_id, entry.id, entry.start_time)
        self._arm(entry.id)
        logger.info("Timer started for task %s", task_id)
        self.bus.emit(TimerStarted(task_id=task_id, entry=entry))
        return entry

    def stop(self) -> Optional[TimeEntry]:
        state = self.state
        if not isinstance(state, Running):
            return None
        cap_end = state.start_time + dt.timedelta(milliseconds=self.max_duration())
        self._disarm()
        try:
            entry = self.ledger.close_time_entry(state.time_entry_id, min(self.clock.now(), cap_end))
        except Exception:
            self._arm(state.time_entry_id)
            raise
        self.state = IDLE
        logger.info("Timer stopped for task %s after %d ms", state.task_id, entry.duration)
        self.bus.emit(TimerStopped(task_id=state.task_id, date=entry.date, entry=entry))
        return entry

    def switch(self, task_id: str) -> TimeEntry:
        self.ledger.require_startable_task(task_id)
        self.stop()
        return self.start(task_id)

    def tick(self) -> int:
        return self.elapsed()

    def check_auto_stop(self, entry_id: Optional[str] = None) -> Optional[TimerAutoStopped]:
        state = self.state
        if not isinstance(state, Running) or (entry_id is not None and state.time_entry_id != entry_id):
            return None
        limit = self.max_duration()
        actual = duration_ms(state.start_time, self.clock.now())
        if actual < limit:
            return None
        self._disarm()
        try:
            entry = self.ledger.close_time_entry(
                state.time_entry_id, state.start_time + dt.timedelta(milliseconds=limit)
            )
        except TrackerError as exc:
            logger.warning("Auto-stop for task %s failed (%s); retrying next cycle", state.task_id, exc)
            self._arm(state.time_entry_id)
            return None
        self.state = IDLE
        event = TimerAutoStopped(task_id=state.task_id, elapsed=limit, actual_elapsed=actual, entry=entry)
        logger.info("Timer for task %s auto-stopped after %d ms", state.task_id, limit)
        self.bus.emit(TimerStopped(task_id=state.task_id, date=entry.date, entry=entry))
        self.bus.emit(event)
        return event

    def shutdown(self) -> None:
        self._disarm()

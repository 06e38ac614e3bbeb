"""Engine facade composing the ledger, the two state machines and the reports.

All commands, ticks and scheduled checks run under one re-entrant lock, so
each completes before the next is accepted.
"""

from __future__ import annotations

import datetime as dt
import logging
import threading
from typing import Any, Dict, List, Optional

from pydantic import ValidationError as SchemaValidationError

from .aggregation import AggregationEngine
from .clock import Clock, SystemClock
from .entities import SCHEMA_VERSION, ActivityCounter, MealBreak, StoredState, Task, TimeEntry, UserSettings
from .errors import PersistenceError, ValidationError
from .events import EventBus, TimerAutoStopped
from .ledger import Ledger
from .meal_break import MealBreakStateMachine
from .migrations import migrate
from .scheduler import Scheduler, ThreadScheduler
from .storage import PersistenceGateway
from .timer import TimerStateMachine
from .utils import duration_ms, format_duration

logger = logging.getLogger(__name__)

TICK_JOB = "tick"


class TrackerEngine:
    def __init__(
        self,
        gateway: PersistenceGateway,
        *,
        clock: Optional[Clock] = None,
        scheduler: Optional[Scheduler] = None,
        bus: Optional[EventBus] = None,
        tick_interval: float = 1.0,
    ) -> None:
        self.gateway = gateway
        self.clock = clock or gateway.clock or SystemClock()
        self.scheduler = scheduler or ThreadScheduler()
        self.bus = bus or EventBus()
        self.tick_interval = tick_interval
        self._lock = threading.RLock()
        self.ledger = Ledger(gateway, self.clock, self.bus)
        self.timer = TimerStateMachine(
            self.ledger, self.clock, self.scheduler, self.bus, guard=self._lock, check_interval=tick_interval
        )
        self.meal_breaks = MealBreakStateMachine(
            self.ledger, self.clock, self.scheduler, self.bus, guard=self._lock, check_interval=tick_interval
        )
        self.reports = AggregationEngine(self.ledger, self.bus, self.clock)
        self._tick_handle = None
        self._last_heartbeat: Optional[dt.datetime] = None
        self.last_auto_stop: Optional[TimerAutoStopped] = None
        self.is_open = False
        self.bus.subscribe(TimerAutoStopped, self._remember_auto_stop)

    # -- lifecycle ---------------------------------------------------------

    def open(self) -> "TrackerEngine":
        with self._lock:
            try:
                self.ledger.load()
            except PersistenceError as exc:
                if exc.rule != "persistence.corrupt_document":
                    raise
                logger.error("Stored data is unreadable (%s); starting with an empty ledger", exc.message)
                self.gateway.quarantine()
                self.ledger.reset()
            self.timer.restore()
            self.meal_breaks.restore()
            self._tick_handle = self.scheduler.every(self.tick_interval, self.tick, name=TICK_JOB)
            self.is_open = True
            logger.info("Tracker engine opened")
            return self

    def close(self) -> None:
        with self._lock:
            if self._tick_handle is not None:
                self._tick_handle.cancel()
                self._tick_handle = None
            self.timer.shutdown()
            self.meal_breaks.shutdown()
            if self.is_open and (self.timer.is_running or self.meal_breaks.is_on_break):
                try:
                    self.ledger.flush()
                except PersistenceError as exc:
                    logger.warning("Final heartbeat save failed: %s", exc)
            self.is_open = False
        self.scheduler.shutdown()
        logger.info("Tracker engine closed")

    def __enter__(self) -> "TrackerEngine":
        return self.open()

    def __exit__(self, *exc_info) -> None:
        self.close()

    def tick(self) -> Dict[str, Any]:
        """Refresh elapsed times and write a heartbeat at most once per auto-save interval."""
        with self._lock:
            self.timer.tick()
            self.meal_breaks.tick()
            if self.timer.is_running or self.meal_breaks.is_on_break:
                self._heartbeat()
            return self.timer_status()

    def _heartbeat(self) -> None:
        now = self.clock.now()
        interval = self.ledger.settings.auto_save_interval
        if self._last_heartbeat is not None and duration_ms(self._last_heartbeat, now) < interval:
            return
        try:
            self.ledger.flush()
        except PersistenceError as exc:
            logger.warning("Heartbeat save failed (%s); retrying next cycle", exc)
            return
        self._last_heartbeat = now

    def _remember_auto_stop(self, event: TimerAutoStopped) -> None:
        if self.ledger.settings.notify_on_auto_stop:
            self.last_auto_stop = event

    # -- views -------------------------------------------------------------

    def timer_status(self) -> Dict[str, Any]:
        with self._lock:
            state = self.timer.state
            running = self.timer.is_running
            task = self.ledger.find_task(state.task_id) if running else None
            elapsed = self.timer.elapsed()
            notice = self.last_auto_stop
            return {
                "is_running": running,
                "task_id": task.id if task else None,
                "task_name": task.name if task else None,
                "time_entry_id": state.time_entry_id if running else None,
                "start_time": state.start_time if running else None,
                "elapsed": elapsed,
                "formatted_elapsed": format_duration(elapsed),
                "max_duration": self.timer.max_duration(),
                "last_auto_stop": {
                    "task_id": notice.task_id,
                    "elapsed": notice.elapsed,
                    "actual_elapsed": notice.actual_elapsed,
                }
                if notice
                else None,
            }

    def meal_break_status(self) -> Dict[str, Any]:
        with self._lock:
            state = self.meal_breaks.state
            on_break = self.meal_breaks.is_on_break
            item = self.ledger.get_meal_break(state.meal_break_id) if on_break else None
            elapsed = self.meal_breaks.elapsed()
            return {
                "is_on_break": on_break,
                "meal_break_id": item.id if item else None,
                "start_time": item.start_time if item else None,
                "meal_type": item.meal_type if item else None,
                "elapsed": elapsed,
                "formatted_elapsed": format_duration(elapsed),
            }

    def tasks(self, include_archived: bool = False) -> List[Task]:
        return self.ledger.tasks(include_archived)

    def settings(self) -> UserSettings:
        return self.ledger.settings

    def activities(self, day: Optional[dt.date] = None) -> List[ActivityCounter]:
        return self.ledger.counters_for_date(day or self.clock.today())

    def daily_report(self, day: Optional[dt.date] = None) -> Dict[str, Any]:
        with self._lock:
            return self.reports.daily_report(day or self.clock.today())

    def weekly_report(self, week_start: Optional[dt.date] = None) -> Dict[str, Any]:
        with self._lock:
            return self.reports.weekly_report(week_start or self.clock.today())

    def available_weeks(self) -> List[Dict[str, Any]]:
        with self._lock:
            return self.reports.available_weeks()

    def audit_data(self, start: Optional[dt.date] = None, end: Optional[dt.date] = None) -> Dict[str, Any]:
        with self._lock:
            return self.reports.audit_data(start, end)

    def task_stats(self, task_id: str, start: Optional[dt.date] = None, end: Optional[dt.date] = None) -> Dict[str, Any]:
        with self._lock:
            return self.reports.task_stats(task_id, start, end)

    # -- commands ----------------------------------------------------------

    def start_timer(self, task_id: str) -> TimeEntry:
        with self._lock:
            self.last_auto_stop = None
            return self.timer.start(task_id)

    def stop_timer(self) -> Optional[TimeEntry]:
        with self._lock:
            return self.timer.stop()

    def switch_task(self, task_id: str) -> TimeEntry:
        with self._lock:
            self.last_auto_stop = None
            return self.timer.switch(task_id)

    def start_meal_break(self) -> MealBreak:
        with self._lock:
            return self.meal_breaks.start()

    def stop_meal_break(self) -> Optional[MealBreak]:
        with self._lock:
            return self.meal_breaks.stop()

    def create_task(self, name: str, color: Optional[str] = None) -> Task:
        with self._lock:
            return self.ledger.create_task(name, color)

    def update_task(self, task_id: str, name: Optional[str] = None, color: Optional[str] = None) -> Task:
        with self._lock:
            return self.ledger.update_task(task_id, name=name, color=color)

    def archive_task(self, task_id: str) -> str:
        with self._lock:
            return self.ledger.archive_task(task_id)

    def update_setting(self, key: str, value: Any) -> UserSettings:
        return self.update_settings({key: value})

    def update_settings(self, updates: Dict[str, Any]) -> UserSettings:
        with self._lock:
            return self.ledger.update_settings(updates)

    def reset_settings(self) -> UserSettings:
        with self._lock:
            return self.ledger.reset_settings()

    def add_manual_entry(self, task_id: str, start: dt.datetime, end: dt.datetime, note: str) -> TimeEntry:
        with self._lock:
            return self.ledger.add_manual_entry(task_id, start, end, note)

    def correct_time_entry(
        self,
        entry_id: str,
        note: str,
        start: Optional[dt.datetime] = None,
        end: Optional[dt.datetime] = None,
        task_id: Optional[str] = None,
    ) -> TimeEntry:
        with self._lock:
            return self.ledger.correct_time_entry(entry_id, note, start=start, end=end, task_id=task_id)

    def increment_activity(self, activity_type: str, day: Optional[dt.date] = None, amount: int = 1) -> ActivityCounter:
        with self._lock:
            return self.ledger.increment_activity_counter(day or self.clock.today(), activity_type, amount)

    def reset_activity(self, activity_type: str, day: Optional[dt.date] = None) -> Optional[ActivityCounter]:
        with self._lock:
            return self.ledger.reset_activity_counter(day or self.clock.today(), activity_type)

    # -- backup ------------------------------------------------------------

    def export_backup(self) -> Dict[str, Any]:
        with self._lock:
            document = self.ledger.state.to_document()
            document["version"] = SCHEMA_VERSION
            document["exportedAt"] = self.clock.now().isoformat()
            return document

    def import_backup(self, document: Dict[str, Any]) -> StoredState:
        """Replace all data with a previously exported document of any known schema."""
        with self._lock:
            if self.timer.is_running or self.meal_breaks.is_on_break:
                raise ValidationError("backup.busy", "Stop the timer and meal break before importing a backup")
            payload = {key: value for key, value in document.items() if key != "exportedAt"}
            payload = migrate(payload)
            try:
                incoming = StoredState.model_validate(payload)
            except SchemaValidationError as exc:
                raise ValidationError("backup.invalid_document", f"Backup does not match the data model: {exc}") from exc
            state = self.ledger.replace_state(incoming)
            self.timer.restore()
            self.meal_breaks.restore()
            logger.info("Imported backup with %d tasks", len(state.tasks))
            return state

    def clear_data(self) -> None:
        """Delete every task, entry and setting."""
        with self._lock:
            if self.timer.is_running or self.meal_breaks.is_on_break:
                raise ValidationError("data.busy", "Stop the timer and meal break before clearing data")
            self.ledger.clear()
            self.last_auto_stop = None
            self.timer.restore()
            self.meal_breaks.restore()

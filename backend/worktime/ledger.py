"""The ledger: sole owner of tasks, time entries, meal breaks and counters.

Every mutation runs against a deep copy of the current state. The copy is
checked against the ledger invariants, the work days for the touched dates are
recomputed, and the result is written through the persistence gateway. Only a
successful write replaces the in-memory state, so a failed write leaves the
last good snapshot in place.
"""

from __future__ import annotations

import datetime as dt
import logging
import threading
from collections import Counter
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple, TypeVar

from pydantic import BaseModel

from .aggregation import compute_work_day
from .clock import Clock, ensure_local
from .entities import (
    ACTIVITY_TYPE_MAX_LENGTH,
    MAX_ACTIVITY_COUNT,
    MAX_ENTRY_DURATION_MS,
    MAX_MEAL_BREAK_MS,
    TASK_NAME_MAX_LENGTH,
    VALID_COLORS,
    VALID_THEMES,
    ActivityCounter,
    MealBreak,
    StoredState,
    Task,
    TimeEntry,
    UserSettings,
    WorkDay,
)
from .errors import (
    ConcurrentMealBreakError,
    InvalidTaskError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from .events import LedgerChanged
from .retention import purge_expired
from .storage import PersistenceGateway
from .utils import MS_PER_HOUR, MS_PER_SECOND, duration_ms, new_id, normalize_activity_type

logger = logging.getLogger(__name__)

T = TypeVar("T")

ONE_MS = dt.timedelta(milliseconds=1)

SETTING_RANGES: Dict[str, Tuple[int, int]] = {
    "required_daily_presence": (1 * MS_PER_HOUR, 16 * MS_PER_HOUR),
    "timer_max_duration": (1 * MS_PER_HOUR, 24 * MS_PER_HOUR),
    "auto_save_interval": (1 * MS_PER_SECOND, 300 * MS_PER_SECOND),
    "data_retention_weeks": (1, 52),
}

BOOLEAN_SETTINGS = {"time_format_24h", "notify_on_auto_stop"}


def _clean_name(name: Any) -> str:
    text = name.strip() if isinstance(name, str) else ""
    if not 1 <= len(text) <= TASK_NAME_MAX_LENGTH:
        raise ValidationError(
            "task.name_length", f"Task name must be 1-{TASK_NAME_MAX_LENGTH} characters"
        )
    return text


def _check_color(color: str) -> str:
    if color not in VALID_COLORS:
        raise ValidationError("task.invalid_color", f"Unknown task color '{color}'")
    return color


def _settings_field(key: str) -> str:
    for name, field in UserSettings.model_fields.items():
        if key in (name, field.alias):
            return name
    raise ValidationError("settings.unknown_key", f"Unknown setting '{key}'")


def _detached(value: T) -> T:
    """Copy records handed out of the ledger so callers cannot edit the held state."""
    if isinstance(value, BaseModel):
        return value.model_copy(deep=True)
    if isinstance(value, list):
        return [_detached(item) for item in value]
    return value


def _overlapping(spans: List[Tuple[dt.datetime, Optional[dt.datetime], str]]) -> Optional[Tuple[str, str]]:
    """First pair of ids whose spans overlap; an open span runs forever."""
    ordered = sorted(spans, key=lambda span: span[0])
    for (start_a, end_a, id_a), (start_b, _end_b, id_b) in zip(ordered, ordered[1:]):
        if end_a is None or end_a > start_b:
            return id_a, id_b
    return None


class Ledger:
    def __init__(self, gateway: PersistenceGateway, clock: Clock, bus=None) -> None:
        self.gateway = gateway
        self.clock = clock
        self.bus = bus
        self._lock = threading.RLock()
        self._state = StoredState()

    # -- loading -----------------------------------------------------------

    def load(self) -> StoredState:
        with self._lock:
            loaded = self.gateway.load()
            state = loaded if loaded is not None else StoredState()
            running = next((entry for entry in state.time_entries if entry.end_time is None), None)
            for task in state.tasks:
                task.is_active = running is not None and task.id == running.task_id
            try:
                self.check_invariants(state)
            except ValidationError as exc:
                raise PersistenceError(
                    f"Stored state violates {exc.rule}: {exc.message}", rule="persistence.corrupt_document"
                ) from exc
            self._recompute(state, {day.date for day in state.work_days} | self._record_dates(state))
            self._state = state
            logger.info(
                "Ledger loaded with %d tasks and %d time entries",
                len(state.tasks),
                len(state.time_entries),
            )
            return state

    def reset(self) -> None:
        with self._lock:
            self._state = StoredState()

    @property
    def state(self) -> StoredState:
        with self._lock:
            return self._state

    @property
    def settings(self) -> UserSettings:
        return _detached(self.state.settings)

    # -- accessors ---------------------------------------------------------

    def find_task(self, task_id: str) -> Optional[Task]:
        return _detached(next((task for task in self.state.tasks if task.id == task_id), None))

    def get_task(self, task_id: str) -> Task:
        task = self.find_task(task_id)
        if task is None:
            raise NotFoundError(f"Task '{task_id}' does not exist", rule="task.not_found")
        return task

    def tasks(self, include_archived: bool = False) -> List[Task]:
        return _detached([task for task in self.state.tasks if include_archived or not task.is_archived])

    def active_task(self) -> Optional[Task]:
        return _detached(next((task for task in self.state.tasks if task.is_active), None))

    def require_startable_task(self, task_id: str) -> Task:
        task = self.find_task(task_id)
        if task is None:
            raise InvalidTaskError(f"Task '{task_id}' does not exist")
        if task.is_archived:
            raise InvalidTaskError(f"Task '{task.name}' is archived", rule="timer.archived_task")
        return task

    def get_time_entry(self, entry_id: str) -> TimeEntry:
        entry = next((entry for entry in self.state.time_entries if entry.id == entry_id), None)
        if entry is None:
            raise NotFoundError(f"Time entry '{entry_id}' does not exist", rule="entry.not_found")
        return _detached(entry)

    def running_entry(self) -> Optional[TimeEntry]:
        return _detached(next((entry for entry in self.state.time_entries if entry.end_time is None), None))

    def entries_for_date(self, day: dt.date) -> List[TimeEntry]:
        return self.entries_between(day, day)

    def entries_between(self, start: dt.date, end: dt.date) -> List[TimeEntry]:
        return _detached(
            sorted(
                (entry for entry in self.state.time_entries if start <= entry.date <= end),
                key=lambda entry: entry.start_time,
            )
        )

    def entries_for_task(self, task_id: str) -> List[TimeEntry]:
        return _detached(
            sorted(
                (entry for entry in self.state.time_entries if entry.task_id == task_id),
                key=lambda entry: entry.start_time,
            )
        )

    def get_meal_break(self, meal_break_id: str) -> MealBreak:
        item = next((item for item in self.state.meal_breaks if item.id == meal_break_id), None)
        if item is None:
            raise NotFoundError(f"Meal break '{meal_break_id}' does not exist", rule="meal_break.not_found")
        return _detached(item)

    def current_meal_break(self, day: Optional[dt.date] = None) -> Optional[MealBreak]:
        open_breaks = [
            item for item in self.state.meal_breaks if item.end_time is None and (day is None or item.date == day)
        ]
        return _detached(max(open_breaks, key=lambda item: item.start_time, default=None))

    def meal_breaks_for_date(self, day: dt.date) -> List[MealBreak]:
        return self.meal_breaks_between(day, day)

    def meal_breaks_between(self, start: dt.date, end: dt.date) -> List[MealBreak]:
        return _detached(
            sorted(
                (item for item in self.state.meal_breaks if start <= item.date <= end),
                key=lambda item: item.start_time,
            )
        )

    def counters_for_date(self, day: dt.date) -> List[ActivityCounter]:
        return _detached(
            sorted(
                (counter for counter in self.state.activity_counters if counter.date == day),
                key=lambda counter: counter.activity_type,
            )
        )

    def work_day(self, day: dt.date) -> Optional[WorkDay]:
        return _detached(next((item for item in self.state.work_days if item.date == day), None))

    def work_days_between(self, start: dt.date, end: dt.date) -> List[WorkDay]:
        return _detached(
            sorted((item for item in self.state.work_days if start <= item.date <= end), key=lambda item: item.date)
        )

    # -- transactions ------------------------------------------------------

    def _commit(self, mutate: Callable[[StoredState, Set[dt.date]], T]) -> T:
        with self._lock:
            draft = self._state.model_copy(deep=True)
            touched: Set[dt.date] = set()
            result = mutate(draft, touched)
            self.check_invariants(draft)
            self._recompute(draft, touched)
            try:
                self._state = self.gateway.save(draft)
            except PersistenceError:
                logger.exception("Ledger write failed; keeping the previous state")
                raise
            purged = self._purge()
            result = _detached(result)
        # task and settings edits touch no date but still change reports
        if self.bus is not None:
            self.bus.emit(LedgerChanged(dates=tuple(sorted(touched | purged))))
        return result

    def flush(self) -> StoredState:
        """Write the current state again, refreshing ``lastUpdated``."""
        with self._lock:
            self._state = self.gateway.save(self._state)
            self._purge()
            return self._state

    def _purge(self) -> Set[dt.date]:
        settings = self._state.settings
        purged, result = purge_expired(self._state, self.clock.today(), settings.data_retention_weeks)
        if not result.total:
            return set()
        try:
            saved = self.gateway.save(purged)
        except PersistenceError:
            logger.exception("Retention purge before %s failed; prior data kept", result.cutoff)
            return set()
        dropped = {day.date for day in self._state.work_days} - {day.date for day in saved.work_days}
        self._state = saved
        logger.info(
            "Purged %d work days, %d entries, %d meal breaks, %d counters dated before %s",
            result.work_days,
            result.time_entries,
            result.meal_breaks,
            result.activity_counters,
            result.cutoff,
        )
        return dropped

    @staticmethod
    def _record_dates(state: StoredState) -> Set[dt.date]:
        dates = {entry.date for entry in state.time_entries}
        dates.update(item.date for item in state.meal_breaks)
        dates.update(counter.date for counter in state.activity_counters)
        return dates

    def _recompute(self, draft: StoredState, touched: Iterable[dt.date]) -> None:
        work_days = {item.date: item for item in draft.work_days}
        for day in touched:
            has_records = any(e.date == day for e in draft.time_entries) or any(
                b.date == day for b in draft.meal_breaks
            ) or any(c.date == day for c in draft.activity_counters)
            if not has_records:
                work_days.pop(day, None)
                continue
            work_days[day] = compute_work_day(
                day, draft.time_entries, draft.meal_breaks, draft.activity_counters
            )
        draft.work_days = [work_days[day] for day in sorted(work_days)]

    # -- invariants --------------------------------------------------------

    def check_invariants(self, state: StoredState) -> None:
        """Raise ``ValidationError`` naming the first rule ``state`` violates."""
        task_ids = {task.id for task in state.tasks}
        if len(task_ids) != len(state.tasks):
            raise ValidationError("task.duplicate_id", "Task ids must be unique")
        active = [task for task in state.tasks if task.is_active]
        if len(active) > 1:
            raise ValidationError("task.single_active", "At most one task can be active")
        names = Counter(task.name.casefold() for task in state.tasks if not task.is_archived)
        duplicate = next((name for name, count in names.items() if count > 1), None)
        if duplicate is not None:
            raise ValidationError("task.duplicate_name", f"Task name '{duplicate}' is already in use")
        for task in state.tasks:
            _clean_name(task.name)
            _check_color(task.color)
            if task.total_time < 0:
                raise ValidationError("task.negative_total", f"Task '{task.name}' has a negative total time")
            if task.is_archived and task.is_active:
                raise ValidationError("task.archived_active", f"Archived task '{task.name}' cannot be active")

        open_entries = [entry for entry in state.time_entries if entry.end_time is None]
        if len(open_entries) > 1:
            raise ValidationError("entry.single_open", "At most one time entry can be running")
        if open_entries:
            if not active or active[0].id != open_entries[0].task_id:
                raise ValidationError("task.active_mismatch", "The running entry's task must be the active task")
        elif active:
            raise ValidationError("task.active_mismatch", f"Task '{active[0].name}' is active without a running entry")
        for entry in state.time_entries:
            self._check_entry(entry, task_ids)
        clash = _overlapping([(e.start_time, e.end_time, e.id) for e in state.time_entries])
        if clash:
            raise ValidationError("entry.overlap", f"Time entries {clash[0]} and {clash[1]} overlap")

        open_days = Counter(item.date for item in state.meal_breaks if item.end_time is None)
        if any(count > 1 for count in open_days.values()):
            raise ValidationError("meal_break.single_open", "At most one meal break per day can be open")
        for item in state.meal_breaks:
            self._check_meal_break(item)
        by_day: Dict[dt.date, List[Tuple[dt.datetime, Optional[dt.datetime], str]]] = {}
        for item in state.meal_breaks:
            by_day.setdefault(item.date, []).append((item.start_time, item.end_time, item.id))
        for spans in by_day.values():
            clash = _overlapping(spans)
            if clash:
                raise ValidationError("meal_break.overlap", f"Meal breaks {clash[0]} and {clash[1]} overlap")

        keys = Counter((counter.date, counter.activity_type) for counter in state.activity_counters)
        if any(count > 1 for count in keys.values()):
            raise ValidationError("activity.duplicate", "Activity counters must be unique per date and type")
        for counter in state.activity_counters:
            if not 1 <= len(counter.activity_type) <= ACTIVITY_TYPE_MAX_LENGTH:
                raise ValidationError(
                    "activity.type_length", f"Activity type must be 1-{ACTIVITY_TYPE_MAX_LENGTH} characters"
                )
            if not 0 <= counter.count <= MAX_ACTIVITY_COUNT:
                raise ValidationError("activity.count_range", f"Activity count must be 0-{MAX_ACTIVITY_COUNT}")

        self._check_settings(state.settings)

    @staticmethod
    def _check_entry(entry: TimeEntry, task_ids: Set[str]) -> None:
        if entry.task_id not in task_ids:
            raise ValidationError("entry.unknown_task", f"Time entry {entry.id} references unknown task {entry.task_id}")
        if entry.date != entry.start_time.date():
            raise ValidationError("entry.date_mismatch", f"Time entry {entry.id} is dated {entry.date}")
        if entry.end_time is None:
            if entry.duration != 0:
                raise ValidationError("entry.duration_mismatch", f"Running entry {entry.id} must have no duration")
        else:
            if entry.end_time <= entry.start_time:
                raise ValidationError("entry.end_before_start", f"Time entry {entry.id} must end after it starts")
            if entry.duration != duration_ms(entry.start_time, entry.end_time):
                raise ValidationError("entry.duration_mismatch", f"Time entry {entry.id} duration does not match its span")
            if entry.duration > MAX_ENTRY_DURATION_MS:
                raise ValidationError("entry.max_duration", f"Time entry {entry.id} is longer than 12 hours")
        if entry.is_manual and (not entry.note.strip() or entry.adjusted_at is None):
            raise ValidationError("entry.manual_note", f"Manual entry {entry.id} needs a note and adjustment time")

    @staticmethod
    def _check_meal_break(item: MealBreak) -> None:
        if item.date != item.start_time.date():
            raise ValidationError("meal_break.date_mismatch", f"Meal break {item.id} is dated {item.date}")
        if item.end_time is None:
            if item.duration != 0:
                raise ValidationError("meal_break.duration_mismatch", f"Open meal break {item.id} must have no duration")
            return
        if item.end_time <= item.start_time:
            raise ValidationError("meal_break.end_before_start", f"Meal break {item.id} must end after it starts")
        if item.duration != duration_ms(item.start_time, item.end_time):
            raise ValidationError("meal_break.duration_mismatch", f"Meal break {item.id} duration does not match its span")
        if item.duration > MAX_MEAL_BREAK_MS:
            raise ValidationError("meal_break.max_duration", f"Meal break {item.id} is longer than 3 hours")

    @staticmethod
    def _check_settings(settings: UserSettings) -> None:
        for name, (lower, upper) in SETTING_RANGES.items():
            value = getattr(settings, name)
            if not lower <= value <= upper:
                raise ValidationError(f"settings.{name}", f"{name} must be between {lower} and {upper}")
        if settings.theme not in VALID_THEMES:
            raise ValidationError("settings.theme", f"Unknown theme '{settings.theme}'")
        if settings.default_task_color not in VALID_COLORS:
            raise ValidationError("settings.default_task_color", f"Unknown task color '{settings.default_task_color}'")

    # -- tasks -------------------------------------------------------------

    def create_task(self, name: str, color: Optional[str] = None) -> Task:
        clean = _clean_name(name)

        def mutate(draft: StoredState, _touched: Set[dt.date]) -> Task:
            task = Task(
                id=new_id("task"),
                name=clean,
                color=_check_color(color or draft.settings.default_task_color),
                created_at=self.clock.now(),
            )
            draft.tasks.append(task)
            return task

        task = self._commit(mutate)
        logger.info("Created task %s (%s)", task.id, task.name)
        return task

    def update_task(self, task_id: str, name: Optional[str] = None, color: Optional[str] = None) -> Task:
        def mutate(draft: StoredState, _touched: Set[dt.date]) -> Task:
            task = self._draft_task(draft, task_id)
            if name is not None:
                task.name = _clean_name(name)
            if color is not None:
                task.color = _check_color(color)
            task.updated_at = self.clock.now()
            return task

        return self._commit(mutate)

    def archive_task(self, task_id: str) -> str:
        """Archive a referenced task or delete an unreferenced one; returns which happened."""

        def mutate(draft: StoredState, _touched: Set[dt.date]) -> str:
            task = self._draft_task(draft, task_id)
            if task.is_active:
                raise ValidationError("task.active", f"Task '{task.name}' is being timed and cannot be archived")
            if any(entry.task_id == task_id for entry in draft.time_entries):
                task.is_archived = True
                task.updated_at = self.clock.now()
                return "archived"
            draft.tasks = [item for item in draft.tasks if item.id != task_id]
            return "deleted"

        outcome = self._commit(mutate)
        logger.info("Task %s %s", task_id, outcome)
        return outcome

    @staticmethod
    def _draft_task(draft: StoredState, task_id: str) -> Task:
        task = next((task for task in draft.tasks if task.id == task_id), None)
        if task is None:
            raise NotFoundError(f"Task '{task_id}' does not exist", rule="task.not_found")
        return task

    # -- time entries ------------------------------------------------------

    def open_time_entry(self, task_id: str, start: dt.datetime) -> TimeEntry:
        """Create the running entry for ``task_id`` and make it the single active task."""
        self.require_startable_task(task_id)
        start = ensure_local(start)

        def mutate(draft: StoredState, touched: Set[dt.date]) -> TimeEntry:
            if any(entry.end_time is None for entry in draft.time_entries):
                raise ValidationError("timer.already_running", "Another timer is already running")
            for task in draft.tasks:
                task.is_active = task.id == task_id
                if task.is_active:
                    task.activated_at = start
            entry = TimeEntry(id=new_id("entry"), task_id=task_id, start_time=start, date=start.date())
            draft.time_entries.append(entry)
            touched.add(entry.date)
            return entry

        return self._commit(mutate)

    def close_time_entry(self, entry_id: str, end: dt.datetime) -> TimeEntry:
        """Close the running entry at ``end`` (at least 1 ms after its start) and credit its task."""
        end = ensure_local(end)

        def mutate(draft: StoredState, touched: Set[dt.date]) -> TimeEntry:
            entry = next((item for item in draft.time_entries if item.id == entry_id), None)
            if entry is None:
                raise NotFoundError(f"Time entry '{entry_id}' does not exist", rule="entry.not_found")
            if entry.end_time is not None:
                raise ValidationError("entry.not_running", f"Time entry {entry_id} is already closed")
            entry.end_time = max(end, entry.start_time + ONE_MS)
            entry.duration = duration_ms(entry.start_time, entry.end_time)
            task = self._draft_task(draft, entry.task_id)
            task.total_time += entry.duration
            task.is_active = False
            task.updated_at = self.clock.now()
            touched.add(entry.date)
            return entry

        return self._commit(mutate)

    def upsert_time_entry(self, entry: TimeEntry) -> TimeEntry:
        """Insert or replace a time entry, moving its duration between task totals as needed."""

        def mutate(draft: StoredState, touched: Set[dt.date]) -> TimeEntry:
            self._put_entry(draft, entry, touched)
            return entry

        return self._commit(mutate)

    def _put_entry(self, draft: StoredState, entry: TimeEntry, touched: Set[dt.date]) -> None:
        previous = next((item for item in draft.time_entries if item.id == entry.id), None)
        if previous is not None:
            if previous.end_time is None:
                raise ValidationError("entry.running", "A running time entry cannot be edited")
            self._draft_task(draft, previous.task_id).total_time -= previous.duration
            draft.time_entries = [item for item in draft.time_entries if item.id != entry.id]
            touched.add(previous.date)
        if entry.end_time is None:
            raise ValidationError("entry.running", "Only closed time entries can be written directly")
        self._check_entry(entry, {task.id for task in draft.tasks})
        task = self._draft_task(draft, entry.task_id)
        task.total_time += entry.duration
        draft.time_entries.append(entry)
        touched.add(entry.date)

    def add_manual_entry(
        self, task_id: str, start: dt.datetime, end: dt.datetime, note: str
    ) -> TimeEntry:
        start, end = ensure_local(start), ensure_local(end)
        self.require_startable_task(task_id)
        entry = TimeEntry(
            id=new_id("entry"),
            task_id=task_id,
            start_time=start,
            end_time=end,
            duration=duration_ms(start, end),
            date=start.date(),
            is_manual=True,
            note=(note or "").strip(),
            adjusted_at=self.clock.now(),
        )
        return self.upsert_time_entry(entry)

    def correct_time_entry(
        self,
        entry_id: str,
        note: str,
        start: Optional[dt.datetime] = None,
        end: Optional[dt.datetime] = None,
        task_id: Optional[str] = None,
    ) -> TimeEntry:
        current = self.get_time_entry(entry_id)
        if current.end_time is None:
            raise ValidationError("entry.running", "Stop the timer before correcting its entry")
        if task_id is not None and task_id != current.task_id:
            self.require_startable_task(task_id)
        new_start = ensure_local(start) if start is not None else current.start_time
        new_end = ensure_local(end) if end is not None else current.end_time
        corrected = current.model_copy(
            update={
                "task_id": task_id or current.task_id,
                "start_time": new_start,
                "end_time": new_end,
                "duration": duration_ms(new_start, new_end),
                "date": new_start.date(),
                "is_manual": True,
                "note": (note or "").strip(),
                "adjusted_at": self.clock.now(),
            }
        )
        return self.upsert_time_entry(corrected)

    # -- meal breaks -------------------------------------------------------

    def open_meal_break(self, start: dt.datetime) -> MealBreak:
        start = ensure_local(start)

        def mutate(draft: StoredState, touched: Set[dt.date]) -> MealBreak:
            if any(item.end_time is None and item.date == start.date() for item in draft.meal_breaks):
                raise ConcurrentMealBreakError(f"A meal break is already open on {start.date()}")
            item = MealBreak(id=new_id("meal"), date=start.date(), start_time=start)
            draft.meal_breaks.append(item)
            touched.add(item.date)
            return item

        return self._commit(mutate)

    def close_meal_break(self, meal_break_id: str, end: dt.datetime) -> MealBreak:
        """Close an open break at ``end``, truncating it to three hours when it ran longer."""
        end = ensure_local(end)

        def mutate(draft: StoredState, touched: Set[dt.date]) -> MealBreak:
            item = next((b for b in draft.meal_breaks if b.id == meal_break_id), None)
            if item is None:
                raise NotFoundError(f"Meal break '{meal_break_id}' does not exist", rule="meal_break.not_found")
            if item.end_time is not None:
                raise ValidationError("meal_break.not_open", f"Meal break {meal_break_id} is already closed")
            limit = item.start_time + dt.timedelta(milliseconds=MAX_MEAL_BREAK_MS)
            item.is_truncated = end > limit
            item.end_time = max(min(end, limit), item.start_time + ONE_MS)
            item.duration = duration_ms(item.start_time, item.end_time)
            touched.add(item.date)
            return item

        return self._commit(mutate)

    def upsert_meal_break(self, meal_break: MealBreak) -> MealBreak:
        def mutate(draft: StoredState, touched: Set[dt.date]) -> MealBreak:
            previous = next((b for b in draft.meal_breaks if b.id == meal_break.id), None)
            if previous is not None:
                touched.add(previous.date)
            draft.meal_breaks = [b for b in draft.meal_breaks if b.id != meal_break.id]
            draft.meal_breaks.append(meal_break)
            touched.add(meal_break.date)
            return meal_break

        return self._commit(mutate)

    # -- activity counters -------------------------------------------------

    def increment_activity_counter(self, day: dt.date, activity_type: str, amount: int = 1) -> ActivityCounter:
        normalized = normalize_activity_type(activity_type)
        if normalized is None or len(normalized) > ACTIVITY_TYPE_MAX_LENGTH:
            raise ValidationError(
                "activity.type_length", f"Activity type must be 1-{ACTIVITY_TYPE_MAX_LENGTH} characters"
            )

        def mutate(draft: StoredState, touched: Set[dt.date]) -> ActivityCounter:
            counter = next(
                (c for c in draft.activity_counters if c.date == day and c.activity_type == normalized), None
            )
            if counter is None:
                counter = ActivityCounter(date=day, activity_type=normalized, last_updated=self.clock.now())
                draft.activity_counters.append(counter)
            count = counter.count + amount
            if not 0 <= count <= MAX_ACTIVITY_COUNT:
                raise ValidationError("activity.count_range", f"Activity count must be 0-{MAX_ACTIVITY_COUNT}")
            counter.count = count
            counter.last_updated = self.clock.now()
            touched.add(day)
            return counter

        return self._commit(mutate)

    def reset_activity_counter(self, day: dt.date, activity_type: str) -> Optional[ActivityCounter]:
        normalized = normalize_activity_type(activity_type)

        def mutate(draft: StoredState, touched: Set[dt.date]) -> Optional[ActivityCounter]:
            counter = next(
                (c for c in draft.activity_counters if c.date == day and c.activity_type == normalized), None
            )
            if counter is None:
                return None
            counter.count = 0
            counter.last_updated = self.clock.now()
            touched.add(day)
            return counter

        return self._commit(mutate)

    # -- settings and bulk -------------------------------------------------

    def update_settings(self, updates: Dict[str, Any]) -> UserSettings:
        fields = {_settings_field(key): value for key, value in updates.items()}
        for name, value in fields.items():
            if name in BOOLEAN_SETTINGS and not isinstance(value, bool):
                raise ValidationError(f"settings.{name}", f"{name} must be true or false")
            if name in SETTING_RANGES and (isinstance(value, bool) or not isinstance(value, int)):
                raise ValidationError(f"settings.{name}", f"{name} must be an integer")

        def mutate(draft: StoredState, _touched: Set[dt.date]) -> UserSettings:
            draft.settings = draft.settings.model_copy(update=fields)
            return draft.settings

        settings = self._commit(mutate)
        logger.info("Updated settings: %s", ", ".join(sorted(fields)))
        return settings

    def reset_settings(self) -> UserSettings:
        def mutate(draft: StoredState, _touched: Set[dt.date]) -> UserSettings:
            draft.settings = UserSettings()
            return draft.settings

        settings = self._commit(mutate)
        logger.info("Settings reset to defaults")
        return settings

    def clear(self) -> None:
        """Delete the stored document and start over with an empty state."""
        with self._lock:
            self.gateway.clear()
            self.reset()
        logger.warning("All tracker data cleared")
        if self.bus is not None:
            self.bus.emit(LedgerChanged())

    def replace_state(self, state: StoredState) -> StoredState:
        """Swap in a whole state (backup import); every dated record is recomputed."""

        incoming = state.model_copy(deep=True)

        def mutate(draft: StoredState, touched: Set[dt.date]) -> StoredState:
            for name in ("tasks", "time_entries", "meal_breaks", "activity_counters", "settings"):
                setattr(draft, name, getattr(incoming, name))
            running = next((entry for entry in draft.time_entries if entry.end_time is None), None)
            for task in draft.tasks:
                task.is_active = running is not None and task.id == running.task_id
            draft.work_days = []
            touched.update(self._record_dates(draft))
            return draft

        self._commit(mutate)
        logger.info("Replaced ledger state (%d tasks)", len(state.tasks))
        return self.state

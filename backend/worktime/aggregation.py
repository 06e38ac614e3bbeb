"""Derived day and week views over the ledger.

Everything in this module except ``AggregationEngine`` is a pure function of
its inputs; the engine only adds a week cache invalidated by ledger events.
"""

from __future__ import annotations

import copy
import datetime as dt
import threading
from collections import defaultdict
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from .entities import (
    MAX_ENTRY_DURATION_MS,
    MAX_MEAL_BREAK_MS,
    ActivityCounter,
    MealBreak,
    StoredState,
    Task,
    TimeEntry,
    WorkDay,
    efficiency,
)
from .errors import ValidationError
from .events import LedgerChanged, MealBreakStopped, TimerStopped
from .utils import WORKWEEK_LENGTH, duration_ms, format_duration, week_dates, week_start_for

Interval = Tuple[dt.datetime, dt.datetime]


def _span(record, live_until: Optional[dt.datetime], cap_ms: int) -> Optional[Interval]:
    if record.end_time is not None:
        return record.start_time, record.end_time
    if live_until is None:
        return None
    end = max(live_until, record.start_time)
    return record.start_time, min(end, record.start_time + dt.timedelta(milliseconds=cap_ms))


def _merge(intervals: Iterable[Interval]) -> List[Interval]:
    merged: List[Interval] = []
    for start, end in sorted(intervals):
        if merged and start <= merged[-1][1]:
            if end > merged[-1][1]:
                merged[-1] = (merged[-1][0], end)
        else:
            merged.append((start, end))
    return merged


def _overlap_ms(interval: Interval, others: Sequence[Interval]) -> int:
    start, end = interval
    total = 0
    for other_start, other_end in others:
        lower = max(start, other_start)
        upper = min(end, other_end)
        if upper > lower:
            total += duration_ms(lower, upper)
    return total


def _entry_task_times(
    entries: Sequence[TimeEntry], breaks: Sequence[MealBreak], live_until: Optional[dt.datetime]
) -> List[Tuple[TimeEntry, int]]:
    """Task time per entry, net of any part spent on a meal break."""
    break_spans = _merge(
        span for span in (_span(item, live_until, MAX_MEAL_BREAK_MS) for item in breaks) if span
    )
    results: List[Tuple[TimeEntry, int]] = []
    for entry in entries:
        span = _span(entry, live_until, MAX_ENTRY_DURATION_MS)
        if span is None:
            continue
        gross = duration_ms(*span)
        results.append((entry, max(gross - _overlap_ms(span, break_spans), 0)))
    return results


def compute_work_day(
    day: dt.date,
    entries: Iterable[TimeEntry],
    breaks: Iterable[MealBreak],
    counters: Iterable[ActivityCounter] = (),
    live_until: Optional[dt.datetime] = None,
) -> WorkDay:
    """
    Fold the records dated ``day`` into a WorkDay.

    Presence runs from the first start to the last close across entries and
    meal breaks. Open records only count when ``live_until`` is given, in which
    case they are closed provisionally at that instant.
    """
    day_entries = [entry for entry in entries if entry.date == day]
    day_breaks = [item for item in breaks if item.date == day]

    starts = [entry.start_time for entry in day_entries] + [item.start_time for item in day_breaks]
    entry_spans = [
        span for span in (_span(e, live_until, MAX_ENTRY_DURATION_MS) for e in day_entries) if span
    ]
    break_spans = [
        span for span in (_span(b, live_until, MAX_MEAL_BREAK_MS) for b in day_breaks) if span
    ]
    ends = [end for _, end in entry_spans + break_spans]

    arrival = min(starts) if starts else None
    departure = max(ends) if ends else None
    presence = max(duration_ms(arrival, departure), 0) if arrival and departure else 0
    meal_break_time = sum(duration_ms(start, end) for start, end in break_spans)
    task_time = sum(net for _, net in _entry_task_times(day_entries, day_breaks, live_until))

    activity = {
        counter.activity_type: counter.count
        for counter in sorted(counters, key=lambda c: c.activity_type)
        if counter.date == day
    }
    return WorkDay(
        date=day,
        arrival_time=arrival,
        departure_time=departure,
        total_presence_time=presence,
        total_task_time=task_time,
        meal_break_time=meal_break_time,
        working_time=max(presence - meal_break_time, 0),
        activity_counters=activity,
    )


def _task_order(tasks: Dict[str, Task]):
    latest = dt.datetime.max.replace(tzinfo=dt.timezone.utc)

    def key(item: Dict[str, Any]):
        task = tasks.get(item["task_id"])
        created = task.created_at if task else latest
        return (-item["total_time"], created, item["task_id"])

    return key


def task_breakdown(
    entries: Sequence[TimeEntry],
    breaks: Sequence[MealBreak],
    tasks: Dict[str, Task],
    live_until: Optional[dt.datetime] = None,
) -> List[Dict[str, Any]]:
    totals: Dict[str, Dict[str, Any]] = {}
    by_date: Dict[dt.date, List[TimeEntry]] = defaultdict(list)
    for entry in entries:
        by_date[entry.date].append(entry)
    for day, day_entries in by_date.items():
        day_breaks = [item for item in breaks if item.date == day]
        for entry, net in _entry_task_times(day_entries, day_breaks, live_until):
            task = tasks.get(entry.task_id)
            bucket = totals.setdefault(
                entry.task_id,
                {
                    "task_id": entry.task_id,
                    "task_name": task.name if task else "Unknown Task",
                    "task_color": task.color if task else "primary",
                    "total_time": 0,
                    "session_count": 0,
                },
            )
            bucket["total_time"] += net
            bucket["session_count"] += 1
    ranked = sorted(totals.values(), key=_task_order(tasks))
    for item in ranked:
        item["average_session"] = item["total_time"] // item["session_count"] if item["session_count"] else 0
        item["formatted_time"] = format_duration(item["total_time"])
    return ranked


def _entry_row(entry: TimeEntry, tasks: Dict[str, Task], now: Optional[dt.datetime]) -> Dict[str, Any]:
    task = tasks.get(entry.task_id)
    duration = entry.elapsed(now) if now is not None else entry.duration
    return {
        "id": entry.id,
        "task_id": entry.task_id,
        "task_name": task.name if task else "Unknown Task",
        "task_color": task.color if task else "primary",
        "date": entry.date,
        "start_time": entry.start_time,
        "end_time": entry.end_time,
        "duration": duration,
        "formatted_duration": format_duration(duration),
        "is_manual": entry.is_manual,
        "note": entry.note,
        "adjusted_at": entry.adjusted_at,
    }


def _meal_break_row(item: MealBreak, now: Optional[dt.datetime]) -> Dict[str, Any]:
    duration = item.elapsed(now) if now is not None else item.duration
    return {
        "id": item.id,
        "date": item.date,
        "start_time": item.start_time,
        "end_time": item.end_time,
        "duration": duration,
        "formatted_duration": format_duration(duration),
        "is_truncated": item.is_truncated,
        "meal_type": item.meal_type,
    }


def _work_day_row(work_day: WorkDay) -> Dict[str, Any]:
    row = work_day.model_dump()
    row["day_of_week"] = work_day.date.strftime("%A")
    row["formatted_presence_time"] = format_duration(work_day.total_presence_time)
    row["formatted_working_time"] = format_duration(work_day.working_time)
    row["formatted_task_time"] = format_duration(work_day.total_task_time)
    return row


def daily_report(
    state: StoredState, day: dt.date, live_until: Optional[dt.datetime] = None
) -> Dict[str, Any]:
    tasks = {task.id: task for task in state.tasks}
    entries = sorted((e for e in state.time_entries if e.date == day), key=lambda e: e.start_time)
    breaks = sorted((b for b in state.meal_breaks if b.date == day), key=lambda b: b.start_time)
    work_day = compute_work_day(day, entries, breaks, state.activity_counters, live_until)
    required = state.settings.required_daily_presence

    report = _work_day_row(work_day)
    report.update(
        {
            "is_live": live_until is not None and any(
                record.end_time is None for record in [*entries, *breaks]
            ),
            "required_presence": required,
            "presence_balance": work_day.total_presence_time - required,
            "task_breakdown": task_breakdown(entries, breaks, tasks, live_until),
            "time_entries": [_entry_row(entry, tasks, live_until) for entry in entries],
            "meal_breaks": [_meal_break_row(item, live_until) for item in breaks],
        }
    )
    return report


def compute_week_summary(
    week_start: dt.date, state: StoredState, live_until: Optional[dt.datetime] = None
) -> Dict[str, Any]:
    """Monday to Friday of the ISO week containing ``week_start``; missing days are zero."""
    dates = week_dates(week_start)
    tasks = {task.id: task for task in state.tasks}
    live_day = live_until.date() if live_until is not None else None

    days: List[Dict[str, Any]] = []
    for day in dates:
        work_day = compute_work_day(
            day,
            state.time_entries,
            state.meal_breaks,
            state.activity_counters,
            live_until if day == live_day else None,
        )
        days.append(_work_day_row(work_day))

    totals = {
        "total_presence_time": sum(day["total_presence_time"] for day in days),
        "total_task_time": sum(day["total_task_time"] for day in days),
        "total_meal_break_time": sum(day["meal_break_time"] for day in days),
        "total_working_time": sum(day["working_time"] for day in days),
    }
    activity_totals: Dict[str, int] = defaultdict(int)
    for day in days:
        for activity, count in day["activity_counters"].items():
            activity_totals[activity] += count

    # open records only count on the live day
    week_entries = [
        entry
        for entry in state.time_entries
        if entry.date in dates and (entry.end_time is not None or entry.date == live_day)
    ]
    week_breaks = [
        item
        for item in state.meal_breaks
        if item.date in dates and (item.end_time is not None or item.date == live_day)
    ]
    summaries = task_breakdown(week_entries, week_breaks, tasks, live_until)

    return {
        "week_start": dates[0],
        "week_end": dates[-1],
        "week_dates": dates,
        "days": days,
        **totals,
        "efficiency": efficiency(totals["total_task_time"], totals["total_working_time"]),
        "averages": {
            "daily_presence_time": totals["total_presence_time"] // WORKWEEK_LENGTH,
            "daily_task_time": totals["total_task_time"] // WORKWEEK_LENGTH,
            "daily_meal_break_time": totals["total_meal_break_time"] // WORKWEEK_LENGTH,
            "daily_working_time": totals["total_working_time"] // WORKWEEK_LENGTH,
        },
        "activity_totals": dict(sorted(activity_totals.items())),
        "task_summaries": summaries,
    }


def available_weeks(state: StoredState) -> List[Dict[str, Any]]:
    mondays = {week_start_for(entry.date) for entry in state.time_entries}
    mondays.update(week_start_for(item.date) for item in state.meal_breaks)
    weeks = []
    for monday in sorted(mondays, reverse=True):
        friday = monday + dt.timedelta(days=WORKWEEK_LENGTH - 1)
        weeks.append(
            {
                "week_start": monday,
                "week_end": friday,
                "label": f"Week of {monday:%b} {monday.day} - {friday:%b} {friday.day}, {friday.year}",
            }
        )
    return weeks


def audit_data(
    state: StoredState, start: Optional[dt.date] = None, end: Optional[dt.date] = None
) -> Dict[str, Any]:
    if start is not None and end is not None and start > end:
        raise ValidationError("audit.invalid_range", f"Range start {start} is after end {end}")

    def in_range(day: dt.date) -> bool:
        return (start is None or day >= start) and (end is None or day <= end)

    tasks = {task.id: task for task in state.tasks}
    entries = sorted(
        (entry for entry in state.time_entries if in_range(entry.date)),
        key=lambda entry: entry.start_time,
        reverse=True,
    )
    breaks = sorted(
        (item for item in state.meal_breaks if in_range(item.date)),
        key=lambda item: item.start_time,
        reverse=True,
    )
    work_days = sorted(
        (day for day in state.work_days if in_range(day.date)), key=lambda day: day.date, reverse=True
    )
    rows = [_entry_row(entry, tasks, None) for entry in entries]
    return {
        "start": start,
        "end": end,
        "time_entries": rows,
        "meal_breaks": [_meal_break_row(item, None) for item in breaks],
        "work_days": [_work_day_row(day) for day in work_days],
        "tasks": [task.model_dump() for task in state.tasks],
        "summary": {
            "total_time": sum(row["duration"] for row in rows),
            "total_sessions": len(rows),
            "unique_tasks": len({row["task_id"] for row in rows}),
            "manual_entries": sum(1 for row in rows if row["is_manual"]),
        },
    }


def task_stats(
    state: StoredState, task: Task, start: Optional[dt.date] = None, end: Optional[dt.date] = None
) -> Dict[str, Any]:
    """Totals and a per-day breakdown of ``task``'s closed entries, optionally limited to a date range."""
    if start is not None and end is not None and start > end:
        raise ValidationError("stats.invalid_range", f"Range start {start} is after end {end}")
    entries = [
        entry
        for entry in state.time_entries
        if entry.task_id == task.id
        and entry.end_time is not None
        and (start is None or entry.date >= start)
        and (end is None or entry.date <= end)
    ]
    per_day: Dict[dt.date, Dict[str, Any]] = {}
    for entry in sorted(entries, key=lambda entry: entry.start_time):
        bucket = per_day.setdefault(entry.date, {"date": entry.date, "total_time": 0, "session_count": 0})
        bucket["total_time"] += entry.duration
        bucket["session_count"] += 1
    total = sum(entry.duration for entry in entries)
    return {
        "task_id": task.id,
        "task_name": task.name,
        "start": start,
        "end": end,
        "total_time": total,
        "session_count": len(entries),
        "average_session": total // len(entries) if entries else 0,
        "formatted_time": format_duration(total),
        "daily_breakdown": [per_day[day] for day in sorted(per_day)],
    }


class AggregationEngine:
    """Report views over a ledger with a week cache kept fresh by ledger events."""

    def __init__(self, ledger, bus, clock) -> None:
        self.ledger = ledger
        self.clock = clock
        self._lock = threading.Lock()
        self._weeks: Dict[dt.date, Dict[str, Any]] = {}
        for event_type in (TimerStopped, MealBreakStopped, LedgerChanged):
            bus.subscribe(event_type, self._invalidate)

    def _invalidate(self, _event) -> None:
        with self._lock:
            self._weeks.clear()

    @property
    def cached_weeks(self) -> List[dt.date]:
        with self._lock:
            return sorted(self._weeks)

    def work_day(self, day: dt.date) -> WorkDay:
        state = self.ledger.state
        live_until = self.clock.now() if day == self.clock.today() else None
        return compute_work_day(day, state.time_entries, state.meal_breaks, state.activity_counters, live_until)

    def daily_report(self, day: dt.date) -> Dict[str, Any]:
        live_until = self.clock.now() if day == self.clock.today() else None
        return daily_report(self.ledger.state, day, live_until)

    def weekly_report(self, week_start: dt.date) -> Dict[str, Any]:
        monday = week_start_for(week_start)
        with self._lock:
            cached = self._weeks.get(monday)
        if cached is not None:
            return copy.deepcopy(cached)
        state = self.ledger.state
        dates = set(week_dates(monday))
        has_open = any(
            record.end_time is None and record.date in dates
            for record in [*state.time_entries, *state.meal_breaks]
        )
        # live weeks change on every tick and are never cached
        summary = compute_week_summary(monday, state, self.clock.now() if has_open else None)
        if not has_open:
            with self._lock:
                self._weeks[monday] = copy.deepcopy(summary)
        return summary

    def available_weeks(self) -> List[Dict[str, Any]]:
        return available_weeks(self.ledger.state)

    def audit_data(self, start: Optional[dt.date] = None, end: Optional[dt.date] = None) -> Dict[str, Any]:
        return audit_data(self.ledger.state, start, end)

    def task_stats(self, task_id: str, start: Optional[dt.date] = None, end: Optional[dt.date] = None) -> Dict[str, Any]:
        return task_stats(self.ledger.state, self.ledger.get_task(task_id), start, end)

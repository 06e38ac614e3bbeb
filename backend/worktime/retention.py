from __future__ import annotations

import datetime as dt
from dataclasses import dataclass
from typing import Tuple

from .entities import StoredState


@dataclass(frozen=True)
class PurgeResult:
    cutoff: dt.date
    work_days: int = 0
    time_entries: int = 0
    meal_breaks: int = 0
    activity_counters: int = 0

    @property
    def total(self) -> int:
        return self.work_days + self.time_entries + self.meal_breaks + self.activity_counters


def retention_cutoff(today: dt.date, weeks: int) -> dt.date:
    return today - dt.timedelta(days=weeks * 7)


def purge_expired(state: StoredState, today: dt.date, weeks: int) -> Tuple[StoredState, PurgeResult]:
    """
    Drop dated records older than the retention window.

    Records dated strictly before ``today - weeks * 7 days`` are removed. Open
    entries and open meal breaks are kept regardless of their date, and so is
    the work day they belong to. Tasks are never purged and keep their totals.
    """
    cutoff = retention_cutoff(today, weeks)

    entries = [
        entry for entry in state.time_entries if entry.date >= cutoff or entry.end_time is None
    ]
    breaks = [item for item in state.meal_breaks if item.date >= cutoff or item.end_time is None]
    pinned = {entry.date for entry in entries if entry.end_time is None}
    pinned.update(item.date for item in breaks if item.end_time is None)
    work_days = [day for day in state.work_days if day.date >= cutoff or day.date in pinned]
    counters = [counter for counter in state.activity_counters if counter.date >= cutoff]

    result = PurgeResult(
        cutoff=cutoff,
        work_days=len(state.work_days) - len(work_days),
        time_entries=len(state.time_entries) - len(entries),
        meal_breaks=len(state.meal_breaks) - len(breaks),
        activity_counters=len(state.activity_counters) - len(counters),
    )
    if not result.total:
        return state, result
    purged = state.model_copy(
        update={
            "work_days": work_days,
            "time_entries": entries,
            "meal_breaks": breaks,
            "activity_counters": counters,
        }
    )
    return purged, result

"""Ledger records and the stored root document.

Records are pydantic models serialised with camelCase keys, which is the
on-disk layout of the root record. Invariants are enforced by the ledger,
not here, so that a violation always surfaces as a named rule.
"""

from __future__ import annotations

import datetime as dt
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator
from pydantic.alias_generators import to_camel

from .clock import ensure_local
from .utils import MS_PER_HOUR, MS_PER_SECOND, duration_ms, meal_type

SCHEMA_VERSION = 3

MAX_ENTRY_DURATION_MS = 12 * MS_PER_HOUR
MAX_MEAL_BREAK_MS = 3 * MS_PER_HOUR
MAX_ACTIVITY_COUNT = 1000
TASK_NAME_MAX_LENGTH = 100
ACTIVITY_TYPE_MAX_LENGTH = 50

VALID_COLORS = (
    "primary",
    "secondary",
    "accent",
    "neutral",
    "info",
    "success",
    "warning",
    "error",
    "ghost",
    "link",
)

VALID_THEMES = (
    "bumblebee",
    "light",
    "dark",
    "cupcake",
    "emerald",
    "corporate",
    "synthwave",
    "retro",
    "cyberpunk",
    "valentine",
    "halloween",
    "garden",
    "forest",
    "aqua",
    "lofi",
    "pastel",
    "fantasy",
    "wireframe",
    "black",
    "luxury",
    "dracula",
    "cmyk",
    "autumn",
    "business",
    "acid",
    "lemonade",
    "night",
    "coffee",
    "winter",
)

PREDEFINED_ACTIVITIES = (
    "coffee",
    "break",
    "bathroom",
    "water",
    "phone",
    "meeting",
    "interruption",
    "discussion",
)


class Record(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    @field_validator("*", mode="after")
    @classmethod
    def _localize(cls, value):
        if isinstance(value, dt.datetime):
            return ensure_local(value)
        return value


class Task(Record):
    id: str
    name: str
    is_active: bool = False
    total_time: int = 0
    created_at: dt.datetime
    color: str = "primary"
    updated_at: Optional[dt.datetime] = None
    activated_at: Optional[dt.datetime] = None
    is_archived: bool = False


class TimeEntry(Record):
    id: str
    task_id: str
    start_time: dt.datetime
    end_time: Optional[dt.datetime] = None
    duration: int = 0
    date: dt.date
    is_manual: bool = False
    note: str = ""
    adjusted_at: Optional[dt.datetime] = None

    @property
    def is_running(self) -> bool:
        return self.end_time is None

    def elapsed(self, now: dt.datetime) -> int:
        if self.end_time is not None:
            return self.duration
        return max(duration_ms(self.start_time, now), 0)


class MealBreak(Record):
    id: str
    date: dt.date
    start_time: dt.datetime
    end_time: Optional[dt.datetime] = None
    duration: int = 0
    is_truncated: bool = False

    @property
    def is_open(self) -> bool:
        return self.end_time is None

    @property
    def meal_type(self) -> str:
        return meal_type(self.start_time)

    def elapsed(self, now: dt.datetime) -> int:
        if self.end_time is not None:
            return self.duration
        return max(duration_ms(self.start_time, now), 0)


class ActivityCounter(Record):
    date: dt.date
    activity_type: str
    count: int = 0
    last_updated: dt.datetime

    @property
    def is_predefined(self) -> bool:
        return self.activity_type in PREDEFINED_ACTIVITIES


class WorkDay(Record):
    date: dt.date
    arrival_time: Optional[dt.datetime] = None
    departure_time: Optional[dt.datetime] = None
    total_presence_time: int = 0
    total_task_time: int = 0
    meal_break_time: int = 0
    working_time: int = 0
    activity_counters: Dict[str, int] = Field(default_factory=dict)

    @computed_field
    @property
    def efficiency(self) -> float:
        return efficiency(self.total_task_time, self.working_time)


class UserSettings(Record):
    required_daily_presence: int = 8 * MS_PER_HOUR
    timer_max_duration: int = 12 * MS_PER_HOUR
    theme: str = "bumblebee"
    time_format_24h: bool = Field(default=True, alias="timeFormat24h")
    auto_save_interval: int = 30 * MS_PER_SECOND
    data_retention_weeks: int = 5
    notify_on_auto_stop: bool = True
    default_task_color: str = "primary"


class StoredState(Record):
    version: int = SCHEMA_VERSION
    last_updated: Optional[dt.datetime] = None
    tasks: List[Task] = Field(default_factory=list)
    time_entries: List[TimeEntry] = Field(default_factory=list)
    work_days: List[WorkDay] = Field(default_factory=list)
    meal_breaks: List[MealBreak] = Field(default_factory=list)
    activity_counters: List[ActivityCounter] = Field(default_factory=list)
    settings: UserSettings = Field(default_factory=UserSettings)

    def to_document(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


def efficiency(task_time: int, working_time: int) -> float:
    """Share of working time spent on tasks; 0.0 when nothing was worked."""
    if working_time <= 0:
        return 0.0
    return task_time / working_time

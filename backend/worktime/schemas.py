from __future__ import annotations

import datetime as dt
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class TaskResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: str
    name: str
    is_active: bool
    total_time: int
    created_at: dt.datetime
    color: str
    updated_at: Optional[dt.datetime] = None
    activated_at: Optional[dt.datetime] = None
    is_archived: bool = False


class TaskCreateRequest(BaseModel):
    name: str
    color: Optional[str] = None


class TaskUpdateRequest(BaseModel):
    name: Optional[str] = None
    color: Optional[str] = None


class TaskArchiveResponse(BaseModel):
    task_id: str
    outcome: str


class TimeEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: str
    task_id: str
    start_time: dt.datetime
    end_time: Optional[dt.datetime] = None
    duration: int
    date: dt.date
    is_manual: bool = False
    note: str = ""
    adjusted_at: Optional[dt.datetime] = None


class TimerStartRequest(BaseModel):
    task_id: str


class ManualEntryRequest(BaseModel):
    task_id: str
    start_time: dt.datetime
    end_time: dt.datetime
    note: str


class EntryCorrectionRequest(BaseModel):
    note: str
    start_time: Optional[dt.datetime] = None
    end_time: Optional[dt.datetime] = None
    task_id: Optional[str] = None


class MealBreakResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: str
    date: dt.date
    start_time: dt.datetime
    end_time: Optional[dt.datetime] = None
    duration: int
    is_truncated: bool = False
    meal_type: str


class AutoStopNotice(BaseModel):
    task_id: str
    elapsed: int
    actual_elapsed: int


class TimerStatusResponse(BaseModel):
    is_running: bool
    task_id: Optional[str] = None
    task_name: Optional[str] = None
    time_entry_id: Optional[str] = None
    start_time: Optional[dt.datetime] = None
    elapsed: int
    formatted_elapsed: str
    max_duration: int
    last_auto_stop: Optional[AutoStopNotice] = None


class MealBreakStatusResponse(BaseModel):
    is_on_break: bool
    meal_break_id: Optional[str] = None
    start_time: Optional[dt.datetime] = None
    meal_type: Optional[str] = None
    elapsed: int
    formatted_elapsed: str


class ActivityCounterResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    date: dt.date
    activity_type: str
    count: int
    last_updated: dt.datetime
    is_predefined: bool


class ActivityIncrementRequest(BaseModel):
    date: Optional[dt.date] = None
    amount: int = 1


class ActivityResetRequest(BaseModel):
    date: Optional[dt.date] = None


class TaskSummaryResponse(BaseModel):
    task_id: str
    task_name: str
    task_color: str
    total_time: int
    session_count: int
    average_session: int
    formatted_time: str


class TaskDayStats(BaseModel):
    date: dt.date
    total_time: int
    session_count: int


class TaskStatsResponse(BaseModel):
    task_id: str
    task_name: str
    start: Optional[dt.date] = None
    end: Optional[dt.date] = None
    total_time: int
    session_count: int
    average_session: int
    formatted_time: str
    daily_breakdown: List[TaskDayStats]


class EntryRowResponse(TimeEntryResponse):
    task_name: str
    task_color: str
    formatted_duration: str


class MealBreakRowResponse(MealBreakResponse):
    formatted_duration: str


class WorkDayResponse(BaseModel):
    date: dt.date
    day_of_week: str
    arrival_time: Optional[dt.datetime] = None
    departure_time: Optional[dt.datetime] = None
    total_presence_time: int
    total_task_time: int
    meal_break_time: int
    working_time: int
    efficiency: float
    activity_counters: Dict[str, int] = Field(default_factory=dict)
    formatted_presence_time: str
    formatted_working_time: str
    formatted_task_time: str


class DailyReportResponse(WorkDayResponse):
    is_live: bool
    required_presence: int
    presence_balance: int
    task_breakdown: List[TaskSummaryResponse] = Field(default_factory=list)
    time_entries: List[EntryRowResponse] = Field(default_factory=list)
    meal_breaks: List[MealBreakRowResponse] = Field(default_factory=list)


class WeekAverages(BaseModel):
    daily_presence_time: int
    daily_task_time: int
    daily_meal_break_time: int
    daily_working_time: int


class WeekSummaryResponse(BaseModel):
    week_start: dt.date
    week_end: dt.date
    week_dates: List[dt.date]
    days: List[WorkDayResponse]
    total_presence_time: int
    total_task_time: int
    total_meal_break_time: int
    total_working_time: int
    efficiency: float
    averages: WeekAverages
    activity_totals: Dict[str, int] = Field(default_factory=dict)
    task_summaries: List[TaskSummaryResponse] = Field(default_factory=list)


class WeekOptionResponse(BaseModel):
    week_start: dt.date
    week_end: dt.date
    label: str


class AuditSummary(BaseModel):
    total_time: int
    total_sessions: int
    unique_tasks: int
    manual_entries: int


class AuditResponse(BaseModel):
    start: Optional[dt.date] = None
    end: Optional[dt.date] = None
    time_entries: List[EntryRowResponse]
    meal_breaks: List[MealBreakRowResponse]
    work_days: List[WorkDayResponse]
    tasks: List[TaskResponse]
    summary: AuditSummary


class SettingsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    required_daily_presence: int
    timer_max_duration: int
    theme: str
    time_format_24h: bool
    auto_save_interval: int
    data_retention_weeks: int
    notify_on_auto_stop: bool
    default_task_color: str


class SettingsUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")
    required_daily_presence: Optional[int] = None
    timer_max_duration: Optional[int] = None
    theme: Optional[str] = None
    time_format_24h: Optional[bool] = None
    auto_save_interval: Optional[int] = None
    data_retention_weeks: Optional[int] = None
    notify_on_auto_stop: Optional[bool] = None
    default_task_color: Optional[str] = None


class BackupImportResponse(BaseModel):
    status: str
    tasks: int
    time_entries: int
    meal_breaks: int

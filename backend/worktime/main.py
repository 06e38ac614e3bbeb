from __future__ import annotations

import datetime as dt
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import Body, Depends, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .clock import SystemClock
from .config import settings
from .database import build_session_factory, engine
from .engine import TrackerEngine
from .errors import (
    ConcurrentMealBreakError,
    InvalidTaskError,
    NotFoundError,
    PersistenceError,
    TrackerError,
    UnsupportedSchemaError,
    ValidationError,
)
from .schemas import (
    ActivityCounterResponse,
    ActivityIncrementRequest,
    ActivityResetRequest,
    AuditResponse,
    BackupImportResponse,
    DailyReportResponse,
    EntryCorrectionRequest,
    ManualEntryRequest,
    MealBreakResponse,
    MealBreakStatusResponse,
    SettingsResponse,
    SettingsUpdateRequest,
    TaskArchiveResponse,
    TaskCreateRequest,
    TaskResponse,
    TaskStatsResponse,
    TaskUpdateRequest,
    TimeEntryResponse,
    TimerStartRequest,
    TimerStatusResponse,
    WeekOptionResponse,
    WeekSummaryResponse,
)
from .storage import KeyValueStore, PersistenceGateway

logger = logging.getLogger(__name__)

ERROR_STATUS = (
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (InvalidTaskError, status.HTTP_404_NOT_FOUND),
    (ConcurrentMealBreakError, status.HTTP_409_CONFLICT),
    (PersistenceError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (UnsupportedSchemaError, status.HTTP_500_INTERNAL_SERVER_ERROR),
)


def build_tracker() -> TrackerEngine:
    session_factory = build_session_factory(engine)
    store = KeyValueStore(session_factory, settings.storage_namespace)
    gateway = PersistenceGateway(store, SystemClock(), key=settings.storage_key)
    return TrackerEngine(gateway, tick_interval=settings.tick_interval_seconds)


@asynccontextmanager
async def lifespan(app: FastAPI):
    tracker = build_tracker().open()
    app.state.tracker = tracker
    try:
        yield
    finally:
        tracker.close()
        app.state.tracker = None


app = FastAPI(title=settings.app_name, lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://127.0.0.1:5173", "http://localhost:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_engine(request: Request) -> TrackerEngine:
    tracker = getattr(request.app.state, "tracker", None)
    if tracker is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Tracker is not running")
    return tracker


@app.exception_handler(TrackerError)
async def tracker_error_handler(request: Request, exc: TrackerError) -> JSONResponse:
    code = next(
        (code for error_type, code in ERROR_STATUS if isinstance(exc, error_type)),
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    )
    if code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=code, content={"detail": exc.to_detail()})


@app.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/timer", response_model=TimerStatusResponse)
def timer_status(tracker: TrackerEngine = Depends(get_engine)) -> TimerStatusResponse:
    return TimerStatusResponse(**tracker.timer_status())


@app.post("/timer/start", response_model=TimeEntryResponse, status_code=status.HTTP_201_CREATED)
def timer_start(payload: TimerStartRequest, tracker: TrackerEngine = Depends(get_engine)) -> TimeEntryResponse:
    entry = tracker.start_timer(payload.task_id)
    return TimeEntryResponse.model_validate(entry)


@app.post("/timer/stop", response_model=Optional[TimeEntryResponse])
def timer_stop(tracker: TrackerEngine = Depends(get_engine)) -> Optional[TimeEntryResponse]:
    entry = tracker.stop_timer()
    return TimeEntryResponse.model_validate(entry) if entry else None


@app.post("/timer/switch", response_model=TimeEntryResponse)
def timer_switch(payload: TimerStartRequest, tracker: TrackerEngine = Depends(get_engine)) -> TimeEntryResponse:
    entry = tracker.switch_task(payload.task_id)
    return TimeEntryResponse.model_validate(entry)


@app.get("/meal-break", response_model=MealBreakStatusResponse)
def meal_break_status(tracker: TrackerEngine = Depends(get_engine)) -> MealBreakStatusResponse:
    return MealBreakStatusResponse(**tracker.meal_break_status())


@app.post("/meal-break/start", response_model=MealBreakResponse, status_code=status.HTTP_201_CREATED)
def meal_break_start(tracker: TrackerEngine = Depends(get_engine)) -> MealBreakResponse:
    return MealBreakResponse.model_validate(tracker.start_meal_break())


@app.post("/meal-break/stop", response_model=Optional[MealBreakResponse])
def meal_break_stop(tracker: TrackerEngine = Depends(get_engine)) -> Optional[MealBreakResponse]:
    item = tracker.stop_meal_break()
    return MealBreakResponse.model_validate(item) if item else None


@app.get("/tasks", response_model=list[TaskResponse])
def list_tasks(include_archived: bool = False, tracker: TrackerEngine = Depends(get_engine)) -> list[TaskResponse]:
    return [TaskResponse.model_validate(task) for task in tracker.tasks(include_archived)]


@app.post("/tasks", response_model=TaskResponse, status_code=status.HTTP_201_CREATED)
def create_task(payload: TaskCreateRequest, tracker: TrackerEngine = Depends(get_engine)) -> TaskResponse:
    return TaskResponse.model_validate(tracker.create_task(payload.name, payload.color))


@app.patch("/tasks/{task_id}", response_model=TaskResponse)
def update_task(
    task_id: str, payload: TaskUpdateRequest, tracker: TrackerEngine = Depends(get_engine)
) -> TaskResponse:
    task = tracker.update_task(task_id, name=payload.name, color=payload.color)
    return TaskResponse.model_validate(task)


@app.delete("/tasks/{task_id}", response_model=TaskArchiveResponse)
def archive_task(task_id: str, tracker: TrackerEngine = Depends(get_engine)) -> TaskArchiveResponse:
    return TaskArchiveResponse(task_id=task_id, outcome=tracker.archive_task(task_id))


@app.get("/tasks/{task_id}/stats", response_model=TaskStatsResponse)
def task_stats(
    task_id: str,
    start: Optional[dt.date] = None,
    end: Optional[dt.date] = None,
    tracker: TrackerEngine = Depends(get_engine),
) -> TaskStatsResponse:
    return TaskStatsResponse(**tracker.task_stats(task_id, start, end))


@app.post("/entries/manual", response_model=TimeEntryResponse, status_code=status.HTTP_201_CREATED)
def add_manual_entry(payload: ManualEntryRequest, tracker: TrackerEngine = Depends(get_engine)) -> TimeEntryResponse:
    entry = tracker.add_manual_entry(payload.task_id, payload.start_time, payload.end_time, payload.note)
    return TimeEntryResponse.model_validate(entry)


@app.patch("/entries/{entry_id}", response_model=TimeEntryResponse)
def correct_entry(
    entry_id: str, payload: EntryCorrectionRequest, tracker: TrackerEngine = Depends(get_engine)
) -> TimeEntryResponse:
    entry = tracker.correct_time_entry(
        entry_id,
        payload.note,
        start=payload.start_time,
        end=payload.end_time,
        task_id=payload.task_id,
    )
    return TimeEntryResponse.model_validate(entry)


@app.get("/activities/{day}", response_model=list[ActivityCounterResponse])
def list_activities(day: dt.date, tracker: TrackerEngine = Depends(get_engine)) -> list[ActivityCounterResponse]:
    return [ActivityCounterResponse.model_validate(counter) for counter in tracker.activities(day)]


@app.post("/activities/{activity_type}/increment", response_model=ActivityCounterResponse)
def increment_activity(
    activity_type: str,
    payload: Optional[ActivityIncrementRequest] = None,
    tracker: TrackerEngine = Depends(get_engine),
) -> ActivityCounterResponse:
    payload = payload or ActivityIncrementRequest()
    counter = tracker.increment_activity(activity_type, payload.date, payload.amount)
    return ActivityCounterResponse.model_validate(counter)


@app.post("/activities/{activity_type}/reset", response_model=Optional[ActivityCounterResponse])
def reset_activity(
    activity_type: str,
    payload: Optional[ActivityResetRequest] = None,
    tracker: TrackerEngine = Depends(get_engine),
) -> Optional[ActivityCounterResponse]:
    payload = payload or ActivityResetRequest()
    counter = tracker.reset_activity(activity_type, payload.date)
    return ActivityCounterResponse.model_validate(counter) if counter else None


@app.get("/reports/daily/{day}", response_model=DailyReportResponse)
def daily_report(day: dt.date, tracker: TrackerEngine = Depends(get_engine)) -> DailyReportResponse:
    return DailyReportResponse(**tracker.daily_report(day))


@app.get("/reports/weekly/{week_start}", response_model=WeekSummaryResponse)
def weekly_report(week_start: dt.date, tracker: TrackerEngine = Depends(get_engine)) -> WeekSummaryResponse:
    return WeekSummaryResponse(**tracker.weekly_report(week_start))


@app.get("/reports/weeks", response_model=list[WeekOptionResponse])
def available_weeks(tracker: TrackerEngine = Depends(get_engine)) -> list[WeekOptionResponse]:
    return [WeekOptionResponse(**week) for week in tracker.available_weeks()]


@app.get("/audit", response_model=AuditResponse)
def audit(
    start: Optional[dt.date] = None,
    end: Optional[dt.date] = None,
    tracker: TrackerEngine = Depends(get_engine),
) -> AuditResponse:
    return AuditResponse(**tracker.audit_data(start, end))


@app.get("/settings", response_model=SettingsResponse)
def get_settings(tracker: TrackerEngine = Depends(get_engine)) -> SettingsResponse:
    return SettingsResponse.model_validate(tracker.settings())


@app.patch("/settings", response_model=SettingsResponse)
def update_settings(payload: SettingsUpdateRequest, tracker: TrackerEngine = Depends(get_engine)) -> SettingsResponse:
    updates = payload.model_dump(exclude_unset=True)
    if not updates:
        return SettingsResponse.model_validate(tracker.settings())
    return SettingsResponse.model_validate(tracker.update_settings(updates))


@app.post("/settings/reset", response_model=SettingsResponse)
def reset_settings(tracker: TrackerEngine = Depends(get_engine)) -> SettingsResponse:
    return SettingsResponse.model_validate(tracker.reset_settings())


@app.get("/backup")
def export_backup(tracker: TrackerEngine = Depends(get_engine)) -> Dict[str, Any]:
    return tracker.export_backup()


@app.post("/backup", response_model=BackupImportResponse)
def import_backup(
    document: Dict[str, Any] = Body(...), tracker: TrackerEngine = Depends(get_engine)
) -> BackupImportResponse:
    state = tracker.import_backup(document)
    return BackupImportResponse(
        status="imported",
        tasks=len(state.tasks),
        time_entries=len(state.time_entries),
        meal_breaks=len(state.meal_breaks),
    )


@app.delete("/data")
def clear_data(tracker: TrackerEngine = Depends(get_engine)) -> dict[str, str]:
    tracker.clear_data()
    return {"status": "cleared"}

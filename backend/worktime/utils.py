from __future__ import annotations

import datetime as dt
import uuid
from typing import Any, List, Optional

MS_PER_SECOND = 1000
MS_PER_MINUTE = 60 * MS_PER_SECOND
MS_PER_HOUR = 60 * MS_PER_MINUTE

WORKWEEK_LENGTH = 5


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def duration_ms(start: dt.datetime, end: dt.datetime) -> int:
    delta = end - start
    return delta.days * 86_400_000 + delta.seconds * MS_PER_SECOND + delta.microseconds // 1000


def format_duration(value_ms: int, *, with_seconds: bool = True) -> str:
    """Render milliseconds as ``hh:mm:ss`` (or ``hh:mm``); hours may exceed 24."""
    value_ms = max(int(value_ms), 0)
    hours, remainder = divmod(value_ms, MS_PER_HOUR)
    minutes, remainder = divmod(remainder, MS_PER_MINUTE)
    if not with_seconds:
        return f"{hours:02d}:{minutes:02d}"
    seconds = remainder // MS_PER_SECOND
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}"


def week_start_for(day: dt.date) -> dt.date:
    return day - dt.timedelta(days=day.weekday())


def week_dates(week_start: dt.date) -> List[dt.date]:
    """Monday..Friday of the ISO week containing ``week_start``."""
    monday = week_start_for(week_start)
    return [monday + dt.timedelta(days=offset) for offset in range(WORKWEEK_LENGTH)]


def normalize_activity_type(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip().lower()
    return text or None


def meal_type(start: dt.datetime) -> str:
    hour = start.hour
    if 6 <= hour < 10:
        return "breakfast"
    if 11 <= hour < 15:
        return "lunch"
    if 15 <= hour < 18:
        return "snack"
    if 18 <= hour < 22:
        return "dinner"
    return "meal"

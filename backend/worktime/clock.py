"""Wall-clock time sources."""

from __future__ import annotations

import datetime as dt
from typing import Protocol

from .config import LOCAL_TZ


def ensure_local(value: dt.datetime) -> dt.datetime:
    """Attach the configured zone to naive values and convert aware ones into it."""
    if value.tzinfo is None:
        return value.replace(tzinfo=LOCAL_TZ)
    return value.astimezone(LOCAL_TZ)


class Clock(Protocol):
    def now(self) -> dt.datetime: ...

    def today(self) -> dt.date: ...


class SystemClock:
    def now(self) -> dt.datetime:
        now = dt.datetime.now(LOCAL_TZ)
        # millisecond resolution, matching stored durations
        return now.replace(microsecond=now.microsecond - now.microsecond % 1000)

    def today(self) -> dt.date:
        return self.now().date()


class FakeClock:
    """Manually driven clock for deterministic tests and replays."""

    def __init__(self, start: dt.datetime) -> None:
        self._now = ensure_local(start)

    def now(self) -> dt.datetime:
        return self._now

    def today(self) -> dt.date:
        return self._now.date()

    def set(self, value: dt.datetime) -> None:
        self._now = ensure_local(value)

    def advance(self, **kwargs: float) -> dt.datetime:
        self._now = self._now + dt.timedelta(**kwargs)
        return self._now

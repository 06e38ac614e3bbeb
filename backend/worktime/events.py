"""Domain events and the synchronous bus that delivers them."""

from __future__ import annotations

import datetime as dt
import logging
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Callable, DefaultDict, List, Optional, Tuple, Type

from .entities import MealBreak, TimeEntry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Event:
    pass


@dataclass(frozen=True)
class TimerStarted(Event):
    task_id: str
    entry: TimeEntry


@dataclass(frozen=True)
class TimerStopped(Event):
    task_id: str
    date: dt.date
    entry: TimeEntry


@dataclass(frozen=True)
class TimerAutoStopped(Event):
    """Informational: the timer was closed because it ran past the maximum duration."""

    task_id: str
    elapsed: int
    actual_elapsed: int
    entry: Optional[TimeEntry] = None


@dataclass(frozen=True)
class MealBreakStarted(Event):
    meal_break: MealBreak


@dataclass(frozen=True)
class MealBreakStopped(Event):
    meal_break: MealBreak
    truncated: bool = False


@dataclass(frozen=True)
class LedgerChanged(Event):
    dates: Tuple[dt.date, ...] = field(default_factory=tuple)


Handler = Callable[[Event], None]


class EventBus:
    """
    Delivers events to subscribers in subscription order on the emitting thread.

    A failing subscriber is logged and does not prevent delivery to the others.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._handlers: DefaultDict[Type[Event], List[Handler]] = defaultdict(list)

    def subscribe(self, event_type: Type[Event], handler: Handler) -> Callable[[], None]:
        with self._lock:
            self._handlers[event_type].append(handler)
        return lambda: self.unsubscribe(event_type, handler)

    def unsubscribe(self, event_type: Type[Event], handler: Handler) -> None:
        with self._lock:
            handlers = self._handlers.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)

    def emit(self, event: Event) -> None:
        with self._lock:
            handlers = [
                handler
                for event_type, registered in self._handlers.items()
                if isinstance(event, event_type)
                for handler in registered
            ]
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception("Event handler %r failed for %s", handler, type(event).__name__)

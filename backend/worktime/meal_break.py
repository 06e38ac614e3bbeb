"""State machine for the single open meal break.

A break runs alongside a task timer; it never stops one.
"""

from __future__ import annotations

import datetime as dt
import logging
import threading
from dataclasses import dataclass
from typing import Optional, Union

from .clock import ensure_local
from .entities import MAX_MEAL_BREAK_MS, MealBreak
from .errors import ConcurrentMealBreakError, TrackerError
from .events import MealBreakStarted, MealBreakStopped
from .utils import duration_ms

logger = logging.getLogger(__name__)

AUTO_CLOSE_JOB = "meal-break-close"


@dataclass(frozen=True)
class Idle:
    pass


@dataclass(frozen=True)
class OnBreak:
    meal_break_id: str
    start_time: dt.datetime


MealBreakState = Union[Idle, OnBreak]

IDLE = Idle()


class MealBreakStateMachine:
    def __init__(self, ledger, clock, scheduler, bus, *, guard=None, check_interval: float = 1.0) -> None:
        self.ledger = ledger
        self.clock = clock
        self.scheduler = scheduler
        self.bus = bus
        self.check_interval = check_interval
        self._guard = guard or threading.RLock()
        self._check = None
        self.state: MealBreakState = IDLE

    @property
    def is_on_break(self) -> bool:
        return isinstance(self.state, OnBreak)

    def elapsed(self) -> int:
        if not isinstance(self.state, OnBreak):
            return 0
        return max(duration_ms(self.state.start_time, self.clock.now()), 0)

    def _arm(self, meal_break_id: str) -> None:
        self._disarm()

        def check() -> None:
            with self._guard:
                self.check_auto_close(meal_break_id)

        self._check = self.scheduler.every(self.check_interval, check, name=AUTO_CLOSE_JOB)

    def _disarm(self) -> None:
        if self._check is not None:
            self._check.cancel()
            self._check = None

    def restore(self) -> Optional[MealBreak]:
        item = self.ledger.current_meal_break()
        if item is None:
            self.state = IDLE
            return None
        self.state = OnBreak(item.id, item.start_time)
        logger.info("Recovered open meal break since %s", item.start_time)
        self._arm(item.id)
        return self.check_auto_close(item.id)

    def start(self) -> MealBreak:
        """Open a break, first closing one left open on an earlier day."""
        if isinstance(self.state, OnBreak):
            if ensure_local(self.state.start_time).date() == self.clock.today():
                raise ConcurrentMealBreakError(f"Meal break {self.state.meal_break_id} is already open")
            logger.info("Closing meal break %s left open since %s", self.state.meal_break_id, self.state.start_time)
            self.stop()
        item = self.ledger.open_meal_break(self.clock.now())
        self.state = OnBreak(item.id, item.start_time)
        self._arm(item.id)
        logger.info("Meal break started at %s", item.start_time)
        self.bus.emit(MealBreakStarted(meal_break=item))
        return item

    def stop(self) -> Optional[MealBreak]:
        state = self.state
        if not isinstance(state, OnBreak):
            return None
        self._disarm()
        try:
            item = self.ledger.close_meal_break(state.meal_break_id, self.clock.now())
        except Exception:
            self._arm(state.meal_break_id)
            raise
        self.state = IDLE
        self._announce(item)
        return item

    def tick(self) -> int:
        return self.elapsed()

    def check_auto_close(self, meal_break_id: Optional[str] = None) -> Optional[MealBreak]:
        """Close the break once it has run for three hours."""
        state = self.state
        if not isinstance(state, OnBreak) or (meal_break_id is not None and state.meal_break_id != meal_break_id):
            return None
        if duration_ms(state.start_time, self.clock.now()) < MAX_MEAL_BREAK_MS:
            return None
        self._disarm()
        try:
            item = self.ledger.close_meal_break(state.meal_break_id, self.clock.now())
        except TrackerError as exc:
            logger.warning("Closing meal break %s failed (%s); retrying next cycle", state.meal_break_id, exc)
            self._arm(state.meal_break_id)
            return None
        self.state = IDLE
        self._announce(item)
        return item

    def _announce(self, item: MealBreak) -> None:
        if item.is_truncated:
            logger.info("Meal break %s truncated to %d ms", item.id, item.duration)
        else:
            logger.info("Meal break %s ended after %d ms", item.id, item.duration)
        self.bus.emit(MealBreakStopped(meal_break=item, truncated=item.is_truncated))

    def shutdown(self) -> None:
        self._disarm()

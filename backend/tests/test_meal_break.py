from __future__ import annotations

import datetime as dt

import pytest

from worktime.errors import ConcurrentMealBreakError
from worktime.events import MealBreakStopped
from worktime.meal_break import AUTO_CLOSE_JOB, OnBreak
from worktime.utils import MS_PER_HOUR, MS_PER_MINUTE


def test_meal_break_inside_presence_window(tracker, clock, at) -> None:
    task = tracker.create_task("Daily work")
    clock.set(at(8))
    tracker.start_timer(task.id)
    clock.set(at(12))
    tracker.start_meal_break()
    clock.set(at(13, 30))
    meal = tracker.stop_meal_break()
    clock.set(at(17, 30))
    tracker.stop_timer()

    assert meal.duration == 5_400_000
    assert meal.meal_type == "lunch"
    work_day = tracker.ledger.work_day(at(8).date())
    assert work_day.meal_break_time == 5_400_000
    assert work_day.total_presence_time == 34_200_000
    assert work_day.working_time == 28_800_000
    assert work_day.total_task_time == 28_800_000
    assert work_day.total_task_time <= work_day.working_time
    assert work_day.efficiency == 1.0


def test_meal_break_does_not_stop_running_timer(tracker, clock, at) -> None:
    task = tracker.create_task("Keep going")
    clock.set(at(9))
    tracker.start_timer(task.id)
    clock.set(at(12))
    tracker.start_meal_break()

    assert tracker.timer.is_running
    assert tracker.meal_breaks.is_on_break
    assert tracker.meal_break_status()["is_on_break"] is True


def test_second_start_is_rejected(tracker, clock, at) -> None:
    clock.set(at(12))
    first = tracker.start_meal_break()

    with pytest.raises(ConcurrentMealBreakError):
        tracker.start_meal_break()

    assert tracker.meal_breaks.state == OnBreak(first.id, at(12))
    assert len(tracker.ledger.meal_breaks_for_date(at(12).date())) == 1


def test_break_left_open_overnight_is_closed_by_the_next_start(tracker, clock, at) -> None:
    clock.set(at(23, 30))
    stale = tracker.start_meal_break()
    tuesday = at(0).date() + dt.timedelta(days=1)
    clock.set(at(0, 10, day=tuesday))

    fresh = tracker.start_meal_break()

    closed = tracker.ledger.get_meal_break(stale.id)
    assert closed.end_time == at(0, 10, day=tuesday)
    assert closed.duration == 40 * MS_PER_MINUTE
    assert fresh.end_time is None
    assert tracker.meal_breaks.state == OnBreak(fresh.id, at(0, 10, day=tuesday))


def test_stop_when_idle_is_a_noop(tracker) -> None:
    assert tracker.stop_meal_break() is None


def test_long_break_is_truncated_and_flagged(tracker, clock, at, events) -> None:
    clock.set(at(12))
    tracker.start_meal_break()
    clock.set(at(16))

    meal = tracker.stop_meal_break()

    assert meal.duration == 3 * MS_PER_HOUR
    assert meal.end_time == at(15)
    assert meal.is_truncated
    stops = [event for event in events if isinstance(event, MealBreakStopped)]
    assert stops and stops[-1].truncated


def test_open_break_is_closed_automatically_after_three_hours(tracker, clock, scheduler, at) -> None:
    clock.set(at(12))
    tracker.start_meal_break()
    assert len(scheduler.active_named(AUTO_CLOSE_JOB)) == 1

    clock.set(at(14, 59))
    scheduler.run_pending()
    assert tracker.meal_breaks.is_on_break

    clock.set(at(15, 1))
    scheduler.run_pending()

    assert not tracker.meal_breaks.is_on_break
    meal = tracker.ledger.meal_breaks_for_date(at(12).date())[0]
    assert meal.duration == 3 * MS_PER_HOUR
    assert meal.is_truncated
    assert scheduler.active_named(AUTO_CLOSE_JOB) == []


def test_breaks_on_the_same_day_do_not_overlap(tracker, clock, at) -> None:
    clock.set(at(10))
    tracker.start_meal_break()
    clock.set(at(10, 15))
    tracker.stop_meal_break()
    clock.set(at(12))
    tracker.start_meal_break()
    clock.set(at(12, 45))
    tracker.stop_meal_break()

    breaks = tracker.ledger.meal_breaks_for_date(at(10).date())
    assert [item.duration for item in breaks] == [15 * 60 * 1000, 45 * 60 * 1000]
    assert tracker.ledger.work_day(at(10).date()).meal_break_time == 60 * 60 * 1000

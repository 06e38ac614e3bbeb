from __future__ import annotations

import datetime as dt

import pytest

from worktime.entities import StoredState, TimeEntry
from worktime.errors import NotFoundError, PersistenceError, ValidationError
from worktime.events import LedgerChanged
from worktime.ledger import Ledger
from worktime.utils import MS_PER_HOUR, MS_PER_MINUTE


@pytest.fixture()
def ledger(gateway, clock, bus) -> Ledger:
    ledger = Ledger(gateway, clock, bus)
    ledger.load()
    return ledger


def test_create_task_trims_name_and_uses_default_color(ledger) -> None:
    task = ledger.create_task("  Deep work  ")
    assert task.name == "Deep work"
    assert task.color == "primary"
    assert task.total_time == 0
    assert not task.is_active
    assert ledger.tasks() == [task]


@pytest.mark.parametrize(
    ("name", "color", "rule"),
    [
        ("", None, "task.name_length"),
        ("x" * 101, None, "task.name_length"),
        ("Valid", "purple", "task.invalid_color"),
    ],
)
def test_create_task_rejects_invalid_input(ledger, name, color, rule) -> None:
    with pytest.raises(ValidationError) as excinfo:
        ledger.create_task(name, color)
    assert excinfo.value.rule == rule
    assert ledger.tasks() == []


def test_task_names_are_unique_ignoring_case(ledger) -> None:
    ledger.create_task("Review")
    with pytest.raises(ValidationError) as excinfo:
        ledger.create_task("review")
    assert excinfo.value.rule == "task.duplicate_name"


def test_archived_name_can_be_reused(ledger, at) -> None:
    task = ledger.create_task("Support")
    ledger.add_manual_entry(task.id, at(9), at(10), "phone duty")
    assert ledger.archive_task(task.id) == "archived"
    replacement = ledger.create_task("support")
    assert [t.id for t in ledger.tasks()] == [replacement.id]
    assert len(ledger.tasks(include_archived=True)) == 2


def test_unreferenced_task_is_deleted(ledger) -> None:
    task = ledger.create_task("Typo")
    assert ledger.archive_task(task.id) == "deleted"
    assert ledger.tasks(include_archived=True) == []
    with pytest.raises(NotFoundError):
        ledger.get_task(task.id)


def test_active_task_cannot_be_archived(ledger, at) -> None:
    task = ledger.create_task("Busy")
    ledger.open_time_entry(task.id, at(9))
    with pytest.raises(ValidationError) as excinfo:
        ledger.archive_task(task.id)
    assert excinfo.value.rule == "task.active"


def test_update_task_renames_and_recolors(ledger, clock) -> None:
    task = ledger.create_task("Draft")
    clock.advance(minutes=5)
    updated = ledger.update_task(task.id, name="Final", color="accent")
    assert updated.name == "Final"
    assert updated.color == "accent"
    assert updated.updated_at == clock.now()


def test_manual_entry_is_flagged_and_counted(ledger, at) -> None:
    task = ledger.create_task("Meeting")
    entry = ledger.add_manual_entry(task.id, at(14), at(15, 30), "  client call  ")

    assert entry.is_manual
    assert entry.note == "client call"
    assert entry.adjusted_at is not None
    assert entry.duration == 90 * MS_PER_MINUTE
    assert entry.date == at(14).date()
    assert ledger.get_task(task.id).total_time == 90 * MS_PER_MINUTE
    assert ledger.entries_for_task(task.id) == [entry]


@pytest.mark.parametrize(
    ("start", "end", "note", "rule"),
    [
        ((10, 0), (9, 0), "backwards", "entry.end_before_start"),
        ((10, 0), (10, 0), "empty", "entry.end_before_start"),
        ((9, 30), (10, 30), "clash", "entry.overlap"),
        ((11, 0), (12, 0), "   ", "entry.manual_note"),
    ],
)
def test_manual_entry_violations_name_the_rule(ledger, at, start, end, note, rule) -> None:
    task = ledger.create_task("Work")
    ledger.add_manual_entry(task.id, at(9), at(10), "first")

    with pytest.raises(ValidationError) as excinfo:
        ledger.add_manual_entry(task.id, at(*start), at(*end), note)

    assert excinfo.value.rule == rule
    assert len(ledger.state.time_entries) == 1
    assert ledger.get_task(task.id).total_time == MS_PER_HOUR


def test_entries_longer_than_twelve_hours_are_rejected(ledger, at) -> None:
    task = ledger.create_task("Overnight")
    with pytest.raises(ValidationError) as excinfo:
        ledger.add_manual_entry(task.id, at(6), at(19), "too long")
    assert excinfo.value.rule == "entry.max_duration"


def test_open_entry_blocks_overlapping_manual_entry(ledger, at) -> None:
    task = ledger.create_task("Running")
    ledger.open_time_entry(task.id, at(9))
    with pytest.raises(ValidationError) as excinfo:
        ledger.add_manual_entry(task.id, at(11), at(12), "later")
    assert excinfo.value.rule == "entry.overlap"


def test_correction_moves_time_between_tasks(ledger, at) -> None:
    first = ledger.create_task("First")
    second = ledger.create_task("Second")
    ledger.open_time_entry(first.id, at(9))
    entry = ledger.close_time_entry(ledger.running_entry().id, at(11))

    corrected = ledger.correct_time_entry(entry.id, "wrong task", start=at(9, 30), task_id=second.id)

    assert corrected.is_manual
    assert corrected.note == "wrong task"
    assert corrected.duration == 90 * MS_PER_MINUTE
    assert ledger.get_task(first.id).total_time == 0
    assert ledger.get_task(second.id).total_time == 90 * MS_PER_MINUTE


def test_running_entry_cannot_be_corrected(ledger, at) -> None:
    task = ledger.create_task("Live")
    entry = ledger.open_time_entry(task.id, at(9))
    with pytest.raises(ValidationError) as excinfo:
        ledger.correct_time_entry(entry.id, "nope", end=at(10))
    assert excinfo.value.rule == "entry.running"


def test_failed_write_restores_previous_state(ledger, store, gateway) -> None:
    ledger.create_task("Kept")
    before = ledger.state

    store.failing = True
    with pytest.raises(PersistenceError):
        ledger.create_task("Lost")

    assert ledger.state is before
    assert [task.name for task in ledger.tasks()] == ["Kept"]
    assert [task.name for task in gateway.load().tasks] == ["Kept"]


def test_mutations_recompute_work_days_and_emit_changes(ledger, at, events) -> None:
    task = ledger.create_task("Report")
    ledger.add_manual_entry(task.id, at(9), at(12), "morning")

    work_day = ledger.work_day(at(9).date())
    assert work_day.total_task_time == 3 * MS_PER_HOUR
    assert work_day.total_presence_time == 3 * MS_PER_HOUR
    changes = [event for event in events if isinstance(event, LedgerChanged)]
    assert changes[-1].dates == (at(9).date(),)


def test_moving_last_entry_removes_empty_work_day(ledger, at) -> None:
    task = ledger.create_task("Mover")
    entry = ledger.add_manual_entry(task.id, at(9), at(10), "Monday")
    tuesday = at(9).date() + dt.timedelta(days=1)

    ledger.correct_time_entry(entry.id, "Tuesday", start=at(9, day=tuesday), end=at(10, day=tuesday))

    assert ledger.work_day(at(9).date()) is None
    assert ledger.work_day(tuesday).total_task_time == MS_PER_HOUR


def test_activity_counters_are_normalized_and_bounded(ledger, at) -> None:
    day = at(9).date()
    ledger.increment_activity_counter(day, " Coffee ")
    counter = ledger.increment_activity_counter(day, "coffee")
    assert counter.activity_type == "coffee"
    assert counter.count == 2
    assert counter.is_predefined
    assert ledger.work_day(day).activity_counters == {"coffee": 2}

    with pytest.raises(ValidationError) as excinfo:
        ledger.increment_activity_counter(day, "coffee", amount=999)
    assert excinfo.value.rule == "activity.count_range"

    with pytest.raises(ValidationError) as excinfo:
        ledger.increment_activity_counter(day, "x" * 51)
    assert excinfo.value.rule == "activity.type_length"

    reset = ledger.reset_activity_counter(day, "COFFEE")
    assert reset.count == 0
    assert ledger.reset_activity_counter(day, "unknown") is None


def test_settings_are_validated_by_range(ledger) -> None:
    updated = ledger.update_settings({"requiredDailyPresence": 6 * MS_PER_HOUR, "theme": "dark"})
    assert updated.required_daily_presence == 6 * MS_PER_HOUR
    assert updated.theme == "dark"

    for key, value, rule in [
        ("timer_max_duration", 25 * MS_PER_HOUR, "settings.timer_max_duration"),
        ("auto_save_interval", 500, "settings.auto_save_interval"),
        ("data_retention_weeks", 53, "settings.data_retention_weeks"),
        ("theme", "neon", "settings.theme"),
        ("notify_on_auto_stop", "yes", "settings.notify_on_auto_stop"),
        ("favourite_food", "pizza", "settings.unknown_key"),
    ]:
        with pytest.raises(ValidationError) as excinfo:
            ledger.update_settings({key: value})
        assert excinfo.value.rule == rule
    assert ledger.settings.required_daily_presence == 6 * MS_PER_HOUR


def test_invariants_reject_two_open_entries(ledger, at) -> None:
    task = ledger.create_task("Twin")
    state = ledger.state.model_copy(deep=True)
    for hour in (9, 10):
        state.time_entries.append(
            TimeEntry(id=f"entry-{hour}", task_id=task.id, start_time=at(hour), date=at(hour).date())
        )
    with pytest.raises(ValidationError) as excinfo:
        ledger.check_invariants(state)
    assert excinfo.value.rule == "entry.single_open"


def test_replace_state_recomputes_every_work_day(ledger, at) -> None:
    source = ledger.create_task("Imported")
    ledger.add_manual_entry(source.id, at(9), at(10), "one")
    snapshot = ledger.state.model_copy(deep=True)
    snapshot.work_days = []

    ledger.replace_state(StoredState())
    assert ledger.tasks() == []

    ledger.replace_state(snapshot)
    assert ledger.work_day(at(9).date()).total_task_time == MS_PER_HOUR


def test_returned_records_are_detached_from_the_ledger(ledger, at) -> None:
    task = ledger.create_task("Original")
    task.name = "Edited outside"
    ledger.tasks()[0].total_time = 999
    entry = ledger.add_manual_entry(task.id, at(9), at(10), "kept")
    entry.duration = 1
    ledger.settings.theme = "dark"

    stored = ledger.get_task(task.id)
    assert stored.name == "Original"
    assert stored.total_time == MS_PER_HOUR
    assert ledger.get_time_entry(entry.id).duration == MS_PER_HOUR
    assert ledger.settings.theme == "bumblebee"


def test_task_edits_emit_ledger_changes(ledger, events) -> None:
    task = ledger.create_task("Noisy")
    events.clear()

    ledger.update_task(task.id, name="Quiet")

    assert [type(event) for event in events] == [LedgerChanged]


def test_reset_settings_restores_defaults(ledger, gateway) -> None:
    ledger.update_settings({"theme": "dark", "data_retention_weeks": 10})

    settings = ledger.reset_settings()

    assert settings.theme == "bumblebee"
    assert settings.data_retention_weeks == 5
    assert gateway.load().settings.theme == "bumblebee"


def test_clear_deletes_the_stored_document(ledger, gateway, at, events) -> None:
    task = ledger.create_task("Doomed")
    ledger.add_manual_entry(task.id, at(9), at(10), "gone")

    ledger.clear()

    assert gateway.load() is None
    assert ledger.tasks() == []
    assert ledger.entries_between(at(0).date(), at(0).date()) == []
    assert isinstance(events[-1], LedgerChanged)

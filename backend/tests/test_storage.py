from __future__ import annotations

import datetime as dt
import json

import pytest

from worktime.entities import SCHEMA_VERSION, MealBreak, StoredState, Task, TimeEntry, WorkDay
from worktime.errors import PersistenceError, UnsupportedSchemaError
from worktime.migrations import coerce_version, migrate
from worktime.retention import purge_expired
from worktime.storage import KeyValueStore, PersistenceGateway
from worktime.utils import MS_PER_HOUR, duration_ms

LEGACY_DOCUMENT = {
    "version": "1.0.0",
    "lastUpdated": "2024-03-01T18:00:00+01:00",
    "tasks": [
        {"id": "task-1", "name": "Legacy", "isActive": False, "totalTime": 3600000, "color": "info"},
        {"id": "task-2", "name": "Gone", "isActive": False, "totalTime": 0, "isDeleted": True},
    ],
    "timeEntries": [
        {
            "id": "entry-1",
            "taskId": "task-1",
            "startTime": "2024-03-01T09:00:00+01:00",
            "endTime": "2024-03-01T10:00:00+01:00",
            "duration": 3600000,
            "isManuallyAdjusted": True,
            "adjustmentNote": "fixed start",
            "adjustmentTimestamp": "2024-03-01T18:00:00+01:00",
        }
    ],
    "workDays": [{"date": "2024-03-01", "activityCounters": {"Coffee": 2}}],
    "mealBreaks": [
        {
            "id": "meal-1",
            "date": "2024-03-01",
            "startTime": "2024-03-01T12:00:00+01:00",
            "endTime": "2024-03-01T12:30:00+01:00",
            "duration": 1800000,
        }
    ],
    "settings": {},
}


def test_store_roundtrip_and_namespaces(session_factory) -> None:
    first = KeyValueStore(session_factory, "one")
    second = KeyValueStore(session_factory, "two")

    first.set("key", "alpha")
    first.set("key", "beta")
    second.set("key", "gamma")

    assert first.get("key") == "beta"
    assert second.get("key") == "gamma"
    assert first.delete("key") is True
    assert first.get("key") is None
    assert first.delete("key") is False
    assert second.get("key") == "gamma"


def test_key_locks_are_released_after_writes(session_factory) -> None:
    store = KeyValueStore(session_factory, "locks")

    for index in range(3):
        store.set(f"key-{index}", "value")
    store.delete("key-0")
    store.delete("missing")

    assert store._key_locks == {}


def test_gateway_load_returns_none_when_empty(gateway) -> None:
    assert gateway.load() is None


def test_gateway_saves_camel_case_document(gateway, store, clock, at) -> None:
    task = Task(id="task-1", name="Stored", created_at=at(8))
    state = StoredState(tasks=[task])

    saved = gateway.save(state)

    raw = json.loads(store.get(gateway.key))
    assert raw["version"] == SCHEMA_VERSION
    assert raw["tasks"][0]["createdAt"].startswith("2024-03-04T08:00:00")
    assert "timeEntries" in raw and "activityCounters" in raw
    assert raw["settings"]["timeFormat24h"] is True
    assert saved.last_updated == clock.now()
    assert gateway.load().model_dump() == saved.model_dump()


def test_corrupt_document_is_reported_and_quarantined(gateway, store) -> None:
    store.set(gateway.key, "{not json")

    with pytest.raises(PersistenceError) as excinfo:
        gateway.load()
    assert excinfo.value.rule == "persistence.corrupt_document"

    backup_key = gateway.quarantine()
    assert backup_key.startswith(f"{gateway.key}.corrupt-")
    assert store.get(backup_key) == "{not json"
    assert gateway.load() is None


def test_document_over_quota_is_rejected(store, clock) -> None:
    gateway = PersistenceGateway(store, clock, max_bytes=100)
    with pytest.raises(PersistenceError) as excinfo:
        gateway.save(StoredState())
    assert excinfo.value.rule == "persistence.quota_exceeded"
    assert store.get(gateway.key) is None


@pytest.mark.parametrize(("raw", "expected"), [(None, 1), ("1.0.0", 1), (2, 2), ("3", 3)])
def test_coerce_version(raw, expected) -> None:
    assert coerce_version(raw) == expected


def test_legacy_document_is_migrated_in_order() -> None:
    migrated = migrate(json.loads(json.dumps(LEGACY_DOCUMENT)))

    assert migrated["version"] == SCHEMA_VERSION
    entry = migrated["timeEntries"][0]
    assert entry["isManual"] is True
    assert entry["note"] == "fixed start"
    assert entry["adjustedAt"] == "2024-03-01T18:00:00+01:00"
    assert entry["date"] == "2024-03-01"
    assert "isManuallyAdjusted" not in entry
    assert [task["isArchived"] for task in migrated["tasks"]] == [False, True]
    assert migrated["mealBreaks"][0]["isTruncated"] is False
    assert migrated["activityCounters"][0]["activityType"] == "coffee"
    assert migrated["activityCounters"][0]["count"] == 2


def test_gateway_loads_legacy_document(gateway, store) -> None:
    store.set(gateway.key, json.dumps(LEGACY_DOCUMENT))

    state = gateway.load()

    assert state.version == SCHEMA_VERSION
    assert state.time_entries[0].is_manual
    assert state.tasks[1].is_archived
    assert state.activity_counters[0].activity_type == "coffee"


def test_malformed_legacy_document_is_reported_as_corrupt(gateway, store) -> None:
    store.set(gateway.key, json.dumps({"version": 2, "workDays": [{"activityCounters": {"coffee": 1}}]}))

    with pytest.raises(PersistenceError) as excinfo:
        gateway.load()

    assert excinfo.value.rule == "persistence.corrupt_document"
    assert isinstance(excinfo.value.__cause__, KeyError)


def test_future_schema_fails_fast(gateway, store) -> None:
    store.set(gateway.key, json.dumps({"version": SCHEMA_VERSION + 1}))
    with pytest.raises(UnsupportedSchemaError):
        gateway.load()


def _closed_entry(entry_id: str, start: dt.datetime) -> TimeEntry:
    end = start + dt.timedelta(hours=1)
    return TimeEntry(
        id=entry_id, task_id="task-1", start_time=start, end_time=end, duration=duration_ms(start, end), date=start.date()
    )


def test_purge_drops_records_outside_the_window(at) -> None:
    today = at(9).date()
    old = at(9, day=today - dt.timedelta(days=40))
    recent = at(9, day=today - dt.timedelta(days=10))
    open_old = MealBreak(id="meal-open", date=old.date(), start_time=old + dt.timedelta(hours=3))
    state = StoredState(
        time_entries=[_closed_entry("old", old), _closed_entry("recent", recent)],
        meal_breaks=[open_old],
        work_days=[WorkDay(date=old.date()), WorkDay(date=recent.date())],
    )

    purged, result = purge_expired(state, today, weeks=5)

    assert [entry.id for entry in purged.time_entries] == ["recent"]
    assert purged.meal_breaks == [open_old]
    assert [day.date for day in purged.work_days] == [old.date(), recent.date()]
    assert result.time_entries == 1
    assert result.cutoff == today - dt.timedelta(days=35)


def _seed_history(gateway, at) -> tuple[dt.date, dt.date]:
    today = at(9).date()
    old = at(9, day=today - dt.timedelta(days=40))
    recent = at(9, day=today - dt.timedelta(days=10))
    gateway.save(
        StoredState(
            tasks=[Task(id="task-1", name="History", created_at=old, total_time=2 * MS_PER_HOUR)],
            time_entries=[_closed_entry("old", old), _closed_entry("recent", recent)],
        )
    )
    return old.date(), recent.date()


def test_retention_purges_on_next_save(make_engine, gateway, at) -> None:
    old_day, recent_day = _seed_history(gateway, at)
    tracker = make_engine()
    assert tracker.ledger.work_day(old_day) is not None

    tracker.create_task("Trigger a save")

    dates = [day.date for day in tracker.ledger.state.work_days]
    assert old_day not in dates
    assert recent_day in dates
    assert [entry.id for entry in gateway.load().time_entries] == ["recent"]
    assert tracker.ledger.get_task("task-1").total_time == 2 * MS_PER_HOUR


def test_failed_purge_keeps_prior_data(make_engine, gateway, store, at, caplog) -> None:
    old_day, _recent_day = _seed_history(gateway, at)
    tracker = make_engine()

    store.fail_after = store.writes + 1
    with caplog.at_level("ERROR", logger="worktime.ledger"):
        tracker.create_task("Saved but not purged")

    assert [task.name for task in gateway.load().tasks][-1] == "Saved but not purged"
    assert tracker.ledger.work_day(old_day) is not None
    assert {entry.id for entry in gateway.load().time_entries} == {"old", "recent"}
    assert "Retention purge" in caplog.text

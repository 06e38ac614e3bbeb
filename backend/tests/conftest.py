from __future__ import annotations

import datetime as dt
from pathlib import Path
from typing import Callable, Generator, List, Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from worktime.clock import FakeClock
from worktime.config import LOCAL_TZ
from worktime.database import build_engine, build_session_factory
from worktime.engine import TrackerEngine
from worktime.errors import PersistenceError
from worktime.events import Event, EventBus
from worktime.main import app, get_engine
from worktime.scheduler import ManualScheduler
from worktime.storage import KeyValueStore, PersistenceGateway

MONDAY = dt.date(2024, 3, 4)


class FlakyStore(KeyValueStore):
    """Key/value store whose writes can be made to fail on demand."""

    def __init__(self, session_factory: sessionmaker, namespace: str = "test") -> None:
        super().__init__(session_factory, namespace)
        self.failing = False
        self.fail_after: Optional[int] = None
        self.writes = 0

    def set(self, key: str, value: str) -> None:
        if self.failing or (self.fail_after is not None and self.writes >= self.fail_after):
            raise PersistenceError(f"Simulated write failure for '{key}'")
        self.writes += 1
        super().set(key, value)


@pytest.fixture()
def session_factory(tmp_path: Path) -> Generator[sessionmaker, None, None]:
    engine = build_engine(f"sqlite:///{tmp_path / 'test.db'}")
    yield build_session_factory(engine)
    engine.dispose()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock(dt.datetime(2024, 3, 4, 7, 0, tzinfo=LOCAL_TZ))


@pytest.fixture()
def at() -> Callable[..., dt.datetime]:
    def build(hour: int, minute: int = 0, day: dt.date = MONDAY) -> dt.datetime:
        return dt.datetime.combine(day, dt.time(hour, minute), tzinfo=LOCAL_TZ)

    return build


@pytest.fixture()
def store(session_factory: sessionmaker) -> FlakyStore:
    return FlakyStore(session_factory)


@pytest.fixture()
def gateway(store: FlakyStore, clock: FakeClock) -> PersistenceGateway:
    return PersistenceGateway(store, clock)


@pytest.fixture()
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture()
def bus() -> EventBus:
    return EventBus()


@pytest.fixture()
def events(bus: EventBus) -> List[Event]:
    received: List[Event] = []
    bus.subscribe(Event, received.append)
    return received


@pytest.fixture()
def make_engine(gateway, clock, scheduler, bus) -> Generator[Callable[..., TrackerEngine], None, None]:
    engines: List[TrackerEngine] = []

    def factory(**overrides) -> TrackerEngine:
        tracker = TrackerEngine(
            overrides.get("gateway", gateway),
            clock=clock,
            scheduler=overrides.get("scheduler", scheduler),
            bus=overrides.get("bus", bus),
        )
        tracker.open()
        engines.append(tracker)
        return tracker

    yield factory
    for tracker in engines:
        if tracker.is_open:
            tracker.close()


@pytest.fixture()
def tracker(make_engine) -> TrackerEngine:
    return make_engine()


@pytest.fixture()
def client(tracker: TrackerEngine) -> Generator[TestClient, None, None]:
    app.dependency_overrides[get_engine] = lambda: tracker
    client = TestClient(app)
    yield client
    app.dependency_overrides.clear()

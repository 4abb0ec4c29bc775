"""Shared fixtures: a throwaway SQLite database, a controllable clock and a
fake event loop for timer-driven code."""

import threading
from datetime import datetime, timedelta
from typing import List

import pytest

from auth import Identity
from broadcaster import EventBroadcaster
from db import get_engine, init_db
from services import build_services


class TickingClock:
    """Returns a strictly increasing naive UTC time on every call."""

    def __init__(self, start: datetime, step: timedelta = timedelta(milliseconds=1)) -> None:
        self.now = start
        self.step = step
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            self.now += self.step
            return self.now

    def advance(self, delta: timedelta) -> None:
        with self._lock:
            self.now += delta


class FakeHandle:
    def __init__(self, when: float, callback, args) -> None:
        self.when = when
        self.callback = callback
        self.args = args
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeLoop:
    """Just enough of an asyncio loop for the announcer, driven by ``advance``."""

    def __init__(self) -> None:
        self.now = 0.0
        self.handles: List[FakeHandle] = []

    def time(self) -> float:
        return self.now

    def call_at(self, when, callback, *args) -> FakeHandle:
        handle = FakeHandle(when, callback, args)
        self.handles.append(handle)
        return handle

    def call_soon_threadsafe(self, callback, *args) -> None:
        callback(*args)

    @property
    def pending(self) -> List[FakeHandle]:
        return [h for h in self.handles if not h.cancelled]

    def advance(self, seconds: float) -> None:
        target = self.now + seconds
        while True:
            due = [h for h in self.handles if not h.cancelled and h.when <= target]
            if not due:
                break
            handle = min(due, key=lambda h: h.when)
            self.handles.remove(handle)
            self.now = max(self.now, handle.when)
            handle.callback(*handle.args)
        self.now = target


@pytest.fixture
def engine(tmp_path):
    engine = get_engine(f"sqlite:///{tmp_path / 'queue.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def clock():
    return TickingClock(datetime(2026, 3, 2, 12, 0, 0))


@pytest.fixture
def fake_loop():
    return FakeLoop()


@pytest.fixture
def services(engine, clock):
    return build_services(engine, clock=clock, timezone="UTC", broadcaster=EventBroadcaster())


@pytest.fixture
def events(services):
    """Every event the dispatcher emits, in order."""
    recorded = []
    services.dispatcher.listeners.append(recorded.append)
    return recorded


@pytest.fixture
def staffed_counter(services):
    """Factory: add a counter at a service point and bind an attendant to it."""

    def make(service_point_id="sp1", number=1, attendant_id="alice"):
        counter = services.counters.add(service_point_id, number)
        return services.counters.bind(counter.id, attendant_id)

    return make


@pytest.fixture
def admin():
    return Identity(subject_id="boss", roles=frozenset({"admin"}))

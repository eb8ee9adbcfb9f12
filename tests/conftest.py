from __future__ import annotations

import random
from datetime import UTC, datetime, timedelta

import pytest

from sleep_bandit.events import BaseEvent, EventLog
from sleep_bandit.tracker import SleepTracker


class MemoryEventStore:
    """EventStore kept in a list; records every append for assertions."""

    def __init__(self, log: EventLog | None = None):
        self.log = log or EventLog()
        self.appended: list[BaseEvent] = []
        self.fail_next_append = False

    def load(self) -> EventLog:
        return self.log

    def append(self, event: BaseEvent) -> None:
        if self.fail_next_append:
            self.fail_next_append = False
            raise OSError("disk full")
        self.log = self.log.appended(event)
        self.appended.append(event)

    def replace(self, log: EventLog) -> None:
        self.log = log


class StepClock:
    """Deterministic clock advancing one minute per reading."""

    def __init__(self, start: datetime | None = None, step: timedelta = timedelta(minutes=1)):
        self.now = start or datetime(2026, 3, 1, 21, 0, tzinfo=UTC)
        self.step = step

    def __call__(self) -> datetime:
        value = self.now
        self.now += self.step
        return value


@pytest.fixture
def memory_store():
    return MemoryEventStore()


@pytest.fixture
def clock():
    return StepClock()


@pytest.fixture
def tracker(memory_store, clock):
    return SleepTracker(memory_store, clock=clock, rng=random.Random(1234))


@pytest.fixture
def make_tracker():
    """Build an independent tracker over its own memory store."""

    def factory(seed: int | None = None, log: EventLog | None = None) -> SleepTracker:
        rng = random.Random(seed) if seed is not None else None
        return SleepTracker(MemoryEventStore(log), clock=StepClock(), rng=rng)

    return factory

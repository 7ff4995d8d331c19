"""Shared fixtures: a controllable clock, a fresh store and repositories."""

from datetime import datetime, timedelta, timezone

import pytest

from tracker.domain import Identity
from tracker.hooks import HookRegistry
from tracker.projects import ProjectRepository
from tracker.store import InMemoryDocumentStore
from tracker.tasks import TaskRepository


class FakeClock:
    """Returns a strictly increasing time, one second per call."""

    def __init__(self, start: datetime | None = None, step: timedelta = timedelta(seconds=1)):
        self.now = start or datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
        self.step = step

    def __call__(self) -> datetime:
        current = self.now
        self.now = self.now + self.step
        return current

    def advance(self, delta: timedelta) -> None:
        self.now = self.now + delta


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryDocumentStore(persist_path=None)


@pytest.fixture
def hooks():
    return HookRegistry()


@pytest.fixture
def tasks(store, hooks, clock):
    return TaskRepository(store, hooks=hooks, clock=clock)


@pytest.fixture
def projects(store, clock):
    return ProjectRepository(store, clock=clock)


@pytest.fixture
def alice():
    return Identity(team_id="team-a", user_id="alice")


@pytest.fixture
def bob():
    return Identity(team_id="team-a", user_id="bob")


@pytest.fixture
def mallory():
    return Identity(team_id="team-b", user_id="mallory")

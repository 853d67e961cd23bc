"""Shared test fixtures and configuration.

Sets up fake environment variables so forgeflow.config doesn't sys.exit(),
and provides common fixtures: temp DBs, a manual clock, and an in-memory
notification center wired into a scheduler and coordinator.
"""

import os

# Patch env vars BEFORE any forgeflow imports
os.environ.setdefault("TELEGRAM_BOT_TOKEN", "fake-token-for-tests")
os.environ.setdefault("ALLOWED_USER_IDS", "12345")
os.environ.setdefault("DATABASE_PATH", ":memory:")
os.environ.setdefault("TIMEZONE", "UTC")

import pytest


@pytest.fixture
def tmp_db_path(tmp_path):
    """Return a temporary SQLite DB path."""
    return str(tmp_path / "test_forgeflow.db")


@pytest.fixture
def quest_db(tmp_db_path):
    from forgeflow.data.db import QuestDB
    return QuestDB(db_path=tmp_db_path)


@pytest.fixture
def todo_db(tmp_db_path):
    from forgeflow.data.db import TodoDB
    return TodoDB(db_path=tmp_db_path)


@pytest.fixture
def profile_db(tmp_db_path):
    from forgeflow.data.db import ProfileDB
    return ProfileDB(db_path=tmp_db_path)


@pytest.fixture
def clock():
    from forgeflow.core.clock import ManualClock
    return ManualClock()


@pytest.fixture
def center(clock):
    from forgeflow.adapters.memory_notifier import InMemoryNotificationCenter
    return InMemoryNotificationCenter(clock=clock)


@pytest.fixture
def authorization():
    from forgeflow.adapters.authorization import StaticAuthorization
    return StaticAuthorization(granted=True)


@pytest.fixture
def scheduler(center, authorization, clock):
    from forgeflow.core.notification_scheduler import NotificationScheduler
    return NotificationScheduler(center, authorization, clock)


@pytest.fixture
def events(clock):
    from forgeflow.core.events import EventHub
    return EventHub(clock)


@pytest.fixture
def coordinator(quest_db, todo_db, profile_db, scheduler, events, clock):
    from forgeflow.core.coordinator import MissionCoordinator
    return MissionCoordinator(quest_db, todo_db, profile_db, scheduler, events, clock)

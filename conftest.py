"""Pytest configuration for the cadence test suite."""

from datetime import datetime, timezone

import pytest

from cadence.db.session import create_db_engine, create_session_factory, init_db
from cadence.reminders.config import ReminderSettings
from cadence.reminders.store import SqlDocumentStore

# Monday 2026-10-19 12:00 UTC
NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def settings():
    return ReminderSettings(DATABASE_URL="sqlite://")


@pytest.fixture
def engine(settings):
    engine = create_db_engine(settings.DATABASE_URL)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def store(engine, settings):
    return SqlDocumentStore(create_session_factory(engine), batch_limit=settings.STORE_BATCH_LIMIT)

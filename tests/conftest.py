from datetime import UTC, date, datetime, timedelta
from unittest.mock import Mock

import pytest

from schoolrun.db.database import init_database


class FakeClock:
    """Manually advanced UTC clock injected into services under test."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


@pytest.fixture
def temp_sqlite_db(tmp_path):
    """Temporary SQLite database for persistence tests."""
    return tmp_path / "test_schoolrun.db"


@pytest.fixture
def session_maker(temp_sqlite_db):
    """Session factory bound to a fresh temporary database."""
    return init_database(str(temp_sqlite_db))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 3, 2, 7, 0, 0, tzinfo=UTC))


@pytest.fixture
def service_date() -> date:
    return date(2026, 3, 2)


@pytest.fixture
def mock_notifier():
    """Mock notifier recording notify calls."""
    return Mock()


@pytest.fixture
def mock_channel():
    """Mock realtime channel recording publish calls."""
    return Mock()


@pytest.fixture
def mock_redis_client():
    """Mock Redis client for cache and pub/sub tests."""
    return Mock()

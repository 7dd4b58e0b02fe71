"""Shared test fixtures for roomkeeper tests."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from roomkeeper import db
from roomkeeper.access import AccessControlList
from roomkeeper.config import Config, MatrixConfig, SchedulerConfig

ADMIN = "@admin:example.org"
MOD = "@mod:example.org"
OUTSIDER = "@eve:example.org"
BOT = "@roomkeeper:example.org"
ROOM = "!room:example.org"

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def db_path(tmp_path):
    """Initialize a real SQLite job store using schema.sql and return its path."""
    path = tmp_path / "test.db"
    db.init_db(path)
    return path


@pytest.fixture
def store(db_path):
    return db.JobStore(db_path)


@pytest.fixture
def make_config(tmp_path):
    """Factory fixture that creates Config instances with tmp paths."""
    def _make_config(**overrides):
        defaults = {
            "db_path": tmp_path / "test.db",
            "matrix": MatrixConfig(
                homeserver="https://matrix.test",
                user_id=BOT,
                access_token="token",
            ),
            "access": AccessControlList(
                admins=frozenset({ADMIN}),
                mods=frozenset({MOD}),
            ),
            "scheduler": SchedulerConfig(lock_path=str(tmp_path / "daemon.lock")),
        }
        defaults.update(overrides)
        return Config(**defaults)
    return _make_config


@pytest.fixture
def sink():
    """Fake outbound chat client recording every send."""
    mock = AsyncMock()
    mock.user_id = BOT
    mock.send_message = AsyncMock(return_value="$event")
    mock.join_room = AsyncMock(side_effect=lambda room: room)
    mock.leave_room = AsyncMock(return_value=None)
    mock.get_display_name = AsyncMock(return_value=None)
    return mock


def _mock_httpx_client():
    """Create a mock httpx.AsyncClient that works as an async context manager."""
    mock_client = AsyncMock()
    mock_client.__aenter__ = AsyncMock(return_value=mock_client)
    mock_client.__aexit__ = AsyncMock(return_value=False)
    return mock_client


@pytest.fixture
def mock_httpx():
    return _mock_httpx_client()

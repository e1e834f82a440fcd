"""
Fixtures for attendance tests.
"""

from contextlib import asynccontextmanager
from datetime import UTC, date, datetime
from types import SimpleNamespace
from unittest.mock import AsyncMock
from uuid import uuid4

import pytest


@pytest.fixture
def mock_db():
    """Create a mock database session."""
    db = AsyncMock()
    db.execute = AsyncMock()
    db.commit = AsyncMock()
    db.rollback = AsyncMock()
    return db


@pytest.fixture
def session_factory(mock_db):
    """Session factory yielding mock_db."""

    @asynccontextmanager
    async def factory():
        yield mock_db

    return factory


@pytest.fixture
def make_log():
    def _make_log(day: date, login_time: datetime | None):
        return SimpleNamespace(id=uuid4(), date=day, login_time=login_time, logout_time=None)

    return _make_log


@pytest.fixture
def run_time():
    """04:00 UTC on 2 March 2026."""
    return datetime(2026, 3, 2, 4, 0, tzinfo=UTC)

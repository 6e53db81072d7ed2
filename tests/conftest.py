"""
Pytest configuration and shared fixtures.
"""

from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient

from contact_store import InMemoryContactStore, SqliteContactStore
from db_setup import init_db
from main import create_app, get_store


class TickingClock:
    """Returns a strictly increasing time on every call."""

    def __init__(self, start=datetime(2023, 4, 1, 0, 0, 0), step=timedelta(seconds=1)):
        self.now = start
        self.step = step

    def __call__(self):
        current = self.now
        self.now += self.step
        return current


@pytest.fixture
def clock():
    return TickingClock()


@pytest.fixture
def store(clock):
    return InMemoryContactStore(clock=clock)


@pytest.fixture
def db_path(tmp_path):
    path = str(tmp_path / "contacts.db")
    init_db(path)
    return path


@pytest.fixture
def sqlite_store(db_path, clock):
    return SqliteContactStore(db_path, clock=clock)


@pytest.fixture
def client(tmp_path):
    """API client backed by a fresh SQLite file."""
    app = create_app(db_path=tmp_path / "api.db")
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def memory_client(store, tmp_path):
    """API client whose requests all go to the in-memory store."""
    app = create_app(db_path=tmp_path / "unused.db")
    app.dependency_overrides[get_store] = lambda: store
    with TestClient(app) as test_client:
        yield test_client

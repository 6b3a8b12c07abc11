"""
Shared Test Fixtures
"""

from datetime import datetime, timedelta, timezone
from typing import ClassVar, List

import pytest

from txoutbox.database import (
    DatabaseAdapter,
    DatabaseBackend,
    DatabaseConfig,
    create_schema,
    set_database,
)
from txoutbox.entities import VersionedEntity, VersionedEntityStore


class Board(VersionedEntity):
    table_name: ClassVar[str] = "boards"

    name: str
    members: List[str] = []


class FakeClock:
    """Controllable UTC clock for relay and janitor tests."""

    def __init__(self, start: datetime = None):
        self.now = start or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True)
def auth_required(monkeypatch):
    monkeypatch.setenv("AUTH_REQUIRED", "true")


@pytest.fixture
async def db(tmp_path):
    """Temporary SQLite database with the full schema and a boards table."""
    adapter = DatabaseAdapter(DatabaseConfig(
        backend=DatabaseBackend.SQLITE,
        sqlite_path=str(tmp_path / "txoutbox.db")
    ))
    await adapter.connect()
    await create_schema(adapter, entity_tables=["boards"])
    set_database(adapter)

    yield adapter

    set_database(None)
    await adapter.disconnect()


@pytest.fixture
def board_cls():
    return Board


@pytest.fixture
def boards(db):
    return VersionedEntityStore(Board, db)


@pytest.fixture
def clock():
    return FakeClock()

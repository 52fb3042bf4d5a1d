from __future__ import annotations

import os
from typing import TYPE_CHECKING

import pytest

from regwatch.adapters.sqlalchemy import Database, SqlAlchemyUnitOfWork
from tests.helpers.registry import FixedClock, InMemoryRegistryStore

os.environ.setdefault("DATABASE_URI", "sqlite+pysqlite:///:memory:")

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator
    from pathlib import Path


@pytest.fixture
def database(tmp_path: Path) -> Iterator[Database]:
    db = Database.from_uri(f"sqlite+pysqlite:///{tmp_path / 'regwatch.db'}").startup()
    try:
        yield db
    finally:
        db.dispose()


@pytest.fixture
def sqlite_unit_of_work(database: Database) -> Callable[[], SqlAlchemyUnitOfWork]:
    return database.unit_of_work


@pytest.fixture
def store() -> InMemoryRegistryStore:
    return InMemoryRegistryStore()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()

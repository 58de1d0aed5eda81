"""
Shared pytest fixtures and configuration for repokit tests.

This module provides:
- A file-backed SQLite engine per test (``tmp_path``) with the test schema
- A ``Database`` wired to a recording query logger
- Repositories for the ``User`` and ``Order`` test entities
- A seeded data set of 25 users

Seeded users (``make_users(25)``):
    id 1..25, username ``user01``..``user25``, age ``20 + id``, status ``id % 3``

    status 0 → 8 users, ages sum 268
    status 1 → 9 users, ages sum 297
    status 2 → 8 users, ages sum 260
"""

import sys
from collections.abc import Iterator
from pathlib import Path

import pytest
from sqlalchemy.engine import Engine

# Ensure repokit package is importable
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from repokit.core.database import Database, create_engine
from repokit.core.repository import Repository

from tests._support import RecordingQueryLogger
from tests._support.models import SCHEMA, Order, User, make_users


# =============================================================================
# Test Markers Configuration
# =============================================================================


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Auto-mark tests that touch a database file as integration tests."""
    for item in items:
        fixtures = getattr(item, "fixturenames", ())
        if "engine" in fixtures:
            item.add_marker(pytest.mark.integration)
        else:
            item.add_marker(pytest.mark.unit)


# =============================================================================
# Database Fixtures
# =============================================================================


@pytest.fixture
def engine(tmp_path: Path) -> Iterator[Engine]:
    """SQLite engine on a fresh database file with the test schema."""
    eng = create_engine(f"sqlite:///{tmp_path / 'test.db'}")
    with eng.begin() as conn:
        for ddl in SCHEMA:
            conn.exec_driver_sql(ddl)
    yield eng
    eng.dispose()


@pytest.fixture
def query_log() -> RecordingQueryLogger:
    """Query logger that records every statement."""
    return RecordingQueryLogger()


@pytest.fixture
def db(engine: Engine, query_log: RecordingQueryLogger) -> Database:
    return Database(engine, query_logger=query_log)


@pytest.fixture
def users(db: Database) -> Repository[User]:
    return Repository(db, User, "users")


@pytest.fixture
def orders(db: Database) -> Repository[Order]:
    return Repository(db, Order, "orders")


@pytest.fixture
def seeded_users(users: Repository[User], query_log: RecordingQueryLogger) -> Repository[User]:
    """The users repository with 25 rows inserted; the query log starts empty."""
    users.batch_insert(make_users(25))
    query_log.clear()
    return users


@pytest.fixture
def seeded_orders(
    seeded_users: Repository[User],
    orders: Repository[Order],
    query_log: RecordingQueryLogger,
) -> Repository[Order]:
    """Orders: user 1 → 10.0 and 20.0, user 2 → 5.0, nobody else."""
    orders.batch_create(
        [
            Order(user_id=1, amount=10.0),
            Order(user_id=1, amount=20.0),
            Order(user_id=2, amount=5.0),
        ]
    )
    query_log.clear()
    return orders

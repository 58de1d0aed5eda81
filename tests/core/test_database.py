"""Tests for database and transaction handles and query logging."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest
from sqlalchemy import exc as sa_exc
from sqlalchemy import text
from sqlalchemy.engine import Engine
from structlog.testing import capture_logs

from repokit.core.cancellation import CancelToken
from repokit.core.database import (
    Database,
    StructlogQueryLogger,
    Transaction,
    database_from_settings,
)
from repokit.core.errors import CancelledError, ExecutionError, InvalidStateError
from repokit.core.expressions import raw
from repokit.core.protocols import DatabaseHandle, TransactionHandle
from repokit.core.repository import Repository
from repokit.core.settings import RepoKitSettings

from tests._support import RecordingQueryLogger
from tests._support.models import User

INSERT_USER = "INSERT INTO users (username, age, status) VALUES (:username, :age, :status)"


class TestDatabase:
    def test_ping(self, db: Database) -> None:
        assert db.ping() is True

    def test_sqlite_pragmas(self, db: Database) -> None:
        assert db.query_one("PRAGMA journal_mode") == {"journal_mode": "wal"}
        assert db.query_one("PRAGMA foreign_keys") == {"foreign_keys": 1}

    def test_execute_string(self, db: Database) -> None:
        result = db.execute(INSERT_USER, {"username": "ada", "age": 36, "status": 1})
        assert result.rowcount == 1
        assert result.lastrowid == 1

    def test_executemany(self, db: Database) -> None:
        result = db.execute(
            text(INSERT_USER),
            [
                {"username": "ada", "age": 36, "status": 1},
                {"username": "grace", "age": 45, "status": 1},
            ],
        )
        assert result.rowcount == 2
        assert db.query_one("SELECT COUNT(*) AS n FROM users") == {"n": 2}

    def test_query_many(self, seeded_users: Repository[User], db: Database) -> None:
        rows = db.query_many(raw("SELECT username FROM users WHERE age > ? ORDER BY id", 43))
        assert rows == [{"username": "user24"}, {"username": "user25"}]

    def test_query_one_none(self, db: Database) -> None:
        assert db.query_one("SELECT id FROM users") is None

    def test_render(self, db: Database) -> None:
        sql, params = db.render(raw("SELECT 1 WHERE 1 = ?", 1))
        assert sql == "SELECT 1 WHERE 1 = ?"
        assert params == (1,)

    def test_driver_error(self, db: Database, query_log: RecordingQueryLogger) -> None:
        with pytest.raises(ExecutionError) as exc_info:
            db.execute("INSERT INTO missing_table VALUES (1)")

        error = exc_info.value
        assert isinstance(error.cause, sa_exc.OperationalError)
        assert error.context.sql == "INSERT INTO missing_table VALUES (1)"
        assert len(query_log.errors) == 1

    def test_every_statement_is_logged(
        self, db: Database, query_log: RecordingQueryLogger
    ) -> None:
        db.execute(INSERT_USER, {"username": "ada", "age": 36, "status": 1})
        db.query_many("SELECT * FROM users")

        assert query_log.kinds() == ["execute", "query"]
        assert query_log.records[0].params == {"username": "ada", "age": 36, "status": 1}
        assert all(r.duration >= 0 for r in query_log.records)

    def test_failing_query_logger_is_contained(self, engine: Engine) -> None:
        def broken(*args: Any) -> None:
            raise RuntimeError("logger down")

        assert Database(engine, query_logger=broken).ping() is True

    def test_cancelled(self, db: Database, query_log: RecordingQueryLogger) -> None:
        token = CancelToken()
        token.cancel()
        with pytest.raises(CancelledError):
            db.query_many("SELECT 1", cancel=token)
        with pytest.raises(CancelledError):
            db.begin(cancel=token)
        assert query_log.records == []

    def test_live_token_runs(self, db: Database) -> None:
        assert db.query_one("SELECT 1 AS ok", cancel=CancelToken(timeout=30)) == {"ok": 1}

    def test_dialect_override(self, engine: Engine) -> None:
        assert Database(engine, dialect="starrocks").dialect.name == "starrocks"

    def test_protocols(self, db: Database) -> None:
        assert isinstance(db, DatabaseHandle)
        tx = db.begin()
        try:
            assert isinstance(tx, TransactionHandle)
        finally:
            tx.rollback()


class TestTransaction:
    def test_commit(self, db: Database) -> None:
        tx = db.begin()
        tx.execute(INSERT_USER, {"username": "ada", "age": 36, "status": 1})
        assert tx.query_one("SELECT COUNT(*) AS n FROM users") == {"n": 1}
        tx.commit()

        assert tx.active is False
        assert db.query_one("SELECT COUNT(*) AS n FROM users") == {"n": 1}

    def test_rollback(self, db: Database) -> None:
        tx = db.begin()
        tx.execute(INSERT_USER, {"username": "ada", "age": 36, "status": 1})
        tx.rollback()
        assert db.query_one("SELECT COUNT(*) AS n FROM users") == {"n": 0}

    def test_closed_transaction(self, db: Database) -> None:
        tx = db.begin()
        tx.commit()
        with pytest.raises(InvalidStateError):
            tx.execute(INSERT_USER, {"username": "ada", "age": 36, "status": 1})
        with pytest.raises(InvalidStateError):
            tx.commit()
        with pytest.raises(InvalidStateError):
            tx.rollback()

    def test_closed_transaction_failure_is_logged(
        self, db: Database, query_log: RecordingQueryLogger
    ) -> None:
        tx = db.begin()
        tx.commit()
        query_log.clear()

        with pytest.raises(InvalidStateError):
            tx.query_many("SELECT 1")

        assert query_log.kinds() == ["query"]
        assert len(query_log.errors) == 1
        assert isinstance(query_log.errors[0].error, InvalidStateError)

    def test_logged_kinds(self, db: Database, query_log: RecordingQueryLogger) -> None:
        tx = db.begin()
        tx.query_one("SELECT 1")
        tx.rollback()
        assert query_log.kinds() == ["begin", "query", "rollback"]
        assert query_log.records[-1].sql == "ROLLBACK"

    def test_shares_dialect(self, db: Database) -> None:
        tx = db.begin()
        try:
            assert isinstance(tx, Transaction)
            assert tx.dialect is db.dialect
            assert tx.sa_dialect is db.sa_dialect
        finally:
            tx.rollback()


class TestStructlogQueryLogger:
    def test_success_is_debug(self) -> None:
        with capture_logs() as logs:
            StructlogQueryLogger()("query", "SELECT 1", (), 0.01, None)
        assert logs[0]["event"] == "database_operation"
        assert logs[0]["log_level"] == "debug"
        assert logs[0]["sql"] == "SELECT 1"

    def test_slow_is_warning(self) -> None:
        with capture_logs() as logs:
            StructlogQueryLogger(slow_query_seconds=0.5)("query", "SELECT 1", (), 1.0, None)
        assert logs[0]["event"] == "slow_query_detected"
        assert logs[0]["log_level"] == "warning"
        assert logs[0]["duration_ms"] == 1000.0

    def test_failure_is_error(self) -> None:
        with capture_logs() as logs:
            StructlogQueryLogger(prefix="orders")(
                "execute", "INSERT", (), 9.0, RuntimeError("disk full")
            )
        assert logs[0]["event"] == "database_operation_failed"
        assert logs[0]["log_level"] == "error"
        assert logs[0]["error"] == "disk full"
        assert logs[0]["prefix"] == "orders"


class TestFromSettings:
    def test_database_from_settings(self, tmp_path: Path) -> None:
        settings = RepoKitSettings(
            database_url=f"sqlite:///{tmp_path / 'settings.db'}",
            dialect="starrocks",
        )
        db = database_from_settings(settings)
        try:
            assert db.dialect.name == "starrocks"
            assert db.ping() is True
        finally:
            db.dispose()

    def test_from_url(self, tmp_path: Path) -> None:
        db = Database.from_url(f"sqlite:///{tmp_path / 'url.db'}")
        try:
            assert db.dialect.name == "sqlite"
        finally:
            db.dispose()

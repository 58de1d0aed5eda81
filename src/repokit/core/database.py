"""
Database handle, transaction handle and query logging.

The core talks to the database only through the handles defined here.
Both expose the same primitives: ``execute``, ``query_one``,
``query_many`` and ``render``.  ``Database.begin()`` opens a
``Transaction`` bound to one connection.

Manifesto:
    - **Narrow contract:** Statements in, rows/affected counts out
    - **Always observed:** Every execution reaches the query logger, success or failure
    - **Never swallow:** Driver failures surface as ``ExecutionError``
    - **Cancellable:** An optional ``CancelToken`` interrupts the in-flight call

Architecture:
    ::

        ┌──────────────────────────────────────────────────────────────┐
        │                       Database                                │
        │   engine: sqlalchemy.Engine      dialect: repokit Dialect     │
        │                                                               │
        │   execute(stmt)      → ExecResult   (own connection, commits) │
        │   query_one(stmt)    → dict | None                            │
        │   query_many(stmt)   → list[dict]                             │
        │   begin()            → Transaction                            │
        └───────────────────────────────┬──────────────────────────────┘
                                        │ one connection, one transaction
        ┌───────────────────────────────▼──────────────────────────────┐
        │                      Transaction                              │
        │   execute / query_one / query_many   (same connection)        │
        │   commit() / rollback()              (exactly once)           │
        └──────────────────────────────────────────────────────────────┘

        after every statement:
            query_logger(kind, sql, params, duration, error | None)

Examples:
    >>> db = Database(create_engine("sqlite:///app.db"))
    >>> db.execute(raw("UPDATE users SET status = ? WHERE id = ?", 2, 7)).rowcount
    1
    >>> tx = db.begin()
    >>> tx.execute(insert_stmt)
    >>> tx.commit()

Tags:
    database, transaction, sqlalchemy, logging, cancellation, repokit
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager, nullcontext
from dataclasses import dataclass
from typing import Any, Protocol

from sqlalchemy import create_engine as _sa_create_engine
from sqlalchemy import event, text
from sqlalchemy import exc as sa_exc
from sqlalchemy.engine import Connection, Engine, Result
from sqlalchemy.engine import Dialect as SADialect
from sqlalchemy.sql import ClauseElement

from repokit.core.cancellation import CancelToken
from repokit.core.dialect import Dialect, get_dialect
from repokit.core.errors import CancelledError, ExecutionError, InvalidStateError
from repokit.core.expressions import render
from repokit.core.logging import get_logger
from repokit.core.settings import RepoKitSettings

logger = get_logger(__name__)

Statement = ClauseElement | str
Params = dict[str, Any] | Sequence[dict[str, Any]] | None


def create_engine(
    url: str = "sqlite:///repokit.db",
    *,
    echo: bool = False,
    pool_size: int | None = None,
    max_overflow: int | None = None,
    pool_timeout: int | None = None,
    **kwargs: Any,
) -> Engine:
    """Create a SQLAlchemy engine with sane defaults.

    Parameters
    ----------
    url:
        Database URL (``sqlite:///…``, ``mysql+pymysql://…``, etc.)
    echo:
        If ``True``, SQLAlchemy also logs all SQL itself.
    pool_size, max_overflow, pool_timeout:
        Connection pool parameters (ignored for SQLite).
    **kwargs:
        Extra arguments forwarded to ``sqlalchemy.create_engine``.
    """
    if url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False})
        engine = _sa_create_engine(url, echo=echo, **kwargs)

        @event.listens_for(engine, "connect")
        def _set_sqlite_pragma(dbapi_connection: Any, _rec: Any) -> None:
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return engine

    pool_kwargs: dict[str, Any] = {}
    if pool_size is not None:
        pool_kwargs["pool_size"] = pool_size
    if max_overflow is not None:
        pool_kwargs["max_overflow"] = max_overflow
    if pool_timeout is not None:
        pool_kwargs["pool_timeout"] = pool_timeout

    return _sa_create_engine(url, echo=echo, **pool_kwargs, **kwargs)


# ---------------------------------------------------------------------------
# Query logging
# ---------------------------------------------------------------------------


class QueryLogger(Protocol):
    """Receives one call per executed statement, succeed or fail."""

    def __call__(
        self,
        kind: str,
        sql: str,
        params: Any,
        duration: float,
        error: BaseException | None,
    ) -> None: ...


class StructlogQueryLogger:
    """Default query logger.

    Failures log at error level, statements slower than
    ``slow_query_seconds`` at warning, everything else at debug.
    """

    def __init__(self, *, slow_query_seconds: float = 5.0, prefix: str = "") -> None:
        self.slow_query_seconds = slow_query_seconds
        self.prefix = prefix
        self._logger = get_logger("repokit.sql")

    def __call__(
        self,
        kind: str,
        sql: str,
        params: Any,
        duration: float,
        error: BaseException | None,
    ) -> None:
        fields = {
            "kind": kind,
            "sql": sql,
            "params": params,
            "duration_ms": round(duration * 1000, 3),
            "prefix": self.prefix,
        }
        if error is not None:
            self._logger.error(
                "database_operation_failed",
                error=str(error),
                error_type=type(error).__name__,
                **fields,
            )
        elif duration > self.slow_query_seconds:
            self._logger.warning("slow_query_detected", **fields)
        else:
            self._logger.debug("database_operation", **fields)


# ---------------------------------------------------------------------------
# Handles
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ExecResult:
    """Outcome of a data-modifying statement."""

    rowcount: int
    lastrowid: Any = None
    returned: Any = None


def _exec_result(result: Result) -> ExecResult:
    returned = result.scalar() if result.returns_rows else None
    lastrowid = None if result.returns_rows else result.lastrowid
    return ExecResult(rowcount=result.rowcount, lastrowid=lastrowid, returned=returned)


def _one(result: Result) -> dict[str, Any] | None:
    row = result.mappings().first()
    return dict(row) if row is not None else None


def _many(result: Result) -> list[dict[str, Any]]:
    return [dict(row) for row in result.mappings()]


class _Handle:
    """Shared execution path of :class:`Database` and :class:`Transaction`."""

    dialect: Dialect
    _query_logger: QueryLogger | None

    @property
    def sa_dialect(self) -> SADialect:
        raise NotImplementedError

    def render(self, statement: ClauseElement) -> tuple[str, Any]:
        """Render ``statement`` the way this handle's driver will see it."""
        return render(statement, self.sa_dialect)

    @contextmanager
    def _connection(self, *, write: bool) -> Iterator[Connection]:
        raise NotImplementedError
        yield  # pragma: no cover

    def execute(
        self,
        statement: Statement,
        params: Params = None,
        *,
        cancel: CancelToken | None = None,
    ) -> ExecResult:
        """Run a data-modifying statement.

        A sequence of parameter dicts runs the statement once per set
        (DB-API ``executemany``).
        """
        return self._run("execute", statement, params, cancel, _exec_result, write=True)

    def query_one(
        self,
        statement: Statement,
        params: Params = None,
        *,
        cancel: CancelToken | None = None,
    ) -> dict[str, Any] | None:
        return self._run("query", statement, params, cancel, _one, write=False)

    def query_many(
        self,
        statement: Statement,
        params: Params = None,
        *,
        cancel: CancelToken | None = None,
    ) -> list[dict[str, Any]]:
        return self._run("query", statement, params, cancel, _many, write=False)

    def _run(
        self,
        kind: str,
        statement: Statement,
        params: Params,
        cancel: CancelToken | None,
        consume: Callable[[Result], Any],
        *,
        write: bool,
    ) -> Any:
        if isinstance(statement, str):
            statement = text(statement)
        if cancel is not None:
            cancel.raise_if_cancelled(kind)

        sql = ""
        logged_params: Any = params
        error: BaseException | None = None
        start = time.perf_counter()
        try:
            sql, rendered = self.render(statement)
            if params is None:
                logged_params = rendered
            with self._connection(write=write) as conn:
                with self._watch(conn, cancel):
                    if params is None:
                        result = conn.execute(statement)
                    else:
                        result = conn.execute(statement, params)
                    return consume(result)
        except sa_exc.SQLAlchemyError as exc:
            error = exc
            if cancel is not None and cancel.cancelled:
                raise CancelledError(f"{kind} cancelled", cause=exc) from exc
            raise ExecutionError.from_driver(exc, operation=kind, sql=sql) from exc
        except BaseException as exc:
            error = exc
            raise
        finally:
            self._log(kind, sql, logged_params, time.perf_counter() - start, error)

    @staticmethod
    def _watch(conn: Connection, cancel: CancelToken | None) -> Any:
        """Interrupt the DB-API connection if ``cancel`` fires mid-statement."""
        if cancel is None:
            return nullcontext()
        dbapi_connection = conn.connection.dbapi_connection
        interrupt = getattr(dbapi_connection, "interrupt", None) or getattr(
            dbapi_connection, "cancel", None
        )
        if interrupt is None:
            return nullcontext()
        return cancel.watch(interrupt)

    def _log(
        self,
        kind: str,
        sql: str,
        params: Any,
        duration: float,
        error: BaseException | None,
    ) -> None:
        if self._query_logger is None:
            return
        try:
            self._query_logger(kind, sql, params, duration, error)
        except Exception as exc:
            logger.warning("query_logger_failed", error=str(exc), kind=kind)


class Database(_Handle):
    """Direct (non-transactional) database handle.

    Each ``execute`` runs on its own pooled connection and commits when it
    returns; reads never commit.
    """

    def __init__(
        self,
        engine: Engine,
        *,
        dialect: Dialect | str | None = None,
        query_logger: QueryLogger | None = None,
        prefix: str = "",
    ) -> None:
        self.engine = engine
        self.dialect = get_dialect(dialect if dialect is not None else engine)
        self.prefix = prefix
        self._query_logger = query_logger or StructlogQueryLogger(prefix=prefix)

    @classmethod
    def from_url(
        cls,
        url: str,
        *,
        dialect: Dialect | str | None = None,
        query_logger: QueryLogger | None = None,
        **engine_kwargs: Any,
    ) -> Database:
        return cls(create_engine(url, **engine_kwargs), dialect=dialect, query_logger=query_logger)

    @property
    def sa_dialect(self) -> SADialect:
        return self.engine.dialect

    @contextmanager
    def _connection(self, *, write: bool) -> Iterator[Connection]:
        if write:
            with self.engine.begin() as conn:
                yield conn
        else:
            with self.engine.connect() as conn:
                yield conn

    def begin(self, *, cancel: CancelToken | None = None) -> Transaction:
        """Open a transaction on a dedicated connection."""
        if cancel is not None:
            cancel.raise_if_cancelled("begin")
        start = time.perf_counter()
        error: BaseException | None = None
        try:
            conn = self.engine.connect()
            try:
                tx = conn.begin()
            except BaseException:
                conn.close()
                raise
            return Transaction(self, conn, tx)
        except sa_exc.SQLAlchemyError as exc:
            error = exc
            raise ExecutionError.from_driver(exc, operation="begin") from exc
        except BaseException as exc:
            error = exc
            raise
        finally:
            self._log("begin", "BEGIN", None, time.perf_counter() - start, error)

    def ping(self) -> bool:
        """Round-trip ``SELECT 1``; raises ``ExecutionError`` when unreachable."""
        row = self.query_one(text("SELECT 1 AS ok"))
        return row is not None and row["ok"] == 1

    def dispose(self) -> None:
        self.engine.dispose()


class Transaction(_Handle):
    """One open transaction; every statement runs on the same connection.

    ``commit`` or ``rollback`` retires it; afterwards any use raises
    ``InvalidStateError``.  Not safe for concurrent use.
    """

    def __init__(self, database: Database, conn: Connection, tx: Any) -> None:
        self.database = database
        self.dialect = database.dialect
        self._query_logger = database._query_logger
        self._conn = conn
        self._tx = tx
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    @property
    def sa_dialect(self) -> SADialect:
        return self.database.sa_dialect

    @contextmanager
    def _connection(self, *, write: bool) -> Iterator[Connection]:
        if not self._active:
            raise InvalidStateError("transaction is closed")
        yield self._conn

    def commit(self) -> None:
        self._finish("commit", self._tx.commit)

    def rollback(self) -> None:
        self._finish("rollback", self._tx.rollback)

    def _finish(self, kind: str, action: Callable[[], None]) -> None:
        if not self._active:
            raise InvalidStateError(f"cannot {kind}: transaction is closed")
        self._active = False
        start = time.perf_counter()
        error: BaseException | None = None
        try:
            action()
        except sa_exc.SQLAlchemyError as exc:
            error = exc
            raise ExecutionError.from_driver(exc, operation=kind) from exc
        except BaseException as exc:
            error = exc
            raise
        finally:
            self._conn.close()
            self._log(kind, kind.upper(), None, time.perf_counter() - start, error)


def database_from_settings(
    settings: RepoKitSettings,
    *,
    query_logger: QueryLogger | None = None,
) -> Database:
    """Build a :class:`Database` from :class:`RepoKitSettings`."""
    engine = create_engine(
        settings.database_url,
        echo=settings.echo,
        pool_size=settings.pool_size,
        max_overflow=settings.max_overflow,
        pool_timeout=settings.pool_timeout,
    )
    return Database(
        engine,
        dialect=settings.dialect,
        query_logger=query_logger
        or StructlogQueryLogger(slow_query_seconds=settings.slow_query_seconds),
    )


__all__ = [
    "create_engine",
    "QueryLogger",
    "StructlogQueryLogger",
    "ExecResult",
    "Database",
    "Transaction",
    "database_from_settings",
]

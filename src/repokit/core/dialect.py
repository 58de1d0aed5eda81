"""SQL dialect abstraction.

A ``Dialect`` tells the core two things about a backend: which SQLAlchemy
dialect renders its SQL, and how many bound parameters a single statement
may carry.  All SQL string rendering is delegated to SQLAlchemy Core; the
dialect objects here never build SQL themselves.

Architecture::

    ┌──────────────────────────────────────────────────────────────────┐
    │                     Dialect Abstraction Layer                     │
    └──────────────────────────────────────────────────────────────────┘

    Repository / Queryable / batch engine
        │  dialect.param_budget   → safe batch size
        │  dialect.sa_dialect()   → render(statement) for logs and to_sql()
        ▼
    ┌──────────┐ ┌────────────┐ ┌──────────┐ ┌──────────────┐
    │  MySQL   │ │ StarRocks  │ │  SQLite  │ │ PostgreSQL   │
    │  %s      │ │ (as MySQL) │ │  ?       │ │ %(name)s     │
    │  16384   │ │  16384     │ │  32766   │ │  32767       │
    └──────────┘ └────────────┘ └──────────┘ └──────────────┘

Examples:
    >>> from repokit.core.dialect import get_dialect
    >>> d = get_dialect("starrocks")
    >>> d.name, d.render_as
    ('starrocks', 'mysql')
    >>> d.param_budget
    16384

Tags:
    dialect, sql, abstraction, portability, database, repokit
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Protocol, runtime_checkable

from sqlalchemy.engine import Dialect as SADialect
from sqlalchemy.engine import Engine

from repokit.core.errors import ConfigurationError

# MySQL's prepared statement ceiling as used by the batch engine.
DEFAULT_PARAM_BUDGET = 16384


class DialectType(str, Enum):
    """Supported dialect names."""

    MYSQL = "mysql"
    STARROCKS = "starrocks"
    SQLITE = "sqlite"
    POSTGRESQL = "postgresql"


@runtime_checkable
class Dialect(Protocol):
    """Backend contract consumed by the core."""

    @property
    def name(self) -> str:
        """Human-readable dialect name (e.g. ``'mysql'``)."""
        ...

    @property
    def render_as(self) -> str:
        """SQLAlchemy dialect name used for rendering."""
        ...

    @property
    def param_budget(self) -> int:
        """Maximum bound parameters accepted in one statement."""
        ...

    def sa_dialect(self) -> SADialect:
        """A SQLAlchemy dialect instance for offline rendering."""
        ...


# =========================================================================
# Concrete Dialect Implementations
# =========================================================================


class MySQLDialect:
    """MySQL dialect: ``%s`` placeholders, 16384 parameter budget."""

    @property
    def name(self) -> str:
        return "mysql"

    @property
    def render_as(self) -> str:
        return "mysql"

    @property
    def param_budget(self) -> int:
        return DEFAULT_PARAM_BUDGET

    def sa_dialect(self) -> SADialect:
        from sqlalchemy.dialects import mysql

        return mysql.dialect()


class StarRocksDialect(MySQLDialect):
    """StarRocks speaks the MySQL wire protocol and SQL flavour."""

    @property
    def name(self) -> str:
        return "starrocks"


class SQLiteDialect:
    """SQLite dialect: ``?`` placeholders, ``SQLITE_MAX_VARIABLE_NUMBER`` budget."""

    @property
    def name(self) -> str:
        return "sqlite"

    @property
    def render_as(self) -> str:
        return "sqlite"

    @property
    def param_budget(self) -> int:
        return 32766

    def sa_dialect(self) -> SADialect:
        from sqlalchemy.dialects import sqlite

        return sqlite.dialect()


class PostgreSQLDialect:
    """PostgreSQL dialect: the wire protocol caps parameters at 32767."""

    @property
    def name(self) -> str:
        return "postgresql"

    @property
    def render_as(self) -> str:
        return "postgresql"

    @property
    def param_budget(self) -> int:
        return 32767

    def sa_dialect(self) -> SADialect:
        from sqlalchemy.dialects import postgresql

        return postgresql.dialect()


_DIALECTS: dict[str, type] = {
    DialectType.MYSQL.value: MySQLDialect,
    "mariadb": MySQLDialect,
    DialectType.STARROCKS.value: StarRocksDialect,
    DialectType.SQLITE.value: SQLiteDialect,
    DialectType.POSTGRESQL.value: PostgreSQLDialect,
    "postgres": PostgreSQLDialect,
}


def get_dialect(source: Any = None) -> Dialect:
    """Resolve a :class:`Dialect`.

    ``source`` may be a dialect name (``"mysql"``, ``DialectType.STARROCKS``),
    an existing ``Dialect`` (returned as-is), or a SQLAlchemy ``Engine``
    whose driver name is used.  ``None`` yields MySQL, the default backend.
    """
    if source is None:
        return MySQLDialect()
    if isinstance(source, Engine):
        source = source.dialect.name
    if isinstance(source, DialectType):
        source = source.value
    if isinstance(source, str):
        cls = _DIALECTS.get(source.lower())
        if cls is None:
            raise ConfigurationError(
                f"Unsupported dialect: {source!r}", key="dialect", value=source
            )
        return cls()
    if isinstance(source, Dialect):
        return source
    raise ConfigurationError(f"Cannot resolve a dialect from {source!r}", key="dialect")


__all__ = [
    "DEFAULT_PARAM_BUDGET",
    "DialectType",
    "Dialect",
    "MySQLDialect",
    "StarRocksDialect",
    "SQLiteDialect",
    "PostgreSQLDialect",
    "get_dialect",
]

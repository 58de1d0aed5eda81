"""repokit core -- entities, queries, batches and transactions.

Architecture::

    Layer 1 -- Errors, logging & configuration
        errors.py          Structured error hierarchy (RepoKitError, ExecutionError, ...)
        logging.py         structlog configuration (JSON / console)
        settings.py        RepoKitSettings (pydantic-settings, REPOKIT_ env prefix)
        cancellation.py    CancelToken (explicit cancel + deadline)

    Layer 2 -- SQL plumbing
        dialect.py         MySQL / StarRocks / SQLite / PostgreSQL parameter budgets
        expressions.py     Mapping predicates, raw templates, rendering
        schema.py          db_field() + EntitySchema (field introspection)
        database.py        Database / Transaction handles + query logging
        protocols.py       Handle and query-builder protocols

    Layer 3 -- Data access
        query.py           Queryable[T] + PageResult
        grouping.py        GroupingQuery + GroupAggregateBuilder
        batch.py           Safe batch sizes, batch insert, CASE-keyed batch update
        unit_of_work.py    UnitOfWork (begin / commit / rollback / run_in_transaction)
        repository.py      Repository[T]

Example::

    from dataclasses import dataclass
    from repokit.core import Database, Repository, UnitOfWork, db_field

    @dataclass
    class User:
        id: int | None = db_field("id", primary_key=True)
        username: str = db_field("username", default="")
        age: int = db_field("age", default=0)

    db = Database.from_url("sqlite:///app.db")
    users = Repository(db, User, "users")
    users.create(User(username="ada", age=36))
    adults = users.query().where_raw("age >= ?", 18).order_by("username").to_list()
"""

from repokit.core.batch import (
    DEFAULT_BATCH_INSERT_OPTION,
    DEFAULT_BATCH_UPDATE_OPTION,
    BatchInsertOption,
    BatchUpdateOption,
    effective_batch_size,
    partition,
    safe_batch_size,
)
from repokit.core.cancellation import CancelToken
from repokit.core.database import (
    Database,
    ExecResult,
    QueryLogger,
    StructlogQueryLogger,
    Transaction,
    create_engine,
    database_from_settings,
)
from repokit.core.dialect import (
    DEFAULT_PARAM_BUDGET,
    Dialect,
    DialectType,
    MySQLDialect,
    PostgreSQLDialect,
    SQLiteDialect,
    StarRocksDialect,
    get_dialect,
)
from repokit.core.errors import (
    CancelledError,
    ConfigurationError,
    ErrorCategory,
    ErrorContext,
    ExecutionError,
    InvalidStateError,
    NotFoundError,
    RepoKitError,
    RollbackError,
    SchemaError,
)
from repokit.core.expressions import ident, raw
from repokit.core.grouping import (
    AggregateResult,
    GroupAggregateBuilder,
    GroupField,
    GroupingQuery,
)
from repokit.core.logging import configure_logging, get_logger
from repokit.core.query import PageResult, Queryable
from repokit.core.repository import Repository
from repokit.core.schema import EntitySchema, db_field, entity_schema
from repokit.core.settings import RepoKitSettings
from repokit.core.unit_of_work import UnitOfWork, UnitOfWorkState

__all__ = [
    # batch
    "DEFAULT_BATCH_INSERT_OPTION",
    "DEFAULT_BATCH_UPDATE_OPTION",
    "BatchInsertOption",
    "BatchUpdateOption",
    "effective_batch_size",
    "partition",
    "safe_batch_size",
    # cancellation
    "CancelToken",
    # database
    "Database",
    "ExecResult",
    "QueryLogger",
    "StructlogQueryLogger",
    "Transaction",
    "create_engine",
    "database_from_settings",
    # dialect
    "DEFAULT_PARAM_BUDGET",
    "Dialect",
    "DialectType",
    "MySQLDialect",
    "PostgreSQLDialect",
    "SQLiteDialect",
    "StarRocksDialect",
    "get_dialect",
    # errors
    "CancelledError",
    "ConfigurationError",
    "ErrorCategory",
    "ErrorContext",
    "ExecutionError",
    "InvalidStateError",
    "NotFoundError",
    "RepoKitError",
    "RollbackError",
    "SchemaError",
    # expressions
    "ident",
    "raw",
    # grouping
    "AggregateResult",
    "GroupAggregateBuilder",
    "GroupField",
    "GroupingQuery",
    # logging
    "configure_logging",
    "get_logger",
    # query
    "PageResult",
    "Queryable",
    # repository
    "Repository",
    # schema
    "EntitySchema",
    "db_field",
    "entity_schema",
    # settings
    "RepoKitSettings",
    # unit of work
    "UnitOfWork",
    "UnitOfWorkState",
]

"""Generic repository over one table.

Provides :class:`Repository` - binds an entity type, a table name and a
dialect to a :class:`~repokit.core.database.Database`, and routes every
statement either to that database or to the transaction of an attached
:class:`~repokit.core.unit_of_work.UnitOfWork`.

Architecture::

    ┌────────────────────────────────────────────────────────────────────┐
    │                         Repository[T]                              │
    │                                                                    │
    │   db: Database              entity_type: T    table: "users"       │
    │   dialect: Dialect          unit_of_work: UnitOfWork | None        │
    │                                                                    │
    │   create / update / update_by_condition / update_fields_by_*       │
    │   batch_create / batch_delete / batch_insert / batch_update        │
    │   query() → Queryable[T]    query_single / get_by_id               │
    └───────────────┬──────────────────────────────────┬─────────────────┘
                    │ no unit of work                  │ attached
                    ▼                                  ▼
              Database.execute                 uow.transaction.execute

The routing decision is made on every call.  ``with_unit_of_work`` returns
a new repository; the original keeps writing directly.

Usage:
    >>> users = Repository(db, User, "users", dialect="mysql")
    >>> user = User(username="ada", age=36)
    >>> users.create(user)
    1
    >>> user.id
    1
    >>> users.query().where({"username": "ada"}).first()
    User(id=1, username='ada', age=36, status=0)

Tags:
    repository, database, unit-of-work, batch, repokit
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any, Generic, TypeVar

from sqlalchemy import delete, insert, update
from sqlalchemy.sql import ClauseElement

from repokit.core.batch import (
    DEFAULT_BATCH_INSERT_OPTION,
    DEFAULT_BATCH_UPDATE_OPTION,
    BatchInsertOption,
    BatchUpdateOption,
    insert_rows,
    run_batch_insert,
    run_batch_update,
)
from repokit.core.cancellation import CancelToken
from repokit.core.database import Database, ExecResult
from repokit.core.dialect import Dialect, get_dialect
from repokit.core.errors import ConfigurationError, ExecutionError, SchemaError
from repokit.core.expressions import Predicate, to_predicate
from repokit.core.logging import get_logger
from repokit.core.protocols import DatabaseHandle
from repokit.core.query import Queryable
from repokit.core.schema import FieldSpec, entity_schema
from repokit.core.unit_of_work import UnitOfWork

logger = get_logger(__name__)

T = TypeVar("T")


class Repository(Generic[T]):
    """CRUD, batch mutations and queries for entity type ``T`` on one table.

    Parameters:
        db: The direct database handle.
        entity_type: A dataclass declaring its columns with ``db_field``.
        table: Table name, optionally schema-qualified (``"app.users"``).
        dialect: Dialect name or object used for parameter budgets and
                 ``to_sql()`` rendering.  Defaults to the engine's dialect.
        unit_of_work: Route every statement through this unit of work.
    """

    def __init__(
        self,
        db: Database,
        entity_type: type[T],
        table: str,
        dialect: Dialect | str | None = None,
        *,
        unit_of_work: UnitOfWork | None = None,
    ) -> None:
        self.db = db
        self.entity_type = entity_type
        self.schema = entity_schema(entity_type)
        self.table_name = table
        self.table = self.schema.table(table)
        self.dialect: Dialect = get_dialect(dialect) if dialect is not None else db.dialect
        self._uow = unit_of_work

    def __repr__(self) -> str:
        attached = f", unit_of_work={self._uow.id!r}" if self._uow is not None else ""
        return f"Repository({self.entity_type.__name__}, table={self.table_name!r}{attached})"

    def with_unit_of_work(self, uow: UnitOfWork) -> Repository[T]:
        """A copy of this repository routing through ``uow``."""
        return Repository(
            self.db, self.entity_type, self.table_name, self.dialect, unit_of_work=uow
        )

    @property
    def unit_of_work(self) -> UnitOfWork | None:
        return self._uow

    # -- Routing -----------------------------------------------------------

    def _handle(self) -> DatabaseHandle:
        if self._uow is not None:
            return self._uow.transaction
        return self.db

    def _execute(
        self,
        statement: ClauseElement,
        operation: str,
        cancel: CancelToken | None,
        handle: DatabaseHandle | None = None,
    ) -> ExecResult:
        handle = handle or self._handle()
        try:
            return handle.execute(statement, cancel=cancel)
        except ExecutionError as exc:
            exc.with_context(
                table=self.table_name, entity=self.entity_type.__name__, operation=operation
            )
            raise

    def _primary_key(self, operation: str) -> FieldSpec:
        pk = self.schema.primary_key
        if pk is None:
            raise SchemaError(
                f"{operation} needs a primary key; {self.entity_type.__name__} declares none"
            ).with_context(table=self.table_name, operation=operation)
        return pk

    def _require_predicate(self, predicate: Predicate | None, operation: str) -> ClauseElement:
        clause = to_predicate(predicate)
        if clause is None:
            raise ConfigurationError(
                f"{operation} requires a non-empty condition", key="predicate"
            ).with_context(table=self.table_name, operation=operation)
        return clause

    def _field_values(self, fields: Mapping[str, Any], operation: str) -> dict[str, Any]:
        if not fields:
            raise ConfigurationError(f"{operation} requires at least one field", key="fields")
        return {self.schema.field(name).column: value for name, value in fields.items()}

    def _row_without_key(self, entity: T) -> dict[str, Any]:
        pk = self.schema.primary_key
        row = self.schema.as_dict(entity)
        if pk is not None:
            row.pop(pk.column, None)
        return row

    # -- Single-row mutations ----------------------------------------------

    def create(self, entity: T, *, cancel: CancelToken | None = None) -> Any:
        """Insert ``entity`` and return its identity.

        An auto-increment primary key left as ``None`` is assigned by the
        database and written back onto ``entity``.
        """
        handle = self._handle()
        identity = self.schema.identity
        row = self.schema.as_dict(entity, skip_unset_identity=True)
        stmt = insert(self.table).values(row)

        assign = identity is not None and identity.column not in row
        # psycopg exposes no lastrowid; PostgreSQL reports the key via RETURNING.
        returning = assign and handle.sa_dialect.name == "postgresql"
        if returning:
            stmt = stmt.returning(self.table.c[identity.column])

        result = self._execute(stmt, "create", cancel, handle)
        if not assign:
            pk = self.schema.primary_key
            return getattr(entity, pk.attr) if pk is not None else None

        new_id = result.returned if returning else result.lastrowid
        self.schema.set_identity(entity, new_id)
        logger.debug("entity_created", table=self.table_name, id=new_id)
        return new_id

    def update(self, entity: T, *, cancel: CancelToken | None = None) -> int:
        """Update every persisted field of the row matching ``entity``'s primary key."""
        pk = self._primary_key("update")
        key = getattr(entity, pk.attr)
        if key is None:
            raise ConfigurationError(
                "update needs the primary key value set", key=pk.column
            ).with_context(table=self.table_name, operation="update")
        stmt = (
            update(self.table)
            .values(self._row_without_key(entity))
            .where(self.table.c[pk.column] == key)
        )
        return self._execute(stmt, "update", cancel).rowcount

    def update_by_condition(
        self,
        predicate: Predicate,
        entity: T,
        *,
        cancel: CancelToken | None = None,
    ) -> int:
        """Set every non-key persisted field from ``entity`` on the matching rows."""
        clause = self._require_predicate(predicate, "update_by_condition")
        stmt = update(self.table).values(self._row_without_key(entity)).where(clause)
        return self._execute(stmt, "update_by_condition", cancel).rowcount

    def update_fields_by_condition(
        self,
        predicate: Predicate,
        fields: Mapping[str, Any],
        *,
        cancel: CancelToken | None = None,
    ) -> int:
        """Set ``fields`` (values or SQL expressions) on the matching rows."""
        clause = self._require_predicate(predicate, "update_fields_by_condition")
        values = self._field_values(fields, "update_fields_by_condition")
        stmt = update(self.table).values(values).where(clause)
        return self._execute(stmt, "update_fields_by_condition", cancel).rowcount

    def update_fields_by_id(
        self,
        id: Any,
        fields: Mapping[str, Any],
        *,
        cancel: CancelToken | None = None,
    ) -> int:
        pk = self._primary_key("update_fields_by_id")
        values = self._field_values(fields, "update_fields_by_id")
        stmt = update(self.table).values(values).where(self.table.c[pk.column] == id)
        return self._execute(stmt, "update_fields_by_id", cancel).rowcount

    def update_fields_by_ids(
        self,
        ids: Sequence[Any],
        fields: Mapping[str, Any],
        *,
        cancel: CancelToken | None = None,
    ) -> int:
        if not ids:
            return 0
        pk = self._primary_key("update_fields_by_ids")
        values = self._field_values(fields, "update_fields_by_ids")
        stmt = update(self.table).values(values).where(self.table.c[pk.column].in_(list(ids)))
        return self._execute(stmt, "update_fields_by_ids", cancel).rowcount

    # -- Batch mutations ---------------------------------------------------

    def batch_create(self, entities: Sequence[T], *, cancel: CancelToken | None = None) -> int:
        """Insert all ``entities`` in a single statement.

        Unlike :meth:`batch_insert` there is no windowing; large inputs can
        exceed the backend's parameter limit.
        """
        if not entities:
            return 0
        rows = insert_rows(self.schema, entities)
        stmt = insert(self.table).values(rows)
        result = self._execute(stmt, "batch_create", cancel)
        return result.rowcount if result.rowcount >= 0 else len(entities)

    def batch_delete(self, predicate: Predicate, *, cancel: CancelToken | None = None) -> int:
        clause = self._require_predicate(predicate, "batch_delete")
        return self._execute(delete(self.table).where(clause), "batch_delete", cancel).rowcount

    def batch_insert(
        self,
        entities: Sequence[T],
        option: BatchInsertOption = DEFAULT_BATCH_INSERT_OPTION,
        *,
        cancel: CancelToken | None = None,
    ) -> int:
        """Insert ``entities`` in windows sized to the dialect's parameter budget."""
        return run_batch_insert(
            self._handle(),
            self.table,
            self.schema,
            entities,
            option,
            dialect=self.dialect,
            cancel=cancel,
        )

    def batch_update(
        self,
        entities: Sequence[T],
        option: BatchUpdateOption = DEFAULT_BATCH_UPDATE_OPTION,
        *,
        cancel: CancelToken | None = None,
    ) -> int:
        """CASE-keyed update of ``entities``; ``option.key_field`` is required."""
        return run_batch_update(
            self._handle(),
            self.table,
            self.schema,
            entities,
            option,
            dialect=self.dialect,
            cancel=cancel,
        )

    # -- Queries -----------------------------------------------------------

    def query(self) -> Queryable[T]:
        """A fresh query builder bound to this repository's routing."""
        return Queryable(self._handle(), self.entity_type, self.table_name, dialect=self.dialect)

    def query_single(
        self, predicate: Predicate, *, cancel: CancelToken | None = None
    ) -> T | None:
        return self.query().where(predicate).first_or_default(cancel=cancel)

    def get_by_id(self, id: Any, *, cancel: CancelToken | None = None) -> T | None:
        pk = self._primary_key("get_by_id")
        query = self.query()
        return query.where(query.table.c[pk.column] == id).first_or_default(cancel=cancel)

    def to_sql(self) -> tuple[str, Any]:
        """Rendered ``SELECT`` of every persisted column of the table."""
        return self.query().to_sql()


__all__ = ["Repository"]

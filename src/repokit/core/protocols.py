"""
Canonical protocol definitions for repokit.

Structural contracts shared across the core.  The query builder, the
repository and the unit of work depend on these shapes, never on the
concrete ``Database`` / ``Transaction`` classes, so tests and callers can
substitute any object with the same methods.

Architecture:
    ::

        protocols.py
        ├── DatabaseHandle     — execute / query_one / query_many / render
        ├── Beginnable         — a handle that can open a transaction
        ├── TransactionHandle  — DatabaseHandle + commit / rollback
        │
        └── Queryable capabilities
            ├── Filterable     — where / where_raw
            ├── Orderable      — order_by / order_by_desc / order_by_raw
            ├── Pageable       — skip / take / limit / to_paged_list
            ├── Executable     — to_list / first_or_default / count / any / to_sql
            └── Aggregatable   — sum / max / min / group_by

    Consumers:
        query.py, grouping.py, unit_of_work.py, repository.py

Guardrails:
    ❌ DON'T: Type a parameter as ``Database`` when a handle will do
    ✅ DO: Accept ``DatabaseHandle`` so a ``Transaction`` works too

Tags:
    protocol, database, transaction, query, repokit, contracts
"""

from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING, Any, Protocol, TypeVar, runtime_checkable

from sqlalchemy.engine import Dialect as SADialect
from sqlalchemy.sql import ClauseElement

if TYPE_CHECKING:
    from repokit.core.cancellation import CancelToken
    from repokit.core.database import ExecResult, Transaction
    from repokit.core.dialect import Dialect
    from repokit.core.query import PageResult

T_co = TypeVar("T_co", covariant=True)

# ---------------------------------------------------------------------------
# Database handles
# ---------------------------------------------------------------------------


@runtime_checkable
class DatabaseHandle(Protocol):
    """What the core needs from a database connection or transaction."""

    dialect: Dialect

    @property
    def sa_dialect(self) -> SADialect: ...

    def execute(
        self, statement: Any, params: Any = None, *, cancel: CancelToken | None = None
    ) -> ExecResult: ...

    def query_one(
        self, statement: Any, params: Any = None, *, cancel: CancelToken | None = None
    ) -> dict[str, Any] | None: ...

    def query_many(
        self, statement: Any, params: Any = None, *, cancel: CancelToken | None = None
    ) -> list[dict[str, Any]]: ...

    def render(self, statement: ClauseElement) -> tuple[str, Any]: ...


@runtime_checkable
class Beginnable(Protocol):
    """A handle that can open a transaction."""

    def begin(self, *, cancel: CancelToken | None = None) -> Transaction: ...


@runtime_checkable
class TransactionHandle(DatabaseHandle, Protocol):
    """An open transaction, retired by exactly one commit or rollback."""

    @property
    def active(self) -> bool: ...

    def commit(self) -> None: ...

    def rollback(self) -> None: ...


# ---------------------------------------------------------------------------
# Query builder capabilities
# ---------------------------------------------------------------------------


@runtime_checkable
class Filterable(Protocol):
    def where(self, predicate: Any) -> Any: ...

    def where_raw(self, template: str, *args: Any) -> Any: ...


@runtime_checkable
class Orderable(Protocol):
    def order_by(self, *columns: Any) -> Any: ...

    def order_by_desc(self, *columns: Any) -> Any: ...

    def order_by_raw(self, spec: str) -> Any: ...


@runtime_checkable
class Pageable(Protocol[T_co]):
    def skip(self, n: int) -> Any: ...

    def take(self, n: int | None) -> Any: ...

    def limit(self, n: int | None) -> Any: ...

    def to_paged_list(
        self, page: int, page_size: int, predicate: Any = None, *, cancel: CancelToken | None = None
    ) -> PageResult[T_co]: ...


@runtime_checkable
class Executable(Protocol[T_co]):
    def to_list(self, *, cancel: CancelToken | None = None) -> list[T_co]: ...

    def first_or_default(self, *, cancel: CancelToken | None = None) -> T_co | None: ...

    def count(self, *, cancel: CancelToken | None = None) -> int: ...

    def any(self, predicate: Any = None, *, cancel: CancelToken | None = None) -> bool: ...

    def to_sql(self) -> tuple[str, Any]: ...


@runtime_checkable
class Aggregatable(Protocol):
    def sum(self, field: Any, *, cancel: CancelToken | None = None) -> float: ...

    def max(self, field: Any, *, cancel: CancelToken | None = None) -> Any: ...

    def min(self, field: Any, *, cancel: CancelToken | None = None) -> Any: ...

    def group_by(self, key: str | ClauseElement | Callable[[Any], Any]) -> Any: ...


__all__ = [
    "DatabaseHandle",
    "Beginnable",
    "TransactionHandle",
    "Filterable",
    "Orderable",
    "Pageable",
    "Executable",
    "Aggregatable",
]

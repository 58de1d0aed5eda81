"""
Chainable query builder.

A ``Queryable`` accumulates filter, ordering, projection, grouping, join
and paging state for one entity type and one table.  Chain methods mutate
the builder in place and return it; terminal methods build a fresh
SQLAlchemy ``Select`` from that state, execute it on the bound handle and
materialise the result.

Manifesto:
    - **Entity-shaped by default:** Without an explicit projection,
      entity-returning terminals select exactly the persisted columns
    - **Rebuilt per terminal:** The statement is derived from the state on
      every call, so terminals and ``to_sql()`` can be repeated
    - **Loud failures:** Execution errors surface as ``ExecutionError``

Architecture:
    ::

        Queryable(handle, User, "users")
            .where({"status": 1})                 _where   ┐
            .where_raw("age > ?", 18)             _where   │
            .left_join("orders", {"id": "user_id"})  _joins │  state
            .order_by_raw("age desc, id")         _order   │
            .skip(10).take(10)                    _offset/_limit ┘
            .to_list()
                │
                ▼  _select()
        SELECT users.id, users.username, ...  FROM users LEFT OUTER JOIN orders
        ON users.id = orders.user_id WHERE ... ORDER BY ... LIMIT ... OFFSET ...
                │
                ▼  handle.query_many()
        [User(...), ...]

Examples:
    >>> q = repo.query().where({"status": 1}).order_by_desc("age")
    >>> q.count()
    12
    >>> page = q.to_paged_list(2, 10)
    >>> page.total, len(page.items), page.total_pages
    (12, 2, 2)
    >>> q.to_sql()
    ('SELECT users.id, ... WHERE status = ? ORDER BY age DESC', (1,))

Tags:
    query-builder, sqlalchemy, paging, aggregation, repokit
"""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from sqlalchemy import func, literal_column, select, table
from sqlalchemy.sql import ClauseElement, Select
from sqlalchemy.sql.elements import ColumnElement

from repokit.core.cancellation import CancelToken
from repokit.core.dialect import Dialect, get_dialect
from repokit.core.errors import (
    ConfigurationError,
    ExecutionError,
    InvalidStateError,
    NotFoundError,
)
from repokit.core.expressions import (
    Predicate,
    ident,
    projection,
    qualify,
    raw,
    render,
    to_column,
    to_predicate,
)
from repokit.core.protocols import DatabaseHandle
from repokit.core.schema import entity_schema

if TYPE_CHECKING:
    from repokit.core.grouping import AggregateResult, GroupField, GroupingQuery

T = TypeVar("T")
K = TypeVar("K")

_LEFT, _RIGHT, _INNER = "left", "right", "inner"


@dataclass(frozen=True)
class PageResult(Generic[T]):
    """One page of results plus the total row count.

    ``total`` and ``items`` come from two separate statements; concurrent
    writes between them can make the two disagree.
    """

    items: list[T]
    total: int
    page: int
    page_size: int

    @property
    def total_pages(self) -> int:
        return -(-self.total // self.page_size) if self.page_size else 0

    @property
    def has_next(self) -> bool:
        return self.page < self.total_pages


@dataclass
class _Join:
    kind: str
    table: str
    on: dict[str, str] = field(default_factory=dict)


def _check_page(page: int, page_size: int) -> None:
    if page < 1:
        raise ConfigurationError(f"page must be >= 1, got {page}", key="page", value=page)
    if page_size < 1:
        raise ConfigurationError(
            f"page size must be >= 1, got {page_size}", key="page_size", value=page_size
        )


def _first_value(row: Mapping[str, Any] | None) -> Any:
    if not row:
        return None
    return next(iter(row.values()))


class Queryable(Generic[T]):
    """Chainable query over one table for entity type ``T``.

    A builder created without a handle can only render (``to_sql()``).

    Not thread-safe: a builder's state is mutated in place.
    """

    def __init__(
        self,
        handle: DatabaseHandle | None,
        entity_type: type[T],
        table_name: str,
        *,
        dialect: Dialect | str | None = None,
    ) -> None:
        if handle is None and dialect is None:
            raise ConfigurationError("an unbound query needs an explicit dialect", key="dialect")
        self._handle = handle
        self.entity_type = entity_type
        self.schema = entity_schema(entity_type)
        self.table_name = table_name
        self.table = self.schema.table(table_name)
        self.dialect = get_dialect(dialect) if dialect is not None else handle.dialect

        self._where: list[ClauseElement] = []
        self._order: list[ClauseElement] = []
        self._columns: list[ColumnElement] = []
        self._group_by: list[ColumnElement] = []
        self._having: list[ClauseElement] = []
        self._joins: list[_Join] = []
        self._limit: int | None = None
        self._offset: int | None = None

    def __repr__(self) -> str:
        return f"Queryable({self.entity_type.__name__}, table={self.table_name!r})"

    # ------------------------------------------------------------------
    # Filtering
    # ------------------------------------------------------------------

    def where(self, predicate: Predicate) -> Queryable[T]:
        """AND a predicate into the filter (a mapping or an expression)."""
        clause = to_predicate(predicate)
        if clause is not None:
            self._where.append(clause)
        return self

    def where_raw(self, template: str, *args: Any) -> Queryable[T]:
        """AND a literal condition; ``?`` placeholders bind ``args`` in order."""
        self._where.append(raw(template, *args))
        return self

    # ------------------------------------------------------------------
    # Ordering
    # ------------------------------------------------------------------

    def order_by(self, *columns: str | ClauseElement) -> Queryable[T]:
        for col in columns:
            self._order.append(ident(col).asc() if isinstance(col, str) else col)
        return self

    def order_by_desc(self, *columns: str | ClauseElement) -> Queryable[T]:
        for col in columns:
            self._order.append(to_column(col).desc())
        return self

    def order_by_raw(self, spec: str) -> Queryable[T]:
        """Order by ``"col [ASC|DESC], ..."``; empty segments are skipped."""
        clauses = []
        for part in spec.split(","):
            tokens = part.split()
            if not tokens:
                continue
            direction = tokens[1].upper() if len(tokens) > 1 else "ASC"
            if len(tokens) > 2 or direction not in ("ASC", "DESC"):
                raise ConfigurationError(
                    f"Invalid order clause: {part.strip()!r}", key="order_by", value=spec
                )
            col = ident(tokens[0])
            clauses.append(col.desc() if direction == "DESC" else col.asc())
        self._order.extend(clauses)
        return self

    # ------------------------------------------------------------------
    # Paging
    # ------------------------------------------------------------------

    def skip(self, n: int) -> Queryable[T]:
        if n < 0:
            raise ConfigurationError(f"offset must be >= 0, got {n}", key="offset", value=n)
        self._offset = n
        return self

    def take(self, n: int | None) -> Queryable[T]:
        """Cap the row count; ``0`` means zero rows and ``None`` removes the cap."""
        if n is not None and n < 0:
            raise ConfigurationError(f"limit must be >= 0, got {n}", key="limit", value=n)
        self._limit = n
        return self

    def limit(self, n: int | None) -> Queryable[T]:
        return self.take(n)

    # ------------------------------------------------------------------
    # Projection
    # ------------------------------------------------------------------

    def select(self, *columns: str | ColumnElement) -> Queryable[T]:
        for col in columns:
            self._columns.append(projection(col) if isinstance(col, str) else col)
        return self

    def select_raw(self, *columns: str) -> Queryable[T]:
        for col in columns:
            self._columns.append(projection(col))
        return self

    def over(
        self,
        window_function: str | ColumnElement,
        *partition_by: str | ColumnElement,
        order_by: str | ColumnElement | Sequence[str | ColumnElement] | None = None,
        alias: str | None = None,
    ) -> Queryable[T]:
        """Append ``window_function() OVER (PARTITION BY ... ORDER BY ...)``.

        With no projection yet, the entity columns are selected first so the
        window value comes back alongside each entity row.
        """
        if isinstance(window_function, str):
            label = alias or window_function.lower()
            fn = getattr(func, window_function)()
        else:
            label = alias or "window"
            fn = window_function
        if isinstance(order_by, (str, ClauseElement)):
            order_by = [order_by]
        window = fn.over(
            partition_by=[to_column(c) for c in partition_by] or None,
            order_by=[to_column(c) for c in order_by] if order_by else None,
        )
        if not self._columns:
            self._columns.extend(self._entity_columns())
        self._columns.append(window.label(label))
        return self

    # ------------------------------------------------------------------
    # Grouping
    # ------------------------------------------------------------------

    def group_by_columns(self, *columns: str | ColumnElement) -> Queryable[T]:
        self._group_by.extend(to_column(c) for c in columns)
        return self

    def having(self, predicate: Predicate) -> Queryable[T]:
        clause = to_predicate(predicate)
        if clause is not None:
            self._having.append(clause)
        return self

    def group_by(self, key: str | ColumnElement | Callable[[Any], Any]) -> GroupingQuery[T]:
        """Group by a column, an expression or ``lambda cols: cols.<field>``."""
        from repokit.core.grouping import GroupingQuery

        return GroupingQuery(self, key)

    def group_sum_multiple(
        self,
        group_fields: Sequence[GroupField | str],
        sum_fields: Sequence[str],
        *,
        cancel: CancelToken | None = None,
    ) -> list[AggregateResult]:
        """Per group: the group values, ``SUM`` of each sum field and the row count."""
        from repokit.core.grouping import group_sum_multiple

        return group_sum_multiple(self, group_fields, sum_fields, cancel=cancel)

    # ------------------------------------------------------------------
    # Joins
    # ------------------------------------------------------------------

    def join(self, table_name: str, on: Mapping[str, str]) -> Queryable[T]:
        """LEFT join ``table_name``; ``on`` maps local columns to joined columns."""
        return self._add_join(_LEFT, table_name, on)

    def left_join(self, table_name: str, on: Mapping[str, str]) -> Queryable[T]:
        return self._add_join(_LEFT, table_name, on)

    def right_join(self, table_name: str, on: Mapping[str, str]) -> Queryable[T]:
        return self._add_join(_RIGHT, table_name, on)

    def inner_join(self, table_name: str, on: Mapping[str, str]) -> Queryable[T]:
        return self._add_join(_INNER, table_name, on)

    def _add_join(self, kind: str, table_name: str, on: Mapping[str, str]) -> Queryable[T]:
        if not on:
            raise ConfigurationError(
                f"join on {table_name!r} needs at least one column pair", key="on"
            )
        self._joins.append(_Join(kind, table_name, dict(on)))
        return self

    # ------------------------------------------------------------------
    # Statement construction
    # ------------------------------------------------------------------

    def _entity_columns(self) -> list[ColumnElement]:
        return [self.table.c[name] for name in self.schema.columns]

    def _from_clause(self) -> Any:
        frm: Any = self.table
        for j in self._joins:
            target = table(j.table)
            onclause = None
            for local, remote in j.on.items():
                cond = ident(qualify(local, self.table_name)) == ident(qualify(remote, j.table))
                onclause = cond if onclause is None else onclause & cond
            if j.kind == _RIGHT:
                frm = target.join(frm, onclause, isouter=True)
            else:
                frm = frm.join(target, onclause, isouter=j.kind == _LEFT)
        return frm

    def _select(
        self,
        columns: Sequence[ColumnElement] | None = None,
        *,
        extra: Predicate | None = None,
        ordered: bool = True,
        limit: int | None = None,
        offset: int | None = None,
        paged: bool = True,
    ) -> Select:
        cols = columns if columns is not None else (self._columns or self._entity_columns())
        stmt = select(*cols).select_from(self._from_clause())
        conditions = list(self._where)
        extra_clause = to_predicate(extra)
        if extra_clause is not None:
            conditions.append(extra_clause)
        if conditions:
            stmt = stmt.where(*conditions)
        if self._group_by:
            stmt = stmt.group_by(*self._group_by)
        if self._having:
            stmt = stmt.having(*self._having)
        if ordered and self._order:
            stmt = stmt.order_by(*self._order)
        if paged:
            limit = self._limit if limit is None else limit
            offset = self._offset if offset is None else offset
            if limit is not None:
                stmt = stmt.limit(limit)
            if offset:
                stmt = stmt.offset(offset)
        return stmt

    def _count_statement(self, extra: Predicate | None = None) -> Select:
        if self._group_by or self._having:
            inner = self._select(self._group_by or [literal_column("1")], extra=extra,
                                 ordered=False, paged=False)
            return select(func.count()).select_from(inner.subquery())
        return self._select([func.count()], extra=extra, ordered=False, paged=False)

    def _single_limit(self) -> int:
        return 1 if self._limit is None else min(self._limit, 1)

    def to_sql(self) -> tuple[str, Any]:
        """Render the current statement; does not change the builder."""
        return render(self._select(), self.dialect.sa_dialect())

    # ------------------------------------------------------------------
    # Execution helpers
    # ------------------------------------------------------------------

    def _fetch_many(self, stmt: Select, operation: str, cancel: CancelToken | None) -> list[dict[str, Any]]:
        handle = self._bound()
        try:
            return handle.query_many(stmt, cancel=cancel)
        except ExecutionError as exc:
            exc.with_context(table=self.table_name, entity=self.entity_type.__name__, operation=operation)
            raise

    def _fetch_one(self, stmt: Select, operation: str, cancel: CancelToken | None) -> dict[str, Any] | None:
        handle = self._bound()
        try:
            return handle.query_one(stmt, cancel=cancel)
        except ExecutionError as exc:
            exc.with_context(table=self.table_name, entity=self.entity_type.__name__, operation=operation)
            raise

    def _bound(self) -> DatabaseHandle:
        if self._handle is None:
            raise InvalidStateError(
                f"query on {self.table_name!r} is not bound to a database; only to_sql() is available"
            )
        return self._handle

    def _to_entity(self, row: Mapping[str, Any]) -> T:
        return self.schema.from_row(row)

    # ------------------------------------------------------------------
    # Entity terminals
    # ------------------------------------------------------------------

    def first_or_default(self, *, cancel: CancelToken | None = None) -> T | None:
        """First matching entity, or ``None`` when nothing matches."""
        row = self._fetch_one(self._select(limit=self._single_limit()), "first_or_default", cancel)
        return self._to_entity(row) if row is not None else None

    def first(self, *, cancel: CancelToken | None = None) -> T:
        """First matching entity; raises ``NotFoundError`` when nothing matches."""
        entity = self.first_or_default(cancel=cancel)
        if entity is None:
            raise NotFoundError(
                f"no {self.entity_type.__name__} matched in {self.table_name}"
            ).with_context(table=self.table_name, operation="first")
        return entity

    def to_list(self, *, cancel: CancelToken | None = None) -> list[T]:
        rows = self._fetch_many(self._select(), "to_list", cancel)
        return [self._to_entity(row) for row in rows]

    def to_lookup(
        self,
        key_fn: Callable[[T], K],
        *,
        cancel: CancelToken | None = None,
    ) -> dict[K, list[T]]:
        """Materialise, then partition client-side by ``key_fn``."""
        lookup: dict[K, list[T]] = {}
        for item in self.to_list(cancel=cancel):
            lookup.setdefault(key_fn(item), []).append(item)
        return lookup

    # ------------------------------------------------------------------
    # Aggregates
    # ------------------------------------------------------------------

    def count(self, *, cancel: CancelToken | None = None) -> int:
        """Row count (group count when grouped); ignores ordering and paging."""
        return int(_first_value(self._fetch_one(self._count_statement(), "count", cancel)) or 0)

    def any(self, predicate: Predicate | None = None, *, cancel: CancelToken | None = None) -> bool:
        """Whether any row matches the filter and ``predicate``."""
        stmt = self._select([literal_column("1")], extra=predicate, ordered=False, limit=1, offset=0)
        return self._fetch_one(stmt, "any", cancel) is not None

    def sum(self, field: str | ColumnElement, *, cancel: CancelToken | None = None) -> float:
        """``SUM(field)``; an empty match sums to ``0.0``."""
        expr = func.coalesce(func.sum(to_column(field)), 0)
        stmt = self._select([expr], ordered=False, paged=False)
        return float(_first_value(self._fetch_one(stmt, "sum", cancel)) or 0)

    def max(self, field: str | ColumnElement, *, cancel: CancelToken | None = None) -> Any:
        stmt = self._select([func.max(to_column(field))], ordered=False, paged=False)
        return _first_value(self._fetch_one(stmt, "max", cancel))

    def min(self, field: str | ColumnElement, *, cancel: CancelToken | None = None) -> Any:
        stmt = self._select([func.min(to_column(field))], ordered=False, paged=False)
        return _first_value(self._fetch_one(stmt, "min", cancel))

    # ------------------------------------------------------------------
    # Paging terminals
    # ------------------------------------------------------------------

    def to_paged_list_with_total(
        self,
        page: int,
        page_size: int,
        predicate: Predicate | None = None,
        *,
        cancel: CancelToken | None = None,
    ) -> tuple[list[T], int]:
        """Count, then fetch page ``page`` (1-based) of ``page_size`` entities."""
        _check_page(page, page_size)
        count_row = self._fetch_one(self._count_statement(predicate), "count", cancel)
        total = int(_first_value(count_row) or 0)
        stmt = self._select(extra=predicate, limit=page_size, offset=(page - 1) * page_size)
        rows = self._fetch_many(stmt, "to_paged_list", cancel)
        return [self._to_entity(row) for row in rows], total

    def to_paged_list(
        self,
        page: int,
        page_size: int,
        predicate: Predicate | None = None,
        *,
        cancel: CancelToken | None = None,
    ) -> PageResult[T]:
        items, total = self.to_paged_list_with_total(page, page_size, predicate, cancel=cancel)
        return PageResult(items=items, total=total, page=page, page_size=page_size)

    def to_paged_result(
        self,
        page: int,
        page_size: int,
        *,
        cancel: CancelToken | None = None,
    ) -> PageResult[dict[str, Any]]:
        """Like :meth:`to_paged_list` but items are row dicts of the projection."""
        _check_page(page, page_size)
        total = int(_first_value(self._fetch_one(self._count_statement(), "count", cancel)) or 0)
        stmt = self._select(limit=page_size, offset=(page - 1) * page_size)
        items = self._fetch_many(stmt, "to_paged_result", cancel)
        return PageResult(items=items, total=total, page=page, page_size=page_size)

    # ------------------------------------------------------------------
    # Shape conversions
    # ------------------------------------------------------------------

    def to_dict_list(self, *, cancel: CancelToken | None = None) -> list[dict[str, Any]]:
        return self._fetch_many(self._select(), "to_dict_list", cancel)

    def to_dict(self, *, cancel: CancelToken | None = None) -> dict[str, Any]:
        """First row as a dict, ``{}`` when nothing matches."""
        row = self._fetch_one(self._select(limit=self._single_limit()), "to_dict", cancel)
        return row or {}

    def scalar(self, *, cancel: CancelToken | None = None) -> Any:
        """First column of the first row, ``None`` when nothing matches."""
        row = self._fetch_one(self._select(limit=self._single_limit()), "scalar", cancel)
        return _first_value(row)

    def _required_scalar(self, operation: str, cancel: CancelToken | None) -> Any:
        row = self._fetch_one(self._select(limit=self._single_limit()), operation, cancel)
        if row is None:
            raise NotFoundError(f"{operation}: query returned no rows").with_context(
                table=self.table_name, operation=operation
            )
        return _first_value(row)

    def scalar_int(self, *, cancel: CancelToken | None = None) -> int:
        value = self._required_scalar("scalar_int", cancel)
        return int(value) if value is not None else 0

    def scalar_float(self, *, cancel: CancelToken | None = None) -> float:
        value = self._required_scalar("scalar_float", cancel)
        return float(value) if value is not None else 0.0

    def scalar_str(self, *, cancel: CancelToken | None = None) -> str:
        value = self._required_scalar("scalar_str", cancel)
        return str(value) if value is not None else ""

    def _column_values(self, operation: str, cancel: CancelToken | None) -> list[Any]:
        rows = self._fetch_many(self._select(), operation, cancel)
        return [v for v in (_first_value(row) for row in rows) if v is not None]

    def to_int_list(self, *, cancel: CancelToken | None = None) -> list[int]:
        """First column of every row as ``int``; NULLs are dropped."""
        return [int(v) for v in self._column_values("to_int_list", cancel)]

    def to_str_list(self, *, cancel: CancelToken | None = None) -> list[str]:
        return [str(v) for v in self._column_values("to_str_list", cancel)]

    def to_float_list(self, *, cancel: CancelToken | None = None) -> list[float]:
        return [float(v) for v in self._column_values("to_float_list", cancel)]


__all__ = ["PageResult", "Queryable"]

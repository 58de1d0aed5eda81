"""Grouped aggregation on top of :class:`~repokit.core.query.Queryable`.

``Queryable.group_by(key)`` returns a :class:`GroupingQuery`.  Each
aggregate renders one ``SELECT key, AGG(field) ... GROUP BY key`` statement
with the parent's filters and joins, and returns ``{key: value}`` with one
entry per key present in the result::

    repo.query().where({"active": 1}).group_by("status").count()
    # {1: 10, 2: 5}

    repo.query().group_by(lambda u: u.status).sum("age")
    # {1: 312.0, 2: 170.0}

Several aggregates in one statement go through :class:`GroupAggregateBuilder`::

    rows = (
        repo.query()
        .group_by("status")
        .aggregate(GroupAggregateBuilder().count().sum("age").with_alias("total_age"))
        .to_dict_list()
    )
    # [{"status": 1, "count": 10, "total_age": 312}, ...]
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from sqlalchemy import func
from sqlalchemy.sql import ClauseElement
from sqlalchemy.sql.elements import ColumnElement

from repokit.core.cancellation import CancelToken
from repokit.core.errors import ConfigurationError
from repokit.core.expressions import Predicate, ident, to_column, to_predicate

if TYPE_CHECKING:
    from repokit.core.query import Queryable

T = TypeVar("T")

KEY_LABEL = "group_key"

_FUNCTIONS = {
    "SUM": func.sum,
    "AVG": func.avg,
    "COUNT": func.count,
    "MAX": func.max,
    "MIN": func.min,
}


@dataclass(frozen=True)
class AggregateInfo:
    function: str
    field: str | None = None
    alias: str | None = None

    @property
    def label(self) -> str:
        if self.alias:
            return self.alias
        if self.field is None:
            return "count"
        return self.field.rsplit(".", 1)[-1]

    def expression(self) -> ColumnElement:
        fn = _FUNCTIONS[self.function]
        if self.field is None:
            return fn()
        return fn(to_column(self.field))


class GroupAggregateBuilder:
    """Ordered list of aggregates for :meth:`GroupingQuery.aggregate`.

    Labels fall back to the field name (``count`` for ``COUNT(*)``); the
    caller resolves collisions with :meth:`with_alias`.
    """

    def __init__(self) -> None:
        self._aggregations: list[AggregateInfo] = []

    def _add(self, function: str, field_name: str | None) -> GroupAggregateBuilder:
        self._aggregations.append(AggregateInfo(function, field_name))
        return self

    def sum(self, field_name: str) -> GroupAggregateBuilder:
        return self._add("SUM", field_name)

    def average(self, field_name: str) -> GroupAggregateBuilder:
        return self._add("AVG", field_name)

    def count(self, field_name: str | None = None) -> GroupAggregateBuilder:
        return self._add("COUNT", field_name)

    def max(self, field_name: str) -> GroupAggregateBuilder:
        return self._add("MAX", field_name)

    def min(self, field_name: str) -> GroupAggregateBuilder:
        return self._add("MIN", field_name)

    def with_alias(self, alias: str) -> GroupAggregateBuilder:
        """Alias the most recently added aggregate."""
        if not self._aggregations:
            raise ConfigurationError("with_alias() needs a preceding aggregate", key="alias")
        last = self._aggregations[-1]
        self._aggregations[-1] = AggregateInfo(last.function, last.field, alias)
        return self

    @property
    def aggregations(self) -> tuple[AggregateInfo, ...]:
        return tuple(self._aggregations)


def _key_expression(parent: Queryable[Any], key: Any) -> tuple[ColumnElement, str]:
    if isinstance(key, str):
        return ident(key), key.rsplit(".", 1)[-1]
    if callable(key) and not isinstance(key, ClauseElement):
        key = key(parent.schema.proxy)
    if not isinstance(key, ColumnElement):
        raise ConfigurationError(
            f"group key must resolve to a column expression, got {type(key).__name__}",
            key="group_key",
        )
    name = getattr(key, "name", None)
    return key, name if isinstance(name, str) and name else KEY_LABEL


class GroupingQuery(Generic[T]):
    """A parent query plus a grouping key.

    Aggregates share the parent's filters, joins and HAVING conditions;
    ordering and paging of the parent are ignored.
    """

    def __init__(self, parent: Queryable[T], key: str | ColumnElement | Callable[[Any], Any]) -> None:
        self.parent = parent
        self.key, self.key_label = _key_expression(parent, key)

    def having(self, predicate: Predicate) -> GroupingQuery[T]:
        clause = to_predicate(predicate)
        if clause is not None:
            self.parent._having.append(clause)
        return self

    def _per_key(
        self,
        aggregate: ColumnElement,
        operation: str,
        cancel: CancelToken | None,
    ) -> dict[Any, Any]:
        stmt = self.parent._select(
            [self.key.label(self.key_label), aggregate], ordered=False, paged=False
        ).group_by(self.key)
        rows = self.parent._fetch_many(stmt, operation, cancel)
        result = {}
        for row in rows:
            key, value = list(row.values())[:2]
            result[key] = value
        return result

    def count(self, *, cancel: CancelToken | None = None) -> dict[Any, int]:
        counts = self._per_key(func.count().label("count"), "group_count", cancel)
        return {k: int(v) for k, v in counts.items()}

    def sum(self, field_name: str, *, cancel: CancelToken | None = None) -> dict[Any, float]:
        sums = self._per_key(func.sum(to_column(field_name)).label("sum"), "group_sum", cancel)
        return {k: float(v or 0) for k, v in sums.items()}

    def average(self, field_name: str, *, cancel: CancelToken | None = None) -> dict[Any, float]:
        avgs = self._per_key(func.avg(to_column(field_name)).label("avg"), "group_average", cancel)
        return {k: float(v or 0) for k, v in avgs.items()}

    def max(self, field_name: str, *, cancel: CancelToken | None = None) -> dict[Any, Any]:
        return self._per_key(func.max(to_column(field_name)).label("max"), "group_max", cancel)

    def min(self, field_name: str, *, cancel: CancelToken | None = None) -> dict[Any, Any]:
        return self._per_key(func.min(to_column(field_name)).label("min"), "group_min", cancel)

    def select(self) -> Queryable[T]:
        """Project only the distinct keys; returns the parent for a terminal."""
        self.parent._columns = [self.key.label(self.key_label)]
        self.parent._group_by.append(self.key)
        return self.parent

    def aggregate(self, builder: GroupAggregateBuilder) -> Queryable[T]:
        """Project the key plus every aggregate of ``builder``; returns the parent."""
        self.parent._columns = [self.key.label(self.key_label)] + [
            agg.expression().label(agg.label) for agg in builder.aggregations
        ]
        self.parent._group_by.append(self.key)
        return self.parent


# ---------------------------------------------------------------------------
# Multi-column group sums
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class GroupField:
    """A group-by column and the key it is reported under."""

    field: str
    alias: str | None = None

    @property
    def label(self) -> str:
        return self.alias or self.field.rsplit(".", 1)[-1]


@dataclass
class AggregateResult:
    groups: dict[str, Any] = field(default_factory=dict)
    sums: dict[str, float] = field(default_factory=dict)
    count: int = 0


def group_sum_multiple(
    parent: Queryable[Any],
    group_fields: Sequence[GroupField | str],
    sum_fields: Sequence[str],
    *,
    cancel: CancelToken | None = None,
) -> list[AggregateResult]:
    """``SELECT g..., SUM(s) AS s_sum..., COUNT(*) AS group_count ... GROUP BY g...``."""
    if not group_fields:
        raise ConfigurationError("group_sum_multiple needs at least one group field", key="group_fields")
    groups = [g if isinstance(g, GroupField) else GroupField(g) for g in group_fields]
    columns: list[ColumnElement] = [ident(g.field).label(g.label) for g in groups]
    columns += [func.sum(to_column(s)).label(f"{s}_sum") for s in sum_fields]
    columns.append(func.count().label("group_count"))

    stmt = parent._select(columns, ordered=True, paged=False).group_by(
        *(ident(g.field) for g in groups)
    )
    results = []
    for row in parent._fetch_many(stmt, "group_sum_multiple", cancel):
        results.append(
            AggregateResult(
                groups={g.label: row.get(g.label) for g in groups},
                sums={s: float(row.get(f"{s}_sum") or 0) for s in sum_fields},
                count=int(row.get("group_count") or 0),
            )
        )
    return results


__all__ = [
    "AggregateInfo",
    "GroupAggregateBuilder",
    "GroupingQuery",
    "GroupField",
    "AggregateResult",
    "group_sum_multiple",
]

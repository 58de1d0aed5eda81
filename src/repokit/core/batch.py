"""
Batch mutation engine.

Large entity sets are split into windows small enough that one statement
never exceeds the backend's bound-parameter ceiling, then written one
window per statement.

Safe batch size::

    safe = (param_budget * 80 // 100) // fields_per_row
    effective = min(configured, safe)

    insert: fields_per_row = persisted column count
    update: fields_per_row = update field count + 1   (key match)

The 20% margin leaves room for parameters outside the rows, such as an
extra WHERE condition.

Statement shapes::

    INSERT INTO t (a, b) VALUES (?, ?), (?, ?), ...

    UPDATE t SET
        a = CASE key WHEN ? THEN ? WHEN ? THEN ? END,
        b = CASE key WHEN ? THEN ? WHEN ? THEN ? END
    WHERE key IN (?, ?) [AND extra]

Windows run sequentially.  The first failing window stops the run and the
``ExecutionError`` carries its ``offset``; every earlier window has been
executed.  Empty input is a no-op.

Examples:
    >>> safe_batch_size(10)
    1310
    >>> effective_batch_size(1000, 20)
    655
    >>> list(partition([1, 2, 3], 2))
    [(0, [1, 2]), (2, [3])]
"""

from __future__ import annotations

from collections.abc import Iterator, Sequence
from dataclasses import dataclass
from typing import Any, TypeVar

from sqlalchemy import case, insert, update
from sqlalchemy.sql import ClauseElement
from sqlalchemy.sql.expression import TableClause

from repokit.core.cancellation import CancelToken
from repokit.core.dialect import DEFAULT_PARAM_BUDGET, Dialect
from repokit.core.errors import ConfigurationError, ExecutionError
from repokit.core.expressions import Predicate, to_predicate
from repokit.core.logging import get_logger
from repokit.core.protocols import DatabaseHandle
from repokit.core.schema import EntitySchema

logger = get_logger(__name__)

T = TypeVar("T")

SAFETY_PERCENT = 80


def safe_batch_size(field_count: int, param_budget: int = DEFAULT_PARAM_BUDGET) -> int:
    """Largest row count whose parameters fit in 80% of ``param_budget``."""
    if field_count <= 0:
        raise ConfigurationError(
            f"field count must be positive, got {field_count}",
            key="field_count",
            value=field_count,
        )
    size = (param_budget * SAFETY_PERCENT // 100) // field_count
    if size <= 0:
        raise ConfigurationError(
            f"parameter budget {param_budget} cannot fit one row of {field_count} fields",
            key="param_budget",
            value=param_budget,
        )
    return size


def effective_batch_size(
    configured: int,
    field_count: int,
    param_budget: int = DEFAULT_PARAM_BUDGET,
) -> int:
    if configured <= 0:
        raise ConfigurationError(
            f"batch size must be positive, got {configured}",
            key="batch_size",
            value=configured,
        )
    return min(configured, safe_batch_size(field_count, param_budget))


def partition(items: Sequence[T], size: int) -> Iterator[tuple[int, list[T]]]:
    """Yield ``(offset, window)`` pairs of consecutive windows of ``size``."""
    if size <= 0:
        raise ConfigurationError(f"window size must be positive, got {size}", key="size", value=size)
    for offset in range(0, len(items), size):
        yield offset, list(items[offset : offset + size])


@dataclass(frozen=True)
class BatchInsertOption:
    """Batch insert configuration.

    ``use_executemany`` sends one single-row INSERT with many parameter sets
    per window instead of one multi-row INSERT.  ``param_budget`` overrides
    the dialect's ceiling.
    """

    batch_size: int = 1000
    use_executemany: bool = False
    param_budget: int | None = None


@dataclass(frozen=True)
class BatchUpdateOption:
    """Batch update configuration.

    ``key_field`` is required.  Empty ``update_fields`` means every persisted
    column except the key.  ``where`` is ANDed onto each window's statement.
    """

    batch_size: int = 1000
    update_fields: tuple[str, ...] = ()
    key_field: str | None = None
    where: Predicate | None = None
    param_budget: int | None = None


DEFAULT_BATCH_INSERT_OPTION = BatchInsertOption()
DEFAULT_BATCH_UPDATE_OPTION = BatchUpdateOption()


# ---------------------------------------------------------------------------
# Statement builders
# ---------------------------------------------------------------------------


def insert_rows(schema: EntitySchema, window: Sequence[Any]) -> list[dict[str, Any]]:
    # Omit an unset identity only when the whole window leaves it unset, so
    # every row binds the same columns.
    identity = schema.identity
    skip = identity is not None and all(
        getattr(entity, identity.attr) is None for entity in window
    )
    return [schema.as_dict(entity, skip_unset_identity=skip) for entity in window]


def build_batch_insert(
    tbl: TableClause,
    schema: EntitySchema,
    window: Sequence[Any],
    *,
    use_executemany: bool = False,
) -> tuple[ClauseElement, list[dict[str, Any]] | None]:
    """Statement (and executemany parameter sets) inserting ``window``."""
    rows = insert_rows(schema, window)
    if use_executemany:
        return insert(tbl), rows
    return insert(tbl).values(rows), None


def resolve_update_fields(
    schema: EntitySchema, option: BatchUpdateOption
) -> tuple[str, list[str]]:
    """Key column and SET columns for ``option``."""
    if not option.key_field:
        raise ConfigurationError(
            "key field must be specified for batch update", key="key_field"
        )
    key = schema.field(option.key_field).column
    requested = option.update_fields or schema.columns
    fields = dict.fromkeys(schema.field(name).column for name in requested)
    set_fields = [name for name in fields if name != key]
    if not set_fields:
        raise ConfigurationError(
            "batch update has no fields to set besides the key",
            key="update_fields",
            value=option.update_fields,
        )
    return key, set_fields


def build_batch_update(
    tbl: TableClause,
    schema: EntitySchema,
    window: Sequence[Any],
    key: str,
    set_fields: Sequence[str],
    where: Predicate | None = None,
) -> ClauseElement:
    """One CASE-keyed UPDATE covering every entity in ``window``.

    Duplicate keys inside a window collapse, the last entity wins.
    """
    by_key: dict[Any, Any] = {}
    for entity in window:
        by_key[schema.value_of(entity, key)] = entity

    key_col = tbl.c[key]
    values = {
        name: case(
            {k: schema.value_of(entity, name) for k, entity in by_key.items()},
            value=key_col,
        )
        for name in set_fields
    }
    stmt = update(tbl).values(values).where(key_col.in_(list(by_key)))
    extra = to_predicate(where)
    if extra is not None:
        stmt = stmt.where(extra)
    return stmt


# ---------------------------------------------------------------------------
# Runners
# ---------------------------------------------------------------------------


def _window_failed(exc: ExecutionError, operation: str, offset: int, table: str) -> ExecutionError:
    error = ExecutionError(
        f"{operation} failed at offset {offset}: {exc.message}",
        offset=offset,
        retryable=exc.retryable,
        cause=exc.cause or exc,
    )
    error.with_context(table=table, operation=operation, sql=exc.context.sql)
    return error


def run_batch_insert(
    handle: DatabaseHandle,
    tbl: TableClause,
    schema: EntitySchema,
    entities: Sequence[Any],
    option: BatchInsertOption = DEFAULT_BATCH_INSERT_OPTION,
    *,
    dialect: Dialect | None = None,
    cancel: CancelToken | None = None,
) -> int:
    """Insert ``entities`` window by window; returns affected rows."""
    if not entities:
        return 0
    budget = option.param_budget or (dialect or handle.dialect).param_budget
    size = effective_batch_size(option.batch_size, len(schema.columns), budget)
    affected = 0
    for offset, window in partition(entities, size):
        stmt, params = build_batch_insert(
            tbl, schema, window, use_executemany=option.use_executemany
        )
        try:
            result = handle.execute(stmt, params, cancel=cancel)
        except ExecutionError as exc:
            raise _window_failed(exc, "batch_insert", offset, tbl.name) from exc
        affected += result.rowcount if result.rowcount >= 0 else len(window)
    logger.debug(
        "batch_insert_completed",
        table=tbl.name,
        rows=len(entities),
        batch_size=size,
        windows=-(-len(entities) // size),
    )
    return affected


def run_batch_update(
    handle: DatabaseHandle,
    tbl: TableClause,
    schema: EntitySchema,
    entities: Sequence[Any],
    option: BatchUpdateOption = DEFAULT_BATCH_UPDATE_OPTION,
    *,
    dialect: Dialect | None = None,
    cancel: CancelToken | None = None,
) -> int:
    """CASE-keyed update of ``entities`` window by window; returns affected rows."""
    if not entities:
        return 0
    key, set_fields = resolve_update_fields(schema, option)
    budget = option.param_budget or (dialect or handle.dialect).param_budget
    size = effective_batch_size(option.batch_size, len(set_fields) + 1, budget)
    affected = 0
    for offset, window in partition(entities, size):
        stmt = build_batch_update(tbl, schema, window, key, set_fields, option.where)
        try:
            result = handle.execute(stmt, cancel=cancel)
        except ExecutionError as exc:
            raise _window_failed(exc, "batch_update", offset, tbl.name) from exc
        affected += max(result.rowcount, 0)
    logger.debug(
        "batch_update_completed",
        table=tbl.name,
        rows=len(entities),
        batch_size=size,
        fields=set_fields,
    )
    return affected


__all__ = [
    "safe_batch_size",
    "effective_batch_size",
    "partition",
    "BatchInsertOption",
    "BatchUpdateOption",
    "DEFAULT_BATCH_INSERT_OPTION",
    "DEFAULT_BATCH_UPDATE_OPTION",
    "build_batch_insert",
    "build_batch_update",
    "insert_rows",
    "resolve_update_fields",
    "run_batch_insert",
    "run_batch_update",
]

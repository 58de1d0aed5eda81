"""Expression helpers on top of SQLAlchemy Core.

SQLAlchemy is the dialect expression builder: it turns an expression tree
into a parameterised statement.  This module holds the thin contract the
rest of the core uses:

* ``ident("orders.user_id")``  - a (possibly table-qualified) column
* ``to_predicate({...})``      - mapping-style filters, ``{"status": [1, 2]}``
* ``raw("age > ?", 18)``       - literal templates with ``?`` placeholders
* ``render(stmt, dialect)``    - ``(sql, params)`` for logs and ``to_sql()``

Mapping predicates follow the usual conventions::

    {"status": 1}            → status = :status_1
    {"status": [1, 2]}       → status IN (...)
    {"deleted_at": None}     → deleted_at IS NULL
    {"a.id": ident("b.aid")} → a.id = b.aid
"""

from __future__ import annotations

import itertools
import re
from collections.abc import Mapping
from typing import Any, Union

from sqlalchemy import and_, column, literal_column, text
from sqlalchemy.engine import Dialect as SADialect
from sqlalchemy.sql import ClauseElement
from sqlalchemy.sql.elements import ColumnElement, TextClause

from repokit.core.errors import ConfigurationError

_raw_counter = itertools.count()
_SENTINEL = object()
_ALIASED = re.compile(r"^(?P<expr>.+?)\s+as\s+(?P<alias>\w+)$", re.IGNORECASE | re.DOTALL)
_QUALIFIED = re.compile(r"^\w+(\.\w+)+$")

Predicate = Union[ClauseElement, Mapping[str, Any]]


def ident(name: str) -> ColumnElement:
    """Column reference from a dotted name: ``col``, ``tbl.col`` or ``schema.tbl.col``.

    Every part must be a plain identifier; anything else raises
    ``ConfigurationError`` before it can reach the SQL text.  Qualified names
    render verbatim and never add a FROM entry of their own, so they can
    point at the base table or at any joined table.
    """
    parts = name.split(".")
    if len(parts) > 3 or not all(part.isidentifier() for part in parts):
        raise ConfigurationError(f"Invalid column identifier: {name!r}", key="column", value=name)
    if len(parts) == 1:
        return column(name)
    return literal_column(name)


def projection(spec: str) -> ColumnElement:
    """Projection from a literal select spec.

    ``"SUM(amount) AS total"`` is labelled ``total`` and ``"orders.amount"``
    is labelled ``amount``, so result rows are keyed the way the database
    names the column.
    """
    spec = spec.strip()
    match = _ALIASED.match(spec)
    if match:
        return literal_column(match["expr"]).label(match["alias"])
    if _QUALIFIED.match(spec):
        return literal_column(spec).label(spec.rsplit(".", 1)[1])
    return literal_column(spec)


def qualify(name: str, table_name: str) -> str:
    """Prefix ``name`` with ``table_name`` unless it is already qualified."""
    return name if "." in name else f"{table_name}.{name}"


def to_column(value: Any) -> Any:
    """Strings become :func:`ident` columns; expressions pass through."""
    if isinstance(value, str):
        return ident(value)
    return value


def to_predicate(predicate: Predicate | None) -> ClauseElement | None:
    """Normalise a predicate; ``None`` and empty mappings mean "no filter"."""
    if predicate is None:
        return None
    if isinstance(predicate, ClauseElement):
        return predicate
    if isinstance(predicate, Mapping):
        conditions = []
        for key, value in predicate.items():
            col = ident(key)
            if isinstance(value, ClauseElement):
                conditions.append(col == value)
            elif value is None:
                conditions.append(col.is_(None))
            elif isinstance(value, (list, tuple, set, frozenset)):
                conditions.append(col.in_(list(value)))
            else:
                conditions.append(col == value)
        if not conditions:
            return None
        return and_(*conditions) if len(conditions) > 1 else conditions[0]
    raise ConfigurationError(
        f"Unsupported predicate type {type(predicate).__name__}; "
        "use a mapping, a SQLAlchemy expression or where_raw()",
        key="predicate",
    )


def raw(template: str, *args: Any) -> TextClause:
    """Literal SQL fragment with ``?`` positional placeholders.

    Each ``?`` is rewritten to a uniquely named bind parameter so several
    raw fragments can live in one statement.  A ``?`` inside a quoted
    string literal is still treated as a placeholder.
    """
    pieces: list[str] = []
    params: dict[str, Any] = {}
    values = iter(args)
    for ch in template:
        if ch != "?":
            pieces.append(ch)
            continue
        try:
            value = next(values)
        except StopIteration:
            raise ConfigurationError(
                f"Too few arguments for template {template!r}", key="template"
            ) from None
        name = f"raw_{next(_raw_counter)}"
        pieces.append(f":{name}")
        params[name] = value
    if next(values, _SENTINEL) is not _SENTINEL:
        raise ConfigurationError(f"Too many arguments for template {template!r}", key="template")
    clause = text("".join(pieces))
    return clause.bindparams(**params) if params else clause


def render(statement: ClauseElement, dialect: SADialect) -> tuple[str, tuple[Any, ...] | dict[str, Any]]:
    """Render ``statement`` to ``(sql, params)``.

    Positional dialects (MySQL ``%s``, SQLite ``?``) yield a tuple aligned
    with the placeholders; named dialects yield a dict.
    """
    compiled = statement.compile(dialect=dialect, compile_kwargs={"render_postcompile": True})
    params = compiled.params
    if compiled.positional:
        return str(compiled), tuple(params[name] for name in compiled.positiontup or ())
    return str(compiled), dict(params)


__all__ = [
    "Predicate",
    "ident",
    "projection",
    "qualify",
    "to_column",
    "to_predicate",
    "raw",
    "render",
]

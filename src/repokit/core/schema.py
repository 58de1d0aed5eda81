"""Field introspection for entity types.

Entities are plain dataclasses.  A field is persisted when it is declared
with :func:`db_field`, which records the column name (and primary key /
auto-increment flags) in the dataclass field metadata::

    @dataclass
    class User:
        id: int | None = db_field("id", primary_key=True)
        username: str = db_field("username", default="")
        age: int = db_field("age", default=0)
        nickname: str = ""            # not persisted

:func:`entity_schema` derives an :class:`EntitySchema` once per type and
memoises it; every component above (query builder, batch engine,
repository) reads columns and values through it.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Mapping
from dataclasses import dataclass
from functools import cache
from typing import Any

from sqlalchemy import column, table
from sqlalchemy.sql.elements import ColumnClause
from sqlalchemy.sql.expression import TableClause

from repokit.core.errors import SchemaError

COLUMN_KEY = "db"
PRIMARY_KEY = "db_primary_key"
AUTOINCREMENT_KEY = "db_autoincrement"

# Column tag that excludes a field from persistence.
SKIP = "-"


def db_field(
    column_name: str | None = None,
    *,
    primary_key: bool = False,
    autoincrement: bool | None = None,
    **kwargs: Any,
) -> Any:
    """Declare a persisted dataclass field.

    ``column_name`` defaults to the attribute name.  Primary keys are
    auto-increment unless ``autoincrement=False``; an auto-increment key
    left as ``None`` is omitted on insert and populated afterwards.
    Remaining keyword arguments go to :func:`dataclasses.field`.
    """
    metadata = dict(kwargs.pop("metadata", None) or {})
    metadata[COLUMN_KEY] = column_name or ""
    metadata[PRIMARY_KEY] = primary_key
    metadata[AUTOINCREMENT_KEY] = primary_key if autoincrement is None else autoincrement
    if primary_key and "default" not in kwargs and "default_factory" not in kwargs:
        kwargs["default"] = None
    return dataclasses.field(metadata=metadata, **kwargs)


@dataclass(frozen=True)
class FieldSpec:
    attr: str
    column: str
    primary_key: bool = False
    autoincrement: bool = False


class ColumnProxy:
    """Attribute access to an entity's columns as SQLAlchemy expressions.

    ``proxy.username`` resolves by attribute name first, then by column
    name, so key selectors read like the entity: ``lambda u: u.status``.
    """

    def __init__(self, schema: EntitySchema) -> None:
        self._schema = schema

    def __getattr__(self, name: str) -> ColumnClause:
        if name.startswith("__"):
            raise AttributeError(name)
        spec = self._schema.find(name)
        if spec is None:
            raise SchemaError(
                f"{self._schema.entity_type.__name__} has no persisted field {name!r}",
                field=name,
            )
        return column(spec.column)


class EntitySchema:
    """Ordered persisted-column descriptor of one entity type."""

    def __init__(self, entity_type: type, fields: tuple[FieldSpec, ...]) -> None:
        self.entity_type = entity_type
        self.fields = fields
        self.columns: tuple[str, ...] = tuple(f.column for f in fields)
        self._by_column = {f.column: f for f in fields}
        self._by_attr = {f.attr: f for f in fields}
        self.proxy = ColumnProxy(self)

    def __repr__(self) -> str:
        return f"EntitySchema({self.entity_type.__name__}, columns={list(self.columns)})"

    @property
    def primary_key(self) -> FieldSpec | None:
        return next((f for f in self.fields if f.primary_key), None)

    @property
    def identity(self) -> FieldSpec | None:
        """The auto-increment primary key, if the entity has one."""
        pk = self.primary_key
        return pk if pk is not None and pk.autoincrement else None

    def find(self, name: str) -> FieldSpec | None:
        return self._by_attr.get(name) or self._by_column.get(name)

    def field(self, name: str) -> FieldSpec:
        """Persisted field by column (or attribute) name."""
        spec = self._by_column.get(name) or self._by_attr.get(name)
        if spec is None:
            raise SchemaError(
                f"{self.entity_type.__name__} has no persisted field {name!r}",
                field=name,
            )
        return spec

    def values(self, entity: Any) -> list[Any]:
        """Field values aligned with :attr:`columns`."""
        return [getattr(entity, f.attr) for f in self.fields]

    def value_of(self, entity: Any, name: str) -> Any:
        return getattr(entity, self.field(name).attr)

    def as_dict(self, entity: Any, *, skip_unset_identity: bool = False) -> dict[str, Any]:
        """``{column: value}`` for every persisted field.

        With ``skip_unset_identity`` an auto-increment key still ``None`` is
        left out, so the database assigns it.
        """
        identity = self.identity if skip_unset_identity else None
        row = {}
        for f in self.fields:
            value = getattr(entity, f.attr)
            if identity is not None and f is identity and value is None:
                continue
            row[f.column] = value
        return row

    def from_row(self, row: Mapping[str, Any]) -> Any:
        """Build an entity from a result row.

        Fields absent from the row keep their dataclass defaults (``None``
        when there is none); columns the entity does not declare are ignored.
        """
        entity = self.entity_type.__new__(self.entity_type)
        for f in dataclasses.fields(self.entity_type):
            if f.default is not dataclasses.MISSING:
                value = f.default
            elif f.default_factory is not dataclasses.MISSING:
                value = f.default_factory()
            else:
                value = None
            object.__setattr__(entity, f.name, value)
        for f in self.fields:
            if f.column in row:
                object.__setattr__(entity, f.attr, row[f.column])
        return entity

    def set_identity(self, entity: Any, value: Any) -> None:
        identity = self.identity
        if identity is not None:
            object.__setattr__(entity, identity.attr, value)

    def table(self, name: str) -> TableClause:
        """Lightweight ``TableClause`` carrying the persisted columns."""
        if "." in name:
            schema, _, bare = name.rpartition(".")
            return table(bare, *(column(c) for c in self.columns), schema=schema)
        return table(name, *(column(c) for c in self.columns))


@cache
def entity_schema(entity_type: type) -> EntitySchema:
    """Derive (once) the persisted-field schema of ``entity_type``."""
    if not dataclasses.is_dataclass(entity_type) or not isinstance(entity_type, type):
        raise SchemaError(f"{entity_type!r} is not a dataclass entity type")

    specs = []
    for f in dataclasses.fields(entity_type):
        tag = f.metadata.get(COLUMN_KEY)
        if tag is None or tag == SKIP:
            continue
        specs.append(
            FieldSpec(
                attr=f.name,
                column=tag or f.name,
                primary_key=bool(f.metadata.get(PRIMARY_KEY, False)),
                autoincrement=bool(f.metadata.get(AUTOINCREMENT_KEY, False)),
            )
        )
    if not specs:
        raise SchemaError(f"{entity_type.__name__} declares no persisted fields")
    return EntitySchema(entity_type, tuple(specs))


def schema_of(entity: Any) -> EntitySchema:
    """Schema of an entity instance's type."""
    return entity_schema(type(entity))


__all__ = [
    "SKIP",
    "db_field",
    "FieldSpec",
    "ColumnProxy",
    "EntitySchema",
    "entity_schema",
    "schema_of",
]

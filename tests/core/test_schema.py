"""Tests for entity field introspection."""

from __future__ import annotations

from dataclasses import dataclass

import pytest
from sqlalchemy.sql.elements import ColumnClause

from repokit.core.errors import SchemaError
from repokit.core.schema import SKIP, db_field, entity_schema, schema_of

from tests._support.models import Event, User


@dataclass
class Profile:
    code: str | None = db_field(primary_key=True, autoincrement=False)
    display: str = db_field("display_name", default="")
    secret: str = db_field(SKIP, default="")
    note: str = ""


@dataclass
class Unmapped:
    name: str = ""


class TestEntitySchema:
    def test_columns_follow_declaration_order(self) -> None:
        assert entity_schema(User).columns == ("id", "username", "age", "status")

    def test_plain_fields_are_not_persisted(self) -> None:
        schema = entity_schema(User)
        assert schema.find("nickname") is None

    def test_skip_tag_and_column_rename(self) -> None:
        schema = entity_schema(Profile)
        assert schema.columns == ("code", "display_name")
        assert schema.field("display").column == "display_name"
        assert schema.field("display_name").attr == "display"

    def test_schema_is_cached(self) -> None:
        assert entity_schema(User) is entity_schema(User)
        assert schema_of(User()) is entity_schema(User)

    def test_no_persisted_fields(self) -> None:
        with pytest.raises(SchemaError):
            entity_schema(Unmapped)

    def test_not_a_dataclass(self) -> None:
        with pytest.raises(SchemaError):
            entity_schema(dict)

    def test_unknown_field(self) -> None:
        with pytest.raises(SchemaError) as exc_info:
            entity_schema(User).field("email")
        assert exc_info.value.field == "email"


class TestKeys:
    def test_primary_key_is_identity_by_default(self) -> None:
        schema = entity_schema(User)
        assert schema.primary_key is not None
        assert schema.primary_key.column == "id"
        assert schema.identity is schema.primary_key

    def test_non_autoincrement_key(self) -> None:
        schema = entity_schema(Profile)
        assert schema.primary_key is not None
        assert schema.primary_key.column == "code"
        assert schema.identity is None

    def test_keyless_entity(self) -> None:
        schema = entity_schema(Event)
        assert schema.primary_key is None
        assert schema.identity is None

    def test_primary_key_defaults_to_none(self) -> None:
        assert User().id is None

    def test_set_identity(self) -> None:
        user = User(username="ada")
        entity_schema(User).set_identity(user, 42)
        assert user.id == 42


class TestValues:
    def test_as_dict(self) -> None:
        user = User(id=3, username="ada", age=36, status=1, nickname="a")
        assert entity_schema(User).as_dict(user) == {
            "id": 3,
            "username": "ada",
            "age": 36,
            "status": 1,
        }

    def test_as_dict_skips_unset_identity(self) -> None:
        row = entity_schema(User).as_dict(User(username="ada"), skip_unset_identity=True)
        assert "id" not in row

    def test_as_dict_keeps_set_identity(self) -> None:
        row = entity_schema(User).as_dict(User(id=7), skip_unset_identity=True)
        assert row["id"] == 7

    def test_values_align_with_columns(self) -> None:
        user = User(id=1, username="ada", age=36, status=2)
        assert entity_schema(User).values(user) == [1, "ada", 36, 2]

    def test_value_of_by_column(self) -> None:
        profile = Profile(code="x", display="Ada")
        assert entity_schema(Profile).value_of(profile, "display_name") == "Ada"

    def test_from_row_ignores_unknown_columns(self) -> None:
        user = entity_schema(User).from_row({"id": 3, "username": "ada", "extra": 1})
        assert user == User(id=3, username="ada")
        assert user.nickname == ""

    def test_from_row_missing_columns_keep_defaults(self) -> None:
        user = entity_schema(User).from_row({"age": 50})
        assert user.id is None
        assert user.username == ""
        assert user.age == 50


class TestTableAndProxy:
    def test_table(self) -> None:
        tbl = entity_schema(User).table("users")
        assert tbl.name == "users"
        assert [c.name for c in tbl.c] == ["id", "username", "age", "status"]

    def test_schema_qualified_table(self) -> None:
        tbl = entity_schema(User).table("app.users")
        assert tbl.schema == "app"
        assert tbl.name == "users"

    def test_proxy_attribute(self) -> None:
        col = entity_schema(Profile).proxy.display
        assert isinstance(col, ColumnClause)
        assert col.name == "display_name"

    def test_proxy_unknown_attribute(self) -> None:
        with pytest.raises(SchemaError):
            entity_schema(User).proxy.email

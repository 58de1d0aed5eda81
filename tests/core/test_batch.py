"""Tests for the batch mutation engine."""

from __future__ import annotations

import pytest
from sqlalchemy import exc as sa_exc

from repokit.core.batch import (
    BatchInsertOption,
    BatchUpdateOption,
    build_batch_insert,
    build_batch_update,
    effective_batch_size,
    insert_rows,
    partition,
    resolve_update_fields,
    safe_batch_size,
)
from repokit.core.dialect import get_dialect
from repokit.core.errors import ConfigurationError, ExecutionError, SchemaError
from repokit.core.expressions import render
from repokit.core.repository import Repository
from repokit.core.schema import entity_schema

from tests._support import RecordingQueryLogger
from tests._support.models import User, make_users

SCHEMA = entity_schema(User)
USERS = SCHEMA.table("users")


class TestBatchSize:
    def test_safe_size(self) -> None:
        assert safe_batch_size(10) == 1310

    def test_safe_size_custom_budget(self) -> None:
        assert safe_batch_size(5, 10000) == 1600

    def test_effective_is_capped_by_safe(self) -> None:
        assert effective_batch_size(1000, 20) == 655

    def test_effective_keeps_smaller_configured(self) -> None:
        assert effective_batch_size(500, 10) == 500

    @pytest.mark.parametrize("fields", [0, -1])
    def test_non_positive_field_count(self, fields: int) -> None:
        with pytest.raises(ConfigurationError):
            safe_batch_size(fields)

    def test_budget_too_small_for_one_row(self) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            safe_batch_size(10, 5)
        assert exc_info.value.key == "param_budget"

    def test_non_positive_configured(self) -> None:
        with pytest.raises(ConfigurationError):
            effective_batch_size(0, 10)


class TestPartition:
    def test_windows_and_offsets(self) -> None:
        assert list(partition([1, 2, 3, 4, 5], 2)) == [(0, [1, 2]), (2, [3, 4]), (4, [5])]

    def test_empty(self) -> None:
        assert list(partition([], 3)) == []

    def test_invalid_size(self) -> None:
        with pytest.raises(ConfigurationError):
            list(partition([1], 0))


class TestOptions:
    def test_defaults(self) -> None:
        assert BatchInsertOption().batch_size == 1000
        assert BatchInsertOption().use_executemany is False
        assert BatchUpdateOption().key_field is None
        assert BatchUpdateOption().update_fields == ()

    def test_options_are_immutable(self) -> None:
        option = BatchInsertOption()
        with pytest.raises(AttributeError):
            option.batch_size = 5  # type: ignore[misc]


class TestInsertStatements:
    def test_unset_identity_is_omitted(self) -> None:
        rows = insert_rows(SCHEMA, make_users(2))
        assert all("id" not in row for row in rows)

    def test_identity_kept_when_any_row_sets_it(self) -> None:
        window = [User(id=5, username="a"), User(username="b")]
        rows = insert_rows(SCHEMA, window)
        assert [row["id"] for row in rows] == [5, None]

    def test_multi_row_insert(self) -> None:
        stmt, params = build_batch_insert(USERS, SCHEMA, make_users(3))
        sql, bound = render(stmt, get_dialect("mysql").sa_dialect())
        assert params is None
        assert sql.count("(%s, %s, %s)") == 3
        assert len(bound) == 9

    def test_executemany_insert(self) -> None:
        stmt, params = build_batch_insert(USERS, SCHEMA, make_users(3), use_executemany=True)
        assert params is not None
        assert len(params) == 3
        assert params[0] == {"username": "user01", "age": 21, "status": 1}


class TestUpdateStatements:
    def test_key_field_required(self) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            resolve_update_fields(SCHEMA, BatchUpdateOption())
        assert exc_info.value.key == "key_field"

    def test_unknown_update_field(self) -> None:
        with pytest.raises(SchemaError):
            resolve_update_fields(SCHEMA, BatchUpdateOption(key_field="id", update_fields=("email",)))

    def test_unknown_key_field(self) -> None:
        with pytest.raises(SchemaError):
            resolve_update_fields(SCHEMA, BatchUpdateOption(key_field="uuid"))

    def test_key_is_never_set(self) -> None:
        key, fields = resolve_update_fields(SCHEMA, BatchUpdateOption(key_field="id"))
        assert key == "id"
        assert fields == ["username", "age", "status"]

    def test_only_key_requested(self) -> None:
        with pytest.raises(ConfigurationError):
            resolve_update_fields(SCHEMA, BatchUpdateOption(key_field="id", update_fields=("id",)))

    def test_case_keyed_update(self) -> None:
        window = [User(id=1, username="a", age=30), User(id=2, username="b", age=40)]
        stmt = build_batch_update(USERS, SCHEMA, window, "id", ["username", "age"])
        sql, params = render(stmt, get_dialect("mysql").sa_dialect())

        assert sql.startswith("UPDATE users SET")
        assert sql.count("CASE") == 2
        assert sql.count("WHEN") == 4
        assert "IN (%s, %s)" in sql
        assert len(params) == 2 * 2 * 2 + 2

    def test_duplicate_keys_collapse_to_last(self) -> None:
        window = [User(id=1, age=30), User(id=1, age=31)]
        stmt = build_batch_update(USERS, SCHEMA, window, "id", ["age"])
        sql, params = render(stmt, get_dialect("mysql").sa_dialect())
        assert sql.count("WHEN") == 1
        assert 31 in params
        assert 30 not in params

    def test_extra_condition(self) -> None:
        stmt = build_batch_update(USERS, SCHEMA, [User(id=1)], "id", ["age"], {"status": 1})
        sql, _ = render(stmt, get_dialect("sqlite").sa_dialect())
        assert "status = ?" in sql


class TestBatchInsert:
    def test_inserts_all_rows(self, users: Repository[User]) -> None:
        assert users.batch_insert(make_users(25)) == 25
        assert users.query().count() == 25

    def test_windows(self, users: Repository[User], query_log: RecordingQueryLogger) -> None:
        users.batch_insert(make_users(5), BatchInsertOption(batch_size=2))

        inserts = query_log.statements("INSERT")
        assert len(inserts) == 3
        # 3 columns per row, identity omitted
        assert [len(r.params) for r in inserts] == [6, 6, 3]
        assert users.query().count() == 5

    def test_executemany(self, users: Repository[User], query_log: RecordingQueryLogger) -> None:
        affected = users.batch_insert(
            make_users(5), BatchInsertOption(batch_size=2, use_executemany=True)
        )
        assert affected == 5
        assert len(query_log.statements("INSERT")) == 3
        assert users.query().select("username").order_by("id").to_str_list() == [
            f"user{i:02d}" for i in range(1, 6)
        ]

    def test_param_budget_override(
        self, users: Repository[User], query_log: RecordingQueryLogger
    ) -> None:
        # 4 columns per row, 80% of 10 is 8 params, so 2 rows per window
        users.batch_insert(make_users(5), BatchInsertOption(param_budget=10))
        assert len(query_log.statements("INSERT")) == 3

    def test_empty_is_noop(self, users: Repository[User], query_log: RecordingQueryLogger) -> None:
        assert users.batch_insert([]) == 0
        assert query_log.records == []

    def test_failure_reports_window_offset(self, users: Repository[User]) -> None:
        entities = make_users(3) + [User(username="user01"), User(username="user05")]

        with pytest.raises(ExecutionError) as exc_info:
            users.batch_insert(entities, BatchInsertOption(batch_size=2))

        error = exc_info.value
        assert error.offset == 2
        assert isinstance(error.cause, sa_exc.IntegrityError)
        assert error.context.operation == "batch_insert"
        assert error.context.table == "users"
        # the first window was written, the failing one was not
        assert users.query().count() == 2


class TestBatchUpdate:
    def test_updates_selected_fields(self, seeded_users: Repository[User]) -> None:
        changed = [User(id=i, username="ignored", age=60 + i) for i in (1, 2, 3)]

        affected = seeded_users.batch_update(
            changed, BatchUpdateOption(key_field="id", update_fields=("age",))
        )

        assert affected == 3
        rows = seeded_users.query().where({"id": [1, 2, 3]}).order_by("id").to_list()
        assert [u.age for u in rows] == [61, 62, 63]
        assert [u.username for u in rows] == ["user01", "user02", "user03"]

    def test_all_fields_when_none_listed(self, seeded_users: Repository[User]) -> None:
        seeded_users.batch_update(
            [User(id=4, username="renamed", age=99, status=2)],
            BatchUpdateOption(key_field="id"),
        )
        assert seeded_users.get_by_id(4) == User(id=4, username="renamed", age=99, status=2)

    def test_windows(
        self, seeded_users: Repository[User], query_log: RecordingQueryLogger
    ) -> None:
        entities = seeded_users.query().order_by("id").to_list()
        for user in entities:
            user.age += 1
        query_log.clear()

        affected = seeded_users.batch_update(
            entities, BatchUpdateOption(batch_size=10, key_field="id", update_fields=("age",))
        )

        assert affected == 25
        assert len(query_log.statements("UPDATE")) == 3
        assert seeded_users.query().sum("age") == 825 + 25

    def test_window_size_counts_set_fields_plus_key(
        self, seeded_users: Repository[User], query_log: RecordingQueryLogger
    ) -> None:
        # 3 SET columns plus the key is 4 params per row, 80% of 10 is 8, so 2 rows per window
        changed = [User(id=i, username=f"renamed{i}", age=i, status=0) for i in range(1, 6)]
        seeded_users.batch_update(
            changed, BatchUpdateOption(key_field="id", param_budget=10)
        )
        assert len(query_log.statements("UPDATE")) == 3

    def test_listed_key_is_not_counted_twice(
        self, seeded_users: Repository[User], query_log: RecordingQueryLogger
    ) -> None:
        # SET age plus the key is 2 params per row, 80% of 5 is 4, so 2 rows per window
        changed = [User(id=i, age=i) for i in range(1, 5)]
        seeded_users.batch_update(
            changed, BatchUpdateOption(key_field="id", update_fields=("id", "age"), param_budget=5)
        )
        assert len(query_log.statements("UPDATE")) == 2
        assert seeded_users.get_by_id(4).age == 4

    def test_extra_condition(self, seeded_users: Repository[User]) -> None:
        # ids 1, 2, 3 have status 1, 2, 0
        changed = [User(id=i, age=0) for i in (1, 2, 3)]
        affected = seeded_users.batch_update(
            changed,
            BatchUpdateOption(key_field="id", update_fields=("age",), where={"status": 1}),
        )
        assert affected == 1
        assert seeded_users.get_by_id(1).age == 0
        assert seeded_users.get_by_id(2).age == 22

    def test_duplicate_keys_last_wins(self, seeded_users: Repository[User]) -> None:
        seeded_users.batch_update(
            [User(id=1, age=50), User(id=1, age=60)],
            BatchUpdateOption(key_field="id", update_fields=("age",)),
        )
        assert seeded_users.get_by_id(1).age == 60

    def test_missing_key_field(self, seeded_users: Repository[User]) -> None:
        with pytest.raises(ConfigurationError):
            seeded_users.batch_update([User(id=1)], BatchUpdateOption(update_fields=("age",)))

    def test_empty_is_noop(
        self, seeded_users: Repository[User], query_log: RecordingQueryLogger
    ) -> None:
        assert seeded_users.batch_update([], BatchUpdateOption(key_field="id")) == 0
        assert query_log.records == []

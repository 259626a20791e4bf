"""Unit tests for the pure build_* halves of the operation builders."""

import pytest

from quarry.config import UpdateUpsert, UpsertPlan
from quarry.data.sqlite.conditions import col, fn
from quarry.data.sqlite.manager import DatabaseManager
from quarry.data.sqlite.models import Column, ModelDefinition, ModelOptions
from quarry.data.sqlite.operations import Model
from quarry.errors import NoUpdatableFields, RequiredFieldMissing, RestoreNotSupported
from quarry.types import DataType

NOW = 1_700_000_000_000


@pytest.fixture(autouse=True)
def frozen_clock(monkeypatch):
    monkeypatch.setattr("quarry.data.sqlite.operations.now_ms", lambda: NOW)


@pytest.fixture
def users():
    definition = ModelDefinition(
        "User",
        [
            Column("id", type=DataType.INTEGER, primary_key=True, auto_increment=True),
            Column("email", type=DataType.TEXT, unique=True),
            Column("age", type=DataType.INTEGER, nullable=True),
            Column("name", type=DataType.TEXT, default="anon"),
            Column(
                "slug",
                type=DataType.TEXT,
                nullable=True,
                setter=str.lower,
                transform=lambda v: v.replace(" ", "-"),
            ),
            Column("fullName", virtual=True, getter=lambda r: f"{r.get('name')}"),
        ],
        table_name="users",
    )
    return Model(definition, DatabaseManager(path=":memory:"))


@pytest.fixture
def posts():
    definition = ModelDefinition(
        "Post",
        [
            Column("id", type=DataType.INTEGER, primary_key=True, auto_increment=True),
            Column("title", type=DataType.TEXT),
            Column("views", type=DataType.INTEGER, default=0),
        ],
        ModelOptions(paranoid=True),
        table_name="posts",
    )
    return Model(definition, DatabaseManager(path=":memory:"))


class TestCreate:
    def test_insert_resolves_defaults_and_timestamps(self, users):
        query = users.build_create({"email": "a@x.com"})
        assert query.sql == (
            'INSERT INTO "users" ("email", "name", "createdAt", "updatedAt") '
            "VALUES (?, ?, ?, ?) RETURNING *"
        )
        assert query.params == ("a@x.com", "anon", NOW, NOW)

    def test_setter_then_transform(self, users):
        row = users.prepare_insert({"email": "a@x.com", "slug": "Hello World"})
        assert row["slug"] == "hello-world"

    def test_virtual_input_is_dropped(self, users):
        row = users.prepare_insert({"email": "a@x.com", "fullName": "ignored"})
        assert "fullName" not in row

    def test_unknown_field_is_rejected(self, users):
        with pytest.raises(ValueError):
            users.build_create({"email": "a@x.com", "nope": 1})

    def test_required_field_missing(self, users):
        with pytest.raises(RequiredFieldMissing) as info:
            users.build_create({"age": 3})
        assert info.value.fields == ["email"]

    def test_explicit_none_on_required_field(self, users):
        with pytest.raises(RequiredFieldMissing):
            users.build_create({"email": None})

    def test_paranoid_insert_sets_deleted_at_null(self, posts):
        row = posts.prepare_insert({"title": "t"})
        assert row["deletedAt"] is None
        assert row["views"] == 0


class TestBulkCreate:
    def test_duplicates_by_unique_column_are_dropped(self, users):
        queries = users.build_bulk_create(
            [{"email": "a"}, {"email": "a", "age": 2}, {"email": "b"}]
        )
        assert len(queries) == 1
        assert queries[0].sql.count("(?, ?, ?, ?)") == 2
        assert queries[0].sql.startswith("INSERT INTO")

    def test_ignore_duplicates_uses_whole_record(self, users):
        queries = users.build_bulk_create(
            [{"email": "a"}, {"email": "a"}, {"email": "a", "age": 2}],
            ignore_duplicates=True,
        )
        assert queries[0].sql.startswith("INSERT OR IGNORE INTO")
        assert queries[0].sql.count("(?, ?, ?, ?, ?)") == 2

    def test_batches(self, users):
        queries = users.build_bulk_create(
            [{"email": f"u{i}"} for i in range(5)], batch_size=2
        )
        assert [q.sql.count("?") // 4 for q in queries] == [2, 2, 1]

    def test_batches_capped_by_parameter_limit(self, users):
        queries = users.build_bulk_create([{"email": f"u{i}"} for i in range(600)])
        assert all(len(q.params) <= 999 for q in queries)
        assert sum(len(q.params) for q in queries) == 600 * 4


class TestFind:
    def test_where_order_limit_offset(self, users):
        query = users.build_find_all(
            where={"age": {"gte": 18}},
            order=[("age", "DESC"), "email"],
            limit=10,
            offset=20,
        )
        assert query.sql == (
            'SELECT * FROM "users" WHERE "age" >= ? '
            'ORDER BY "age" DESC, "email" ASC LIMIT ? OFFSET ?'
        )
        assert query.params == (18, 10, 20)

    def test_single_order_tuple(self, users):
        query = users.build_find_all(order=("age", "desc"))
        assert query.sql == 'SELECT * FROM "users" ORDER BY "age" DESC'

    def test_offset_without_limit(self, users):
        query = users.build_find_all(offset=5)
        assert query.sql == 'SELECT * FROM "users" LIMIT -1 OFFSET ?'

    def test_invalid_direction(self, users):
        with pytest.raises(ValueError):
            users.build_find_all(order=[("age", "SIDEWAYS")])

    def test_group_by_and_having(self, users):
        query = users.build_find_all(
            attributes=["age", (fn("COUNT", col("id")), "n")],
            group_by="age",
            having={"n": {"gt": 1}},
        )
        assert query.sql == (
            'SELECT "age", COUNT("id") AS "n" FROM "users" GROUP BY "age" HAVING "n" > ?'
        )
        assert query.params == (1,)

    def test_paranoid_filter(self, posts):
        assert posts.build_find_all().sql == 'SELECT * FROM "posts" WHERE "deletedAt" IS NULL'
        assert posts.build_find_all(paranoid=False).sql == 'SELECT * FROM "posts"'

    def test_paranoid_filter_skipped_when_condition_mentions_it(self, posts):
        query = posts.build_find_all(where={"deletedAt": {"ne": None}})
        assert query.sql == 'SELECT * FROM "posts" WHERE "deletedAt" IS NOT NULL'


class TestUpdate:
    def test_set_list_gets_updated_at_and_paranoid_filter(self, posts):
        query = posts.build_update({"title": "t"}, where={"id": 1})
        assert query.sql == (
            'UPDATE "posts" SET "title" = ?, "updatedAt" = ? '
            'WHERE "id" = ? AND "deletedAt" IS NULL'
        )
        assert query.params == ("t", NOW, 1)

    def test_limit_uses_rowid_subselect(self, posts):
        query = posts.build_update({"title": "t"}, where={"views": 0}, limit=2)
        assert query.sql == (
            'UPDATE "posts" SET "title" = ?, "updatedAt" = ? WHERE rowid IN '
            '(SELECT rowid FROM "posts" WHERE "views" = ? AND "deletedAt" IS NULL LIMIT ?)'
        )
        assert query.params == ("t", NOW, 0, 2)

    def test_returning(self, users):
        query = users.build_update({"age": 3}, where={"id": 1}, returning=True)
        assert query.sql.endswith(" RETURNING *")

    def test_function_values_are_inlined(self, users):
        query = users.build_update({"name": fn("upper", col("name"))}, where={})
        assert query.sql == 'UPDATE "users" SET "name" = upper("name"), "updatedAt" = ?'
        assert query.params == (NOW,)

    def test_where_is_required(self, users):
        with pytest.raises(ValueError):
            users.build_update({"age": 3})

    def test_no_updatable_fields(self, users):
        with pytest.raises(NoUpdatableFields):
            users.build_update({"fullName": "x", "unknown": 1}, where={"id": 1})

    def test_null_on_required_column(self, users):
        with pytest.raises(RequiredFieldMissing):
            users.build_update({"email": None}, where={"id": 1})

    def test_null_on_nullable_column(self, users):
        query = users.build_update({"age": None}, where={"id": 1})
        assert query.params == (None, NOW, 1)

    def test_upsert_sub_mode(self, users):
        query = users.build_update(
            {"age": 30},
            upsert=UpdateUpsert(on_conflict="email", conflict_values={"email": "a@x.com"}),
        )
        assert query.sql == (
            'INSERT INTO "users" ("email", "age", "name", "createdAt", "updatedAt") '
            'VALUES (?, ?, ?, ?, ?) ON CONFLICT("email") DO UPDATE SET '
            '"age" = excluded."age", "updatedAt" = excluded."updatedAt"'
        )
        assert query.params == ("a@x.com", 30, "anon", NOW, NOW)


    def test_stored_update_skips_setters(self, users):
        query = users.build_stored_update({"slug": "Hello World"}, {"email": "a@x.com"})
        assert query.sql == (
            'UPDATE "users" SET "slug" = ?, "updatedAt" = ? WHERE "email" = ? RETURNING *'
        )
        assert query.params == ("Hello World", NOW, "a@x.com")


class TestDestroyRestore:
    def test_plain_delete(self, users):
        query = users.build_destroy({"id": 1})
        assert query.sql == 'DELETE FROM "users" WHERE "id" = ?'
        assert users.build_destroy({}).sql == 'DELETE FROM "users"'

    def test_soft_delete(self, posts):
        query = posts.build_destroy({"id": 1})
        assert query.sql == (
            'UPDATE "posts" SET "deletedAt" = ? WHERE "id" = ? AND "deletedAt" IS NULL'
        )
        assert query.params == (NOW, 1)

    def test_forced_delete_on_paranoid_model(self, posts):
        assert posts.build_destroy({"id": 1}, force=True).sql == 'DELETE FROM "posts" WHERE "id" = ?'

    def test_destroy_requires_where(self, users):
        with pytest.raises(ValueError):
            users.build_destroy(None)

    def test_restore(self, posts):
        query = posts.build_restore({"id": 1})
        assert query.sql == (
            'UPDATE "posts" SET "deletedAt" = NULL, "updatedAt" = ? '
            'WHERE "id" = ? AND "deletedAt" IS NOT NULL'
        )
        assert query.params == (NOW, 1)

    def test_restore_requires_paranoid(self, users):
        with pytest.raises(RestoreNotSupported):
            users.build_restore({"id": 1})


class TestIncrementAndAggregates:
    def test_increment_by_primary_key(self, posts):
        query = posts.build_increment("views", pk=3, by=2)
        assert query.sql == (
            'UPDATE "posts" SET "views" = "views" + ?, "updatedAt" = ? '
            'WHERE "id" = ? AND "deletedAt" IS NULL'
        )
        assert query.params == (2, NOW, 3)

    def test_mapping_amounts_are_multiplied(self, posts):
        query = posts.build_increment({"views": 2}, where={"title": "a"}, by=-3)
        assert query.params[0] == -6

    def test_non_numeric_field(self, posts):
        with pytest.raises(ValueError):
            posts.build_increment("title", pk=1)

    def test_increment_needs_a_target(self, posts):
        with pytest.raises(ValueError):
            posts.build_increment("views")

    def test_aggregates(self, users):
        assert users.build_aggregate("SUM", "age").sql == 'SELECT SUM("age") AS result FROM "users"'
        assert users.build_aggregate("COUNT").sql == 'SELECT COUNT(*) AS result FROM "users"'
        with pytest.raises(ValueError):
            users.build_aggregate("MAX", "email")


class TestConflictTarget:
    def test_primary_key_first(self, users):
        assert users.conflict_target({"id": 1, "email": "a"}, UpsertPlan()) == ["id"]

    def test_then_unique_column(self, users):
        assert users.conflict_target({"email": "a"}, UpsertPlan()) == ["email"]

    def test_explicit_target_must_be_present(self, users):
        with pytest.raises(ValueError):
            users.conflict_target({"email": "a"}, UpsertPlan(conflict_target=["name"]))

    def test_unresolvable(self, users):
        with pytest.raises(ValueError):
            users.conflict_target({"age": 1}, UpsertPlan())

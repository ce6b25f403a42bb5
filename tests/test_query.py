"""
Tests for raven.query — SQL statement builders.
"""

import pytest

from raven.query import (
    DeleteStatement,
    InsertStatement,
    Predicate,
    Query,
    SelectStatement,
    UpdateStatement,
    param_name,
)


class TestParamName:
    def test_plain(self):
        assert param_name("id") == ":id"

    def test_dotted(self):
        assert param_name("h.cwd") == ":h_cwd"

    def test_prefix(self):
        assert param_name("id", "w_") == ":w_id"


class TestPredicate:
    def test_default_is_equality(self):
        assert Predicate("id").to_sql() == "id = :id"

    def test_unknown_operator(self):
        with pytest.raises(ValueError):
            Predicate("id", "<>")


class TestSelect:
    def test_simple(self):
        sql = Query.select().column("id").from_("history").where("id").to_sql()
        assert sql == "SELECT id FROM history WHERE id = :id"

    def test_multiple_columns_tables_predicates(self):
        sql = (
            Query.select()
            .column("h.id").column("h.command")
            .from_("history h").from_("other o")
            .where("h.exit_code").like("h.command")
            .to_sql()
        )
        assert sql == (
            "SELECT h.id, h.command FROM history h, other o "
            "WHERE h.exit_code = :h_exit_code AND h.command LIKE :h_command"
        )

    def test_column_alias(self):
        sql = Query.select().column("h.id", "id").from_("history h").to_sql()
        assert sql == "SELECT h.id AS id FROM history h"

    def test_count(self):
        sql = Query.select().count("*", "total").from_("history").to_sql()
        assert sql == "SELECT count(*) AS total FROM history"

    def test_match(self):
        sql = Query.select().column("rowid").from_("history_fts").match("history_fts").to_sql()
        assert sql == "SELECT rowid FROM history_fts WHERE history_fts MATCH :history_fts"

    def test_order_by_precedes_limit(self):
        sql = (
            Query.select().column("id").from_("history")
            .limit(5).order_by("timestamp", "desc")
            .to_sql()
        )
        assert sql == "SELECT id FROM history ORDER BY timestamp DESC LIMIT 5"

    def test_limit_zero(self):
        sql = Query.select().column("id").from_("history").limit(0).to_sql()
        assert sql.endswith("LIMIT 0")

    @pytest.mark.parametrize("bad", [-1, 1.5, "10", True])
    def test_invalid_limit(self, bad):
        with pytest.raises(ValueError):
            Query.select().limit(bad)

    def test_invalid_direction(self):
        with pytest.raises(ValueError):
            Query.select().order_by("id", "sideways")

    def test_reset_from(self):
        stmt = Query.select().column("id").from_("history")
        stmt.reset_from().from_("history_fts")
        assert stmt.to_sql() == "SELECT id FROM history_fts"

    def test_requires_columns_and_table(self):
        with pytest.raises(ValueError):
            SelectStatement().from_("history").to_sql()
        with pytest.raises(ValueError):
            SelectStatement().column("id").to_sql()

    def test_deterministic(self):
        stmt = Query.select().column("id").from_("history").where("cwd")
        assert stmt.to_sql() == stmt.to_sql()


class TestInsert:
    def test_insert(self):
        sql = Query.insert().table("history").column("command").column("cwd").to_sql()
        assert sql == "INSERT INTO history (command, cwd) VALUES (:command, :cwd)"

    def test_requires_columns(self):
        with pytest.raises(ValueError):
            InsertStatement().table("history").to_sql()


class TestUpdate:
    def test_update_where_prefix(self):
        sql = (
            Query.update().table("history")
            .column("exit_code").column("cwd")
            .where("id")
            .to_sql()
        )
        assert sql == "UPDATE history SET exit_code = :exit_code, cwd = :cwd WHERE id = :w_id"

    def test_set_and_where_same_column_do_not_clash(self):
        sql = Query.update().table("history").column("cwd").where("cwd").to_sql()
        assert sql == "UPDATE history SET cwd = :cwd WHERE cwd = :w_cwd"

    def test_like(self):
        sql = Query.update().table("history").column("cwd").like("command").to_sql()
        assert sql.endswith("WHERE command LIKE :w_command")

    def test_requires_columns(self):
        with pytest.raises(ValueError):
            UpdateStatement().table("history").to_sql()


class TestDelete:
    def test_delete_by_id(self):
        sql = Query.delete().table("history").where("id").to_sql()
        assert sql == "DELETE FROM history WHERE id = :w_id"

    def test_delete_all(self):
        assert Query.delete().table("history").to_sql() == "DELETE FROM history"

    def test_requires_table(self):
        with pytest.raises(ValueError):
            DeleteStatement().to_sql()

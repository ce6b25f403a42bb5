"""
SQL statement builders for the history store.

Four small fluent builders (select, insert, update, delete) render
parameterized SQL text. Table and column names are trusted schema constants
and are written into the SQL verbatim; values never are. Every value is a
named parameter bound by sqlite3 at execution time.

Parameter naming:
    SELECT          WHERE clause ``x``    -> ``:x``
    UPDATE/DELETE   WHERE clause ``x``    -> ``:w_x``  (no clash with SET/VALUES)
    Dots in qualified names become underscores: ``h.cwd`` -> ``:h_cwd``.

Example:
    >>> Query.select().column("id").from_("history").where("id").to_sql()
    'SELECT id FROM history WHERE id = :id'
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Tuple

# Comparison operators for WHERE predicates
EQ = "="
LIKE = "LIKE"
MATCH = "MATCH"

_OPERATORS = (EQ, LIKE, MATCH)
_DIRECTIONS = ("ASC", "DESC")

WHERE_PREFIX = "w_"


def param_name(clause: str, prefix: str = "") -> str:
    """Return the bind-parameter name (with leading colon) for a clause."""
    return ":" + prefix + clause.replace(".", "_")


@dataclass(frozen=True)
class Predicate:
    """One ``clause <op> :param`` term of a WHERE section."""

    clause: str
    operator: str = EQ

    def __post_init__(self):
        if self.operator not in _OPERATORS:
            raise ValueError(f"Unsupported operator: {self.operator!r}")

    def to_sql(self, prefix: str = "") -> str:
        return f"{self.clause} {self.operator} {param_name(self.clause, prefix)}"


def _where_sql(predicates: List[Predicate], prefix: str = "") -> str:
    """Render `` WHERE a AND b ...`` (or nothing when there are no predicates)."""
    if not predicates:
        return ""
    return " WHERE " + " AND ".join(p.to_sql(prefix) for p in predicates)


# ---------------------------------------------------------------------------
# SELECT
# ---------------------------------------------------------------------------


@dataclass
class SelectExpr:
    """A selected expression with an optional alias."""

    expr: str
    alias: Optional[str] = None

    def to_sql(self) -> str:
        if self.alias:
            return f"{self.expr} AS {self.alias}"
        return self.expr


@dataclass
class SelectStatement:
    """Select rows from one or more tables."""

    selects: List[SelectExpr] = field(default_factory=list)
    tables: List[str] = field(default_factory=list)
    predicates: List[Predicate] = field(default_factory=list)
    limit_n: Optional[int] = None
    ordering: Optional[Tuple[str, str]] = None

    def column(self, column: str, alias: Optional[str] = None) -> SelectStatement:
        self.selects.append(SelectExpr(column, alias))
        return self

    def count(self, expr: str, alias: str) -> SelectStatement:
        """Add ``count(expr) AS alias`` to the selection list."""
        self.selects.append(SelectExpr(f"count({expr})", alias))
        return self

    def from_(self, table: str) -> SelectStatement:
        self.tables.append(table)
        return self

    def reset_from(self) -> SelectStatement:
        """Drop every FROM entry (used to switch to an FTS join)."""
        self.tables.clear()
        return self

    def where(self, clause: str) -> SelectStatement:
        self.predicates.append(Predicate(clause, EQ))
        return self

    def like(self, clause: str) -> SelectStatement:
        self.predicates.append(Predicate(clause, LIKE))
        return self

    def match(self, clause: str) -> SelectStatement:
        """Add a full-text ``clause MATCH :clause`` predicate."""
        self.predicates.append(Predicate(clause, MATCH))
        return self

    def limit(self, n: int) -> SelectStatement:
        if not isinstance(n, int) or isinstance(n, bool) or n < 0:
            raise ValueError(f"LIMIT must be a non-negative int, got {n!r}")
        self.limit_n = n
        return self

    def order_by(self, column: str, direction: str = "ASC") -> SelectStatement:
        direction = direction.upper()
        if direction not in _DIRECTIONS:
            raise ValueError(f"ORDER BY direction must be ASC or DESC, got {direction!r}")
        self.ordering = (column, direction)
        return self

    def to_sql(self) -> str:
        if not self.selects:
            raise ValueError("SELECT needs at least one column")
        if not self.tables:
            raise ValueError("SELECT needs a FROM table")
        sql = "SELECT " + ", ".join(s.to_sql() for s in self.selects)
        sql += " FROM " + ", ".join(self.tables)
        sql += _where_sql(self.predicates)
        if self.ordering is not None:
            sql += f" ORDER BY {self.ordering[0]} {self.ordering[1]}"
        if self.limit_n is not None:
            sql += f" LIMIT {self.limit_n}"
        return sql


# ---------------------------------------------------------------------------
# INSERT
# ---------------------------------------------------------------------------


@dataclass
class InsertStatement:
    """Insert a row into a table, one named parameter per column."""

    table_name: str = ""
    columns: List[str] = field(default_factory=list)

    def table(self, name: str) -> InsertStatement:
        self.table_name = name
        return self

    def column(self, column: str) -> InsertStatement:
        self.columns.append(column)
        return self

    def to_sql(self) -> str:
        if not self.table_name or not self.columns:
            raise ValueError("INSERT needs a table and at least one column")
        cols = ", ".join(self.columns)
        params = ", ".join(param_name(c) for c in self.columns)
        return f"INSERT INTO {self.table_name} ({cols}) VALUES ({params})"


# ---------------------------------------------------------------------------
# UPDATE
# ---------------------------------------------------------------------------


@dataclass
class UpdateStatement:
    """Update rows of a table. WHERE parameters use the ``w_`` prefix."""

    table_name: str = ""
    columns: List[str] = field(default_factory=list)
    predicates: List[Predicate] = field(default_factory=list)

    def table(self, name: str) -> UpdateStatement:
        self.table_name = name
        return self

    def column(self, column: str) -> UpdateStatement:
        self.columns.append(column)
        return self

    def where(self, clause: str) -> UpdateStatement:
        self.predicates.append(Predicate(clause, EQ))
        return self

    def like(self, clause: str) -> UpdateStatement:
        self.predicates.append(Predicate(clause, LIKE))
        return self

    def to_sql(self) -> str:
        if not self.table_name or not self.columns:
            raise ValueError("UPDATE needs a table and at least one column")
        sets = ", ".join(f"{c} = {param_name(c)}" for c in self.columns)
        return f"UPDATE {self.table_name} SET {sets}" + _where_sql(
            self.predicates, WHERE_PREFIX
        )


# ---------------------------------------------------------------------------
# DELETE
# ---------------------------------------------------------------------------


@dataclass
class DeleteStatement:
    """Delete rows from a table. Without a WHERE clause every row goes."""

    table_name: str = ""
    predicates: List[Predicate] = field(default_factory=list)

    def table(self, name: str) -> DeleteStatement:
        self.table_name = name
        return self

    def where(self, clause: str) -> DeleteStatement:
        self.predicates.append(Predicate(clause, EQ))
        return self

    def like(self, clause: str) -> DeleteStatement:
        self.predicates.append(Predicate(clause, LIKE))
        return self

    def to_sql(self) -> str:
        if not self.table_name:
            raise ValueError("DELETE needs a table")
        return f"DELETE FROM {self.table_name}" + _where_sql(
            self.predicates, WHERE_PREFIX
        )


class Query:
    """Shorthand constructors for the four statement builders."""

    @staticmethod
    def select() -> SelectStatement:
        return SelectStatement()

    @staticmethod
    def insert() -> InsertStatement:
        return InsertStatement()

    @staticmethod
    def update() -> UpdateStatement:
        return UpdateStatement()

    @staticmethod
    def delete() -> DeleteStatement:
        return DeleteStatement()

"""
History Store — SQLite Persistent Backend

Tables:
    history      - One row per executed command (id, timestamp, command, cwd, exit_code)
    history_fts  - FTS5 external-content index over history.command, kept in
                   sync by triggers (see raven.migrate)

The schema is created and upgraded by raven.migrate when the store opens.
Every SQL statement is built with raven.query and executed with named
parameters. Engine errors surface as StoreError; "not found" is None.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

from raven.migrate import get_user_version, open_or_create
from raven.query import Query
from raven.types import (
    UNSAVED_ID,
    History,
    HistoryFilters,
    MatchMode,
    from_unix,
)

logger = logging.getLogger(__name__)

HISTORY_TABLE = "history"
FTS_TABLE = "history_fts"

_COLUMNS = ("id", "timestamp", "command", "cwd", "exit_code")
_MUTABLE_COLUMNS = ("timestamp", "command", "cwd", "exit_code")


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class StoreError(Exception):
    """A storage operation failed. Wraps the underlying sqlite3 error."""


class InvalidIdError(StoreError):
    """The record has never been saved (id is the unsaved sentinel)."""

    def __init__(self, record_id: int):
        self.record_id = record_id
        super().__init__(f"Invalid record id: {record_id}")


class RowCountMismatchError(StoreError):
    """A statement touched an unexpected number of rows."""

    def __init__(self, expected: str, actual: int):
        self.expected = expected
        self.actual = actual
        super().__init__(f"Row count mismatch: expected {expected}, got {actual}")


# ---------------------------------------------------------------------------
# Full-text match expressions
# ---------------------------------------------------------------------------


def _quote_fts(text: str) -> str:
    return '"' + text.replace('"', '""') + '"'


def generate_match_parameter(query: str, mode: MatchMode) -> str:
    """Build the FTS5 MATCH expression for ``query``.

    FUZZY:  every whitespace-separated token becomes a quoted prefix term,
            ``hello world`` -> ``"hello"* "world"*`` (implicit AND).
    PREFIX: the whole query is one quoted phrase anchored at the start of
            the command, ``start phrase`` -> ``^"start phrase"*``.

    An empty query yields an empty string for every mode. SUBSTRING is not
    an FTS mode and is rejected for non-empty queries.
    """
    if not query:
        return ""
    mode = MatchMode(mode)
    if mode is MatchMode.FUZZY:
        return " ".join(_quote_fts(tok) + "*" for tok in query.split())
    if mode is MatchMode.PREFIX:
        return "^" + _quote_fts(query) + "*"
    raise ValueError(f"No FTS match expression for mode {mode.value!r}")


# ---------------------------------------------------------------------------
# Store contract
# ---------------------------------------------------------------------------


class Database(ABC):
    """Persistence contract consumed by the CLI and the importers."""

    @abstractmethod
    def save(self, record: History) -> int:
        """Insert one record and return its new id."""

    @abstractmethod
    def save_bulk(self, records: Sequence[History]) -> List[int]:
        """Insert all records in one transaction, or none of them."""

    @abstractmethod
    def get(self, record_id: int) -> Optional[History]:
        """Return the record with ``record_id``, or None."""

    @abstractmethod
    def update(self, record: History) -> None:
        """Overwrite every mutable field of a saved record."""

    @abstractmethod
    def delete(self, record_id: int) -> None:
        """Delete a record. Deleting a missing id is not an error."""

    @abstractmethod
    def search(
        self, query: str = "", filters: Optional[HistoryFilters] = None,
    ) -> List[History]:
        """Return matching records, most recent first unless ranked."""

    @abstractmethod
    def count_total(self) -> int:
        """Return the number of stored records."""

    def close(self) -> None:
        """Release resources. Default: nothing to release."""


# ---------------------------------------------------------------------------
# SQLite implementation
# ---------------------------------------------------------------------------


class HistoryStore(Database):
    """
    SQLite-backed command history.

    Owns a single connection in autocommit mode; ``save_bulk`` opens an
    explicit transaction and always ends it with COMMIT or ROLLBACK.
    """

    def __init__(self, db_path: str = ":memory:", wal_mode: bool = True):
        """Open the database and migrate it to the latest schema.

        Args:
            db_path: SQLite database path (or ":memory:" for in-memory).
            wal_mode: Enable WAL journal mode for concurrent readers.

        Raises:
            MigrationError: The schema could not be brought up to date.
            StoreError: The database file could not be opened.
        """
        self._db_path = db_path
        self._lock = threading.Lock()
        try:
            self._conn: Optional[sqlite3.Connection] = open_or_create(
                db_path, wal_mode=wal_mode
            )
        except (sqlite3.Error, OSError) as exc:
            raise StoreError(f"Cannot open database {db_path}: {exc}") from exc
        logger.debug("HistoryStore opened: %s", db_path)

    @classmethod
    def from_config(cls, cfg) -> HistoryStore:
        """Open the store described by a ``DatabaseConfig``."""
        return cls(cfg.resolve_path(), wal_mode=cfg.wal_mode)

    @property
    def db_path(self) -> str:
        return self._db_path

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self) -> HistoryStore:
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # -- Internal helpers --------------------------------------------------

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StoreError("Store is closed")
        return self._conn

    def _execute(self, sql: str, params: Dict[str, Any]) -> sqlite3.Cursor:
        logger.debug("SQL: %s | params: %s", sql, params)
        try:
            return self._connection().execute(sql, params)
        except sqlite3.Error as exc:
            raise StoreError(str(exc)) from exc

    @staticmethod
    def _record_params(record: History) -> Dict[str, Any]:
        return {
            "timestamp": record.unix_timestamp,
            "command": record.command,
            "cwd": record.cwd,
            "exit_code": record.exit_code,
        }

    @staticmethod
    def _row_to_history(row: sqlite3.Row) -> History:
        """Convert a SQLite Row to History."""
        return History(
            id=row["id"],
            timestamp=from_unix(row["timestamp"]),
            command=row["command"],
            cwd=row["cwd"],
            exit_code=row["exit_code"],
        )

    @staticmethod
    def _insert_sql() -> str:
        stmt = Query.insert().table(HISTORY_TABLE)
        for col in _MUTABLE_COLUMNS:
            stmt.column(col)
        return stmt.to_sql()

    # -- Writes ------------------------------------------------------------

    def save(self, record: History) -> int:
        with self._lock:
            cur = self._execute(self._insert_sql(), self._record_params(record))
            return cur.lastrowid

    def save_bulk(self, records: Sequence[History]) -> List[int]:
        if not records:
            return []
        sql = self._insert_sql()
        ids: List[int] = []
        with self._lock:
            conn = self._connection()
            try:
                conn.execute("BEGIN")
                for record in records:
                    ids.append(conn.execute(sql, self._record_params(record)).lastrowid)
                conn.execute("COMMIT")
            except sqlite3.Error as exc:
                logger.error("Bulk save of %d records failed: %s", len(records), exc)
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise StoreError(str(exc)) from exc
        logger.debug("Saved %d records in one transaction", len(ids))
        return ids

    def update(self, record: History) -> None:
        if record.id == UNSAVED_ID:
            raise InvalidIdError(record.id)
        stmt = Query.update().table(HISTORY_TABLE)
        for col in _MUTABLE_COLUMNS:
            stmt.column(col)
        stmt.where("id")
        params = self._record_params(record)
        params["w_id"] = record.id
        with self._lock:
            cur = self._execute(stmt.to_sql(), params)
        if cur.rowcount != 1:
            raise RowCountMismatchError("1", cur.rowcount)

    def delete(self, record_id: int) -> None:
        stmt = Query.delete().table(HISTORY_TABLE).where("id")
        with self._lock:
            cur = self._execute(stmt.to_sql(), {"w_id": record_id})
        if cur.rowcount > 1:
            raise RowCountMismatchError("0 or 1", cur.rowcount)

    # -- Reads -------------------------------------------------------------

    def get(self, record_id: int) -> Optional[History]:
        stmt = Query.select()
        for col in _COLUMNS:
            stmt.column(col)
        stmt.from_(HISTORY_TABLE).where("id")
        with self._lock:
            row = self._execute(stmt.to_sql(), {"id": record_id}).fetchone()
        return self._row_to_history(row) if row else None

    def search(
        self, query: str = "", filters: Optional[HistoryFilters] = None,
    ) -> List[History]:
        """Search the history.

        An empty query lists the base table. FUZZY and PREFIX queries go
        through the FTS index joined back to ``history``; SUBSTRING queries
        scan ``history.command`` with LIKE. Exit code and cwd filters are
        ANDed on top.
        """
        filters = filters or HistoryFilters()
        stmt = Query.select()
        for col in _COLUMNS:
            stmt.column(f"h.{col}", col)
        stmt.from_(f"{HISTORY_TABLE} h")
        params: Dict[str, Any] = {}
        use_fts = False

        if query:
            if MatchMode(filters.mode) is MatchMode.SUBSTRING:
                stmt.like("h.command")
                params["h_command"] = f"%{query}%"
            elif query.strip():
                match = generate_match_parameter(query, filters.mode)
                if match:
                    stmt.reset_from().from_(
                        f"{FTS_TABLE} JOIN {HISTORY_TABLE} h ON h.id = {FTS_TABLE}.rowid"
                    )
                    stmt.match(FTS_TABLE)
                    params[FTS_TABLE] = match
                    use_fts = True

        if filters.exit is not None:
            stmt.where("h.exit_code")
            params["h_exit_code"] = filters.exit
        if filters.cwd is not None:
            stmt.where("h.cwd")
            params["h_cwd"] = filters.cwd

        if use_fts and filters.rank:
            stmt.order_by(f"{FTS_TABLE}.rank", "ASC")
        else:
            stmt.order_by("h.timestamp", "DESC")

        if filters.limit is not None:
            stmt.limit(filters.limit)

        with self._lock:
            rows = self._execute(stmt.to_sql(), params).fetchall()
        return [self._row_to_history(row) for row in rows]

    def count_total(self) -> int:
        stmt = Query.select().count("*", "total").from_(HISTORY_TABLE)
        with self._lock:
            row = self._execute(stmt.to_sql(), {}).fetchone()
        return row["total"]

    def schema_version(self) -> int:
        """Return the schema version recorded in the database header."""
        with self._lock:
            try:
                return get_user_version(self._connection())
            except sqlite3.Error as exc:
                raise StoreError(str(exc)) from exc

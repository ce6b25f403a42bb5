"""
Schema Migrations — Versioned SQLite Schema

The schema version lives in ``PRAGMA user_version`` (database header), not in
a table, so it survives independently of table content.

Versions:
    V0  empty database
    V1  history table
    V2  history rebuilt with NOT NULL constraints + timestamp index
    V3  history_fts (FTS5, external content) + insert/delete/update triggers

Every step (v -> v+1) runs in its own transaction together with the version
bump: either both land or neither does. Steps are never skipped.
"""

from __future__ import annotations

import logging
import sqlite3
from enum import IntEnum
from pathlib import Path
from typing import Dict, Mapping, Optional

logger = logging.getLogger(__name__)


class SchemaVersion(IntEnum):
    """Released schema versions, in order."""

    V0 = 0  # no raven schema
    V1 = 1  # history table
    V2 = 2  # constrained history table, timestamp index
    V3 = 3  # history_fts + sync triggers


LATEST_SCHEMA = SchemaVersion.V3


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class MigrationError(Exception):
    """A schema migration could not be applied. Fatal to opening the store."""


class MissingMigrationError(MigrationError):
    """No script is registered for ``version -> version + 1``."""

    def __init__(self, version: int):
        self.version = version
        super().__init__(
            f"Migration script for v{version}_to_v{version + 1} not found"
        )


# ---------------------------------------------------------------------------
# Migration scripts
# ---------------------------------------------------------------------------

_V0_TO_V1 = """
CREATE TABLE history (
    id        INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp INTEGER,
    command   TEXT,
    cwd       TEXT,
    exit_code INTEGER
);
"""

# SQLite cannot add NOT NULL to existing columns: rebuild through history_old.
_V1_TO_V2 = """
ALTER TABLE history RENAME TO history_old;

CREATE TABLE history (
    id        INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp INTEGER NOT NULL,
    command   TEXT    NOT NULL,
    cwd       TEXT    NOT NULL DEFAULT 'unknown',
    exit_code INTEGER NOT NULL DEFAULT -1
);

INSERT INTO history (id, timestamp, command, cwd, exit_code)
SELECT id,
       COALESCE(timestamp, 0),
       COALESCE(command, ''),
       COALESCE(cwd, 'unknown'),
       COALESCE(exit_code, -1)
FROM history_old;

DROP TABLE history_old;

CREATE INDEX idx_history_timestamp ON history(timestamp);
"""

_V2_TO_V3 = """
DROP TABLE IF EXISTS history_fts;
DROP TRIGGER IF EXISTS history_ai;
DROP TRIGGER IF EXISTS history_ad;
DROP TRIGGER IF EXISTS history_au;

CREATE VIRTUAL TABLE history_fts USING fts5(
    command,
    content='history',
    content_rowid='id'
);

-- Index rows that already exist
INSERT INTO history_fts(history_fts) VALUES ('rebuild');

CREATE TRIGGER history_ai AFTER INSERT ON history BEGIN
    INSERT INTO history_fts(rowid, command) VALUES (new.id, new.command);
END;

CREATE TRIGGER history_ad AFTER DELETE ON history BEGIN
    INSERT INTO history_fts(history_fts, rowid, command)
    VALUES ('delete', old.id, old.command);
END;

CREATE TRIGGER history_au AFTER UPDATE ON history BEGIN
    INSERT INTO history_fts(history_fts, rowid, command)
    VALUES ('delete', old.id, old.command);
    INSERT INTO history_fts(rowid, command) VALUES (new.id, new.command);
END;
"""

# from-version -> script producing from-version + 1
MIGRATIONS: Dict[int, str] = {
    SchemaVersion.V0: _V0_TO_V1,
    SchemaVersion.V1: _V1_TO_V2,
    SchemaVersion.V2: _V2_TO_V3,
}


# ---------------------------------------------------------------------------
# user_version pragma
# ---------------------------------------------------------------------------


def get_user_version(conn: sqlite3.Connection) -> int:
    """Read ``PRAGMA user_version``."""
    return conn.execute("PRAGMA user_version").fetchone()[0]


def set_user_version(conn: sqlite3.Connection, version: int) -> None:
    """Write ``PRAGMA user_version`` (pragmas take no bound parameters)."""
    conn.execute(f"PRAGMA user_version = {int(version)}")


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


def _apply_step(
    conn: sqlite3.Connection, version: int, script: str,
) -> None:
    """Apply one ``version -> version + 1`` step atomically."""
    name = f"v{version}_to_v{version + 1}"
    logger.debug("Applying migration %s", name)
    try:
        # executescript runs outside implicit transaction handling, so the
        # transaction is opened by the script itself and stays open after it.
        conn.executescript("BEGIN;\n" + script)
        set_user_version(conn, version + 1)
        conn.execute("COMMIT")
    except sqlite3.Error as exc:
        logger.error("Migration %s failed: %s", name, exc)
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        raise MigrationError(f"Migration script failed: {name}. Error: {exc}") from exc
    logger.debug("Applied migration %s", name)


def run_migrations(
    conn: sqlite3.Connection,
    current_version: int,
    target_version: int = LATEST_SCHEMA,
    migrations: Optional[Mapping[int, str]] = None,
) -> int:
    """Migrate the schema from ``current_version`` up to ``target_version``.

    Args:
        conn: Open connection in autocommit mode (``isolation_level=None``).
        current_version: Version currently recorded in the database.
        target_version: Version to reach (default: latest).
        migrations: Script table; defaults to ``MIGRATIONS``.

    Returns:
        The version the database ends at.

    Raises:
        MissingMigrationError: A step in the range has no script.
        MigrationError: A step failed (that step is rolled back), the database
            is newer than this release, or a downgrade was requested.
    """
    scripts = MIGRATIONS if migrations is None else migrations
    current = int(current_version)
    target = int(target_version)

    if current > LATEST_SCHEMA:
        raise MigrationError(
            f"Database schema v{current} is newer than supported v{int(LATEST_SCHEMA)}"
        )
    if current > target:
        raise MigrationError(
            f"Downgrading schema from v{current} to v{target} is not supported"
        )
    if current == target:
        logger.debug("Schema already at v%d, nothing to migrate", current)
        return current

    logger.debug("Running migrations from v%d to v%d", current, target)
    while current < target:
        script = scripts.get(current)
        if script is None:
            err = MissingMigrationError(current)
            logger.error(str(err))
            raise err
        _apply_step(conn, current, script)
        current += 1

    logger.info("Migrations complete, database is at v%d", current)
    return current


def connect(db_path: str) -> sqlite3.Connection:
    """Open a connection in autocommit mode with ``sqlite3.Row`` rows."""
    conn = sqlite3.connect(db_path, isolation_level=None)
    conn.row_factory = sqlite3.Row
    return conn


def open_or_create(db_path: str, wal_mode: bool = True) -> sqlite3.Connection:
    """Open (or create) the database at ``db_path`` and migrate it to latest.

    A new file starts at V0 and is migrated straight to ``LATEST_SCHEMA``.
    Any migration failure closes the connection and propagates.
    """
    if db_path != ":memory:":
        path = Path(db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        logger.debug("%s %s", "Opening" if path.exists() else "Creating", db_path)
    conn = connect(db_path)
    try:
        if wal_mode and db_path != ":memory:":
            conn.execute("PRAGMA journal_mode=WAL")
        version = get_user_version(conn)
        logger.debug("Current database version: %d", version)
        run_migrations(conn, version, LATEST_SCHEMA)
    except (sqlite3.Error, MigrationError):
        conn.close()
        raise
    return conn

"""
raven — a searchable shell command history.

Every command typed in an interactive shell lands in a single SQLite + FTS5
database, with its working directory, start time and exit status.
"""

__version__ = "0.1.0"

from raven.types import (
    History,
    HistoryCaptured,
    HistoryFilters,
    HistoryImported,
    MatchMode,
)
from raven.migrate import LATEST_SCHEMA, MigrationError, SchemaVersion
from raven.store import Database, HistoryStore, StoreError
from raven.config import RavenConfig

__all__ = [
    "__version__",
    "History",
    "HistoryCaptured",
    "HistoryFilters",
    "HistoryImported",
    "MatchMode",
    "SchemaVersion",
    "LATEST_SCHEMA",
    "MigrationError",
    "Database",
    "HistoryStore",
    "StoreError",
    "RavenConfig",
]

"""
History Data Model

Defines the history record stored for every executed shell command, the
builder variants used by the capture hook and the importers, and the
search filters accepted by the store.

A record is append-only once written: the only field expected to change
after insertion is ``exit_code``, set once by the completion hook.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

# ---------------------------------------------------------------------------
# Sentinels
# ---------------------------------------------------------------------------

UNSAVED_ID = -1
UNKNOWN_EXIT = -1
UNKNOWN_CWD = "unknown"


def now_utc() -> datetime:
    """Current UTC time truncated to whole seconds."""
    return datetime.now(timezone.utc).replace(microsecond=0)


def to_unix(ts: datetime) -> int:
    """Convert a datetime to Unix seconds (naive values are taken as UTC)."""
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return int(ts.timestamp())


def from_unix(seconds: int) -> datetime:
    """Convert Unix seconds to an aware UTC datetime."""
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


# ---------------------------------------------------------------------------
# Search options
# ---------------------------------------------------------------------------


class MatchMode(str, Enum):
    """How a search query is matched against stored commands.

    FUZZY       every whitespace-separated token is a prefix term (FTS5)
    PREFIX      the whole query is one phrase anchored at the start (FTS5)
    SUBSTRING   plain ``LIKE %query%`` scan of the base table
    """

    FUZZY = "fuzzy"
    PREFIX = "prefix"
    SUBSTRING = "substring"

    @classmethod
    def parse(cls, value: str) -> MatchMode:
        try:
            return cls(value.strip().lower())
        except ValueError:
            valid = ", ".join(m.value for m in cls)
            raise ValueError(f"Invalid match mode: {value!r} (expected {valid})")


@dataclass
class HistoryFilters:
    """Optional filters applied by ``Database.search``."""

    exit: Optional[int] = None
    cwd: Optional[str] = None
    limit: Optional[int] = None
    mode: MatchMode = MatchMode.FUZZY
    rank: bool = False  # order by FTS relevance instead of recency


# ---------------------------------------------------------------------------
# History record
# ---------------------------------------------------------------------------


@dataclass
class History:
    """
    One executed command.

    Fields:
        id          row id, or ``UNSAVED_ID`` (-1) before the first save
        timestamp   UTC instant the command started (second precision)
        command     command text, may span several lines
        cwd         working directory, ``"unknown"`` for imported records
        exit_code   exit status, or ``UNKNOWN_EXIT`` (-1) while running
    """

    id: int = UNSAVED_ID
    timestamp: datetime = field(default_factory=now_utc)
    command: str = ""
    cwd: str = UNKNOWN_CWD
    exit_code: int = UNKNOWN_EXIT

    def __post_init__(self):
        """Normalize the timestamp to aware UTC at second precision."""
        if isinstance(self.timestamp, (int, float)):
            self.timestamp = from_unix(int(self.timestamp))
        elif self.timestamp.tzinfo is None:
            self.timestamp = self.timestamp.replace(tzinfo=timezone.utc)
        else:
            self.timestamp = self.timestamp.astimezone(timezone.utc)
        self.timestamp = self.timestamp.replace(microsecond=0)

    @property
    def is_saved(self) -> bool:
        return self.id != UNSAVED_ID

    @property
    def unix_timestamp(self) -> int:
        return to_unix(self.timestamp)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a JSON-safe dict (timestamp as Unix seconds)."""
        return {
            "id": self.id,
            "timestamp": self.unix_timestamp,
            "command": self.command,
            "cwd": self.cwd,
            "exit_code": self.exit_code,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> History:
        known = set(cls.__dataclass_fields__.keys())
        return cls(**{k: v for k, v in d.items() if k in known})


# ---------------------------------------------------------------------------
# Builder variants
# ---------------------------------------------------------------------------


@dataclass
class HistoryCaptured:
    """A command seen by the shell hook before it has finished running."""

    timestamp: datetime
    command: str
    cwd: str

    def to_history(self) -> History:
        return History(
            timestamp=self.timestamp,
            command=self.command,
            cwd=self.cwd,
            exit_code=UNKNOWN_EXIT,
        )


@dataclass
class HistoryImported:
    """A command recovered from a history file; cwd and exit are unknown."""

    timestamp: datetime
    command: str

    def to_history(self) -> History:
        return History(
            timestamp=self.timestamp,
            command=self.command,
            cwd=UNKNOWN_CWD,
            exit_code=UNKNOWN_EXIT,
        )

"""
History Import — Shell History Files into the Store

An Importer reads a shell history file and pushes reconstructed History
records to a Loader. It does not know how records are persisted: the
BatchLoader adapter buffers them and writes them with ``save_bulk``.

Zsh history lines come in two shapes:

    ls -l                               plain (no metadata)
    : 1678886400:0;ls -l                extended (start time, duration)

A command may continue over several physical lines. The continuation
marker recognized here is a doubled backslash (``\\\\``) at the end of a line;
finalization joins the lines with ``\\n`` and collapses each ``\\\\`` to ``\\``.
Malformed extended lines never abort an import: they are kept verbatim as
plain one-line commands.
"""

from __future__ import annotations

import logging
import os
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import List, Optional, Union

from raven.store import Database, StoreError
from raven.types import History, HistoryImported, from_unix, now_utc

logger = logging.getLogger(__name__)

CONTINUATION = "\\\\"
EXTENDED_PREFIX = ": "
ZSH_HISTFILES = (".zhistory", ".zsh_history", ".histfile")
DEFAULT_BATCH_SIZE = 1000

_TIMESTAMP_RE = re.compile(r"[+-]?[0-9]+")


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class HistoryImportError(Exception):
    """The history source could not be located, read, or fully loaded."""


class LoadError(Exception):
    """A Loader could not persist pushed records."""


# ---------------------------------------------------------------------------
# Capabilities
# ---------------------------------------------------------------------------


class Loader(ABC):
    """Receives records produced by an Importer."""

    @abstractmethod
    def push(self, record: History) -> None:
        """Accept one record. Raises LoadError on persistence failure."""


class Importer(ABC):
    """Reads one kind of shell history and pushes records to a Loader."""

    NAME: str = ""

    @classmethod
    @abstractmethod
    def new(cls) -> Importer:
        """Locate the default history source. Raises HistoryImportError."""

    @abstractmethod
    def load(self, loader: Loader) -> None:
        """Push every record of the source to ``loader``."""


# ---------------------------------------------------------------------------
# Line classification
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Empty:
    pass


@dataclass(frozen=True)
class Simple:
    text: str


@dataclass(frozen=True)
class ExtendedHeader:
    timestamp: datetime
    command: str
    continues: bool


@dataclass(frozen=True)
class MalformedExtended:
    line: str


ParsedLine = Union[Empty, Simple, ExtendedHeader, MalformedExtended]


def _malformed(line: str, reason: str) -> MalformedExtended:
    logger.warning("%s, treating as simple command: %s", reason, line)
    return MalformedExtended(line)


def classify_line(text: str) -> ParsedLine:
    """Classify one physical line of a zsh history file.

    Trailing whitespace is ignored. Lines starting with ``": "`` must be
    ``: <timestamp>:<duration>;<command>`` to count as extended headers;
    anything that fails to parse comes back as MalformedExtended.
    """
    line = text.rstrip()
    if not line:
        return Empty()
    if not line.startswith(EXTENDED_PREFIX):
        return Simple(line)

    ts_field, sep, rest = line[len(EXTENDED_PREFIX):].partition(":")
    if not sep:
        return _malformed(line, "Missing timestamp separator ':'")
    _, sep, command = rest.partition(";")
    if not sep:
        return _malformed(line, "Missing command separator ';'")

    ts_field = ts_field.strip()
    if not _TIMESTAMP_RE.fullmatch(ts_field):
        return _malformed(line, f"Non-numeric timestamp {ts_field!r}")
    try:
        timestamp = from_unix(int(ts_field))
    except (OverflowError, OSError, ValueError):
        return _malformed(line, f"Invalid Unix timestamp {ts_field}")

    command = command.lstrip()
    return ExtendedHeader(timestamp, command, command.endswith(CONTINUATION))


# ---------------------------------------------------------------------------
# Parser state
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Idle:
    pass


@dataclass(frozen=True)
class AccumulatingSimple:
    pass


@dataclass(frozen=True)
class AccumulatingExtended:
    timestamp: datetime
    more_lines_expected: bool


Context = Union[Idle, AccumulatingSimple, AccumulatingExtended]


class _ZshParser:
    """Turns classified lines into records, one transition per line kind."""

    def __init__(self, loader: Loader, now: datetime):
        self._loader = loader
        self._now = now
        self._offset = 0
        self._buffer: List[str] = []
        self._context: Context = Idle()

    def feed(self, parsed: ParsedLine) -> None:
        if isinstance(parsed, ExtendedHeader):
            self._on_header(parsed)
        elif isinstance(parsed, MalformedExtended):
            self._on_malformed(parsed)
        elif isinstance(parsed, Simple):
            self._on_simple(parsed)
        else:
            self._on_empty()

    def finish(self) -> None:
        self._finalize()

    # -- Transitions -------------------------------------------------------

    def _on_header(self, header: ExtendedHeader) -> None:
        self._finalize()
        self._buffer.append(header.command)
        self._context = AccumulatingExtended(header.timestamp, header.continues)
        if not header.continues:
            self._finalize()

    def _on_malformed(self, malformed: MalformedExtended) -> None:
        self._finalize()
        self._buffer.append(malformed.line)
        self._context = AccumulatingSimple()
        self._finalize()

    def _on_simple(self, simple: Simple) -> None:
        ctx = self._context
        continues = simple.text.endswith(CONTINUATION)
        if isinstance(ctx, AccumulatingExtended) and ctx.more_lines_expected:
            self._buffer.append(simple.text)
            self._context = AccumulatingExtended(ctx.timestamp, continues)
        else:
            if isinstance(ctx, AccumulatingExtended):
                # previous extended command was already complete
                self._finalize()
            self._buffer.append(simple.text)
            self._context = AccumulatingSimple()
        if not continues:
            self._finalize()

    def _on_empty(self) -> None:
        ctx = self._context
        if isinstance(ctx, AccumulatingExtended):
            if ctx.more_lines_expected:
                self._buffer.append("")
        elif isinstance(ctx, AccumulatingSimple):
            if self._buffer and self._buffer[-1].endswith(CONTINUATION):
                self._buffer.append("")

    # -- Finalization ------------------------------------------------------

    def _finalize(self) -> None:
        """Emit the buffered command (if any) and return to idle."""
        if not self._buffer:
            self._context = Idle()
            return
        command = "\n".join(self._buffer).replace(CONTINUATION, "\\")
        if isinstance(self._context, AccumulatingExtended):
            timestamp = self._context.timestamp
        else:
            timestamp = self._now - timedelta(seconds=self._offset)
            self._offset += 1
        self._buffer = []
        self._context = Idle()
        self._loader.push(HistoryImported(timestamp, command).to_history())


# ---------------------------------------------------------------------------
# Zsh
# ---------------------------------------------------------------------------


class ZshImporter(Importer):
    """Imports a zsh history file (plain or EXTENDED_HISTORY format)."""

    NAME = "zsh"

    def __init__(self, histpath: Union[str, Path]):
        self.histpath = Path(histpath)

    @classmethod
    def default_histpath(cls) -> Path:
        """Return ``$HISTFILE`` if it exists, else the first standard file in ``$HOME``."""
        histfile = os.environ.get("HISTFILE")
        if histfile and Path(histfile).expanduser().is_file():
            return Path(histfile).expanduser()

        home = os.environ.get("HOME")
        if not home:
            raise HistoryImportError("$HOME is not set, cannot locate home directory")
        for candidate in ZSH_HISTFILES:
            path = Path(home) / candidate
            if path.exists():
                logger.info("Found histfile at %s", path)
                return path
        raise HistoryImportError(
            f"Could not find a standard Zsh history file in {home}"
        )

    @classmethod
    def new(cls) -> ZshImporter:
        return cls(cls.default_histpath())

    def load(self, loader: Loader) -> None:
        parser = _ZshParser(loader, now_utc())
        try:
            with open(self.histpath, "r", encoding="utf-8", errors="replace") as fh:
                for line in fh:
                    parser.feed(classify_line(line))
                parser.finish()
        except OSError as exc:
            raise HistoryImportError(f"Cannot read {self.histpath}: {exc}") from exc
        except LoadError as exc:
            raise HistoryImportError(f"Import aborted: {exc}") from exc


IMPORTERS = {ZshImporter.NAME: ZshImporter}


# ---------------------------------------------------------------------------
# Batching loader
# ---------------------------------------------------------------------------


class BatchLoader(Loader):
    """Buffers pushed records and writes them to a store in bulk.

    A batch is flushed through ``save_bulk`` when ``capacity`` records are
    buffered, and on ``flush()``. ``count`` is the number of records
    persisted so far; batches committed before a failure stay committed.
    """

    def __init__(self, store: Database, capacity: int = DEFAULT_BATCH_SIZE):
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self._store = store
        self.capacity = capacity
        self.count = 0
        self._buffer: List[History] = []

    def push(self, record: History) -> None:
        self._buffer.append(record)
        if len(self._buffer) >= self.capacity:
            self.flush()

    def flush(self) -> None:
        if not self._buffer:
            return
        try:
            self._store.save_bulk(self._buffer)
        except StoreError as exc:
            raise LoadError(f"Failed to save {len(self._buffer)} records: {exc}") from exc
        self.count += len(self._buffer)
        logger.debug("Flushed %d records (%d total)", len(self._buffer), self.count)
        self._buffer = []


def import_history(
    store: Database,
    importer: Importer,
    capacity: int = DEFAULT_BATCH_SIZE,
) -> int:
    """Run ``importer`` into ``store`` and return the number of records saved."""
    loader = BatchLoader(store, capacity)
    importer.load(loader)
    try:
        loader.flush()
    except LoadError as exc:
        raise HistoryImportError(f"Import aborted: {exc}") from exc
    logger.info("Imported %d %s commands", loader.count, importer.NAME)
    return loader.count

"""
raven Configuration

Configuration dataclasses for raven: database location, search defaults and
logging. ``load_config()`` reads a TOML file with silent fallback to compiled
defaults; directory helpers follow the XDG base-directory layout.

Example ``~/.config/raven/config.toml``::

    [database]
    database_path = "~/.local/share/raven"
    database_file = "raven.db"

    [search]
    mode = "fuzzy"
    limit = 0

    [log]
    level = "warning"
    file = "raven.log"
"""

from __future__ import annotations

import logging
import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from raven.types import MatchMode

logger = logging.getLogger(__name__)

APP_NAME = "raven"
CONFIG_FILE = "config.toml"
DEFAULT_DB_FILE = "raven.db"
DEFAULT_LOG_FILE = "raven.log"

_LOG_LEVELS = ("debug", "info", "warning", "error", "critical")


# ---------------------------------------------------------------------------
# Directories
# ---------------------------------------------------------------------------


def get_home_dir() -> Path:
    """Return ``$HOME`` (falls back to the password database)."""
    home = os.environ.get("HOME")
    return Path(home) if home else Path.home()


def get_data_dir() -> Path:
    """``$XDG_DATA_HOME/raven`` or ``~/.local/share/raven``."""
    base = os.environ.get("XDG_DATA_HOME")
    root = Path(base) if base else get_home_dir() / ".local" / "share"
    return root / APP_NAME


def get_config_dir() -> Path:
    """``$XDG_CONFIG_HOME/raven`` or ``~/.config/raven``."""
    base = os.environ.get("XDG_CONFIG_HOME")
    root = Path(base) if base else get_home_dir() / ".config"
    return root / APP_NAME


def get_current_dir() -> str:
    """Shell working directory: ``$PWD`` keeps symlinked paths as typed."""
    pwd = os.environ.get("PWD")
    if pwd:
        return pwd
    try:
        return os.getcwd()
    except OSError:
        return ""


def default_config_path() -> Path:
    """``$RAVEN_CONFIG`` or ``<config dir>/config.toml``."""
    override = os.environ.get("RAVEN_CONFIG")
    if override:
        return Path(override).expanduser()
    return get_config_dir() / CONFIG_FILE


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class ValidationError(ValueError):
    """Raised when config values are out of valid range."""

    pass


def _check_range(
    errors: List[str], name: str, value, lo, hi, typ=None,
) -> None:
    """Append an error message if value is out of [lo, hi] or wrong type."""
    if typ is not None and (not isinstance(value, typ) or isinstance(value, bool)):
        errors.append(f"{name}: expected {typ.__name__}, got {type(value).__name__}")
        return
    if value < lo or value > hi:
        errors.append(f"{name}: {value} not in [{lo}, {hi}]")


def _check_choice(errors: List[str], name: str, value, choices) -> None:
    if value not in choices:
        errors.append(f"{name}: {value!r} not in {list(choices)}")


# ---------------------------------------------------------------------------
# Sections
# ---------------------------------------------------------------------------


@dataclass
class DatabaseConfig:
    """SQLite database location."""
    database_path: Optional[str] = None  # directory; None = data dir
    database_file: str = DEFAULT_DB_FILE
    wal_mode: bool = True

    def resolve_path(self) -> str:
        """Full path of the database file."""
        directory = (
            Path(self.database_path).expanduser()
            if self.database_path else get_data_dir()
        )
        return str(directory / self.database_file)

    def validate(self) -> List[str]:
        errors: List[str] = []
        if not isinstance(self.database_file, str) or not self.database_file:
            errors.append("database.database_file: must be a non-empty string")
        return errors


@dataclass
class SearchConfig:
    """Defaults for ``raven search``."""
    mode: str = MatchMode.FUZZY.value
    limit: int = 0  # 0 = unlimited

    @property
    def match_mode(self) -> MatchMode:
        return MatchMode.parse(self.mode)

    def validate(self) -> List[str]:
        errors: List[str] = []
        _check_choice(errors, "search.mode", self.mode, [m.value for m in MatchMode])
        _check_range(errors, "search.limit", self.limit, 0, 1_000_000, int)
        return errors


@dataclass
class LogConfig:
    """Log level and destination."""
    level: str = "warning"
    file: str = DEFAULT_LOG_FILE  # relative to the data dir; "" = stderr

    def resolve_file(self) -> Optional[Path]:
        if not self.file:
            return None
        path = Path(self.file).expanduser()
        return path if path.is_absolute() else get_data_dir() / path

    def validate(self) -> List[str]:
        errors: List[str] = []
        _check_choice(errors, "log.level", str(self.level).lower(), _LOG_LEVELS)
        return errors


@dataclass
class RavenConfig:
    """Top-level raven configuration."""
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    search: SearchConfig = field(default_factory=SearchConfig)
    log: LogConfig = field(default_factory=LogConfig)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> RavenConfig:
        """Build config from a nested dict (e.g. parsed TOML)."""
        kwargs: Dict[str, Any] = {}
        if "database" in d:
            kwargs["database"] = DatabaseConfig(**d["database"])
        if "search" in d:
            kwargs["search"] = SearchConfig(**d["search"])
        if "log" in d:
            kwargs["log"] = LogConfig(**d["log"])
        return cls(**kwargs)

    def validate(self) -> List[str]:
        """Validate all config sections. Returns list of error messages."""
        errors: List[str] = []
        errors.extend(self.database.validate())
        errors.extend(self.search.validate())
        errors.extend(self.log.validate())
        return errors


def load_config(
    path: Optional[str] = None, *, strict: bool = False,
) -> RavenConfig:
    """Load config from a TOML file. Returns defaults if file missing/invalid.

    Args:
        path: Path to config.toml. If None, returns compiled defaults.
        strict: If True, raise ValidationError on invalid config values.

    Returns:
        RavenConfig with values from file or defaults.

    Raises:
        ValidationError: If strict=True and config values are out of range.
    """
    if path is None:
        cfg = RavenConfig()
    else:
        try:
            with open(path, "rb") as f:
                data = tomllib.load(f)
            cfg = RavenConfig.from_dict(data)
        except FileNotFoundError:
            logger.debug("No config at %s, using defaults", path)
            cfg = RavenConfig()
        except (tomllib.TOMLDecodeError, TypeError, KeyError) as exc:
            logger.warning("Ignoring invalid config %s: %s", path, exc)
            cfg = RavenConfig()

    if strict:
        errors = cfg.validate()
        if errors:
            raise ValidationError(
                f"Config validation failed: {'; '.join(errors)}"
            )

    return cfg

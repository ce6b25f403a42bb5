"""
raven CLI — Shell Command History

Commands:
    raven init zsh                          — print the zsh hook script
    raven history start -- <command...>     — record a command, print its id
    raven history end --exit N -- <id>      — set the exit code of a record
    raven history delete <id>               — delete a record
    raven import auto|zsh [--file PATH]     — import a shell history file
    raven search [QUERY...] [--cwd D] [--exit N] [--limit N]
                 [--mode M] [--suggest] [--rank]
                                            — print matching commands
    raven stats                             — store metrics

Environment variables:
    RAVEN_DB        Path to SQLite database (default: <data dir>/raven.db)
    RAVEN_CONFIG    Path to config.toml (default: <config dir>/config.toml)
    RAVEN_LOG       Log level when not --verbose (default: config log.level)
    RAVEN_QUERY     Search query used when none is given on the command line

Precedence (invariant):
    CLI --flag  >  RAVEN_* env var  >  config.toml  >  compiled default

Exit codes:
    0  Success (including idempotent no-op)
    1  Operational error (no match, unreadable history, broken database)
    2  Internal failure (unexpected exception)
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional

from raven import __version__
from raven.config import (
    RavenConfig,
    SearchConfig,
    ValidationError,
    default_config_path,
    get_current_dir,
    load_config,
)
from raven.importer import IMPORTERS, HistoryImportError, import_history
from raven.migrate import MigrationError
from raven.store import HistoryStore, StoreError
from raven.types import HistoryCaptured, HistoryFilters, MatchMode, now_utc

logger = logging.getLogger(__name__)

ZSH_HOOK = """\
autoload -U add-zsh-hook

_raven_preexec() {
  local id
  id=$(raven history start -- "$1")
  export RAVEN_HISTORY_ID="$id"
}

_raven_precmd() {
  local EXIT="$?"
  [[ -z "${RAVEN_HISTORY_ID:-}" ]] && return

  (raven history end --exit $EXIT -- $RAVEN_HISTORY_ID)
  export RAVEN_HISTORY_ID=""
}

add-zsh-hook preexec _raven_preexec
add-zsh-hook precmd _raven_precmd
"""

SHELL_HOOKS = {"zsh": ZSH_HOOK}


# ---------------------------------------------------------------------------
# Env parsing (never crash on bad export)
# ---------------------------------------------------------------------------


def _env_str(name: str, default: str) -> str:
    """Parse string env var with fallback."""
    return os.environ.get(name, default)


def _non_negative_int(value: str) -> int:
    """argparse type: integer >= 0."""
    try:
        n = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid int value: {value!r}")
    if n < 0:
        raise argparse.ArgumentTypeError(f"must be >= 0, got {n}")
    return n


# ---------------------------------------------------------------------------
# Resolvers
# ---------------------------------------------------------------------------


def _load_config() -> RavenConfig:
    return load_config(str(default_config_path()))


def _resolve_db(args: argparse.Namespace, cfg: RavenConfig) -> str:
    """Resolve database path: CLI --db > RAVEN_DB > config > data dir."""
    if getattr(args, "db", None):
        return args.db
    env_db = _env_str("RAVEN_DB", "")
    if env_db:
        return env_db
    return cfg.database.resolve_path()


def _open_store(args: argparse.Namespace, cfg: RavenConfig) -> HistoryStore:
    """Open (and migrate) the history store. Creates parent dirs if needed."""
    return HistoryStore(_resolve_db(args, cfg), wal_mode=cfg.database.wal_mode)


def _search_config(cfg: RavenConfig) -> SearchConfig:
    """The [search] section, or its defaults when it does not validate."""
    errors = cfg.search.validate()
    if errors:
        logger.warning("Ignoring invalid [search] config: %s", "; ".join(errors))
        return SearchConfig()
    return cfg.search


# ---------------------------------------------------------------------------
# Stderr helpers (respect --quiet)
# ---------------------------------------------------------------------------

_quiet = False


def _info(msg: str) -> None:
    """Print progress to stderr (suppressed by --quiet)."""
    if not _quiet:
        print(msg, file=sys.stderr)


def _warn(msg: str) -> None:
    """Print warning to stderr (always visible)."""
    print(msg, file=sys.stderr)


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


def _setup_logging(args: argparse.Namespace, cfg: RavenConfig) -> None:
    """-v logs DEBUG to stderr; otherwise the configured level goes to the log file.

    Without -v nothing is logged to the terminal the hooks run in.
    """
    if getattr(args, "verbose", False):
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(name)s %(levelname)s %(message)s",
        )
        return

    level_name = _env_str("RAVEN_LOG", cfg.log.level).upper()
    level = getattr(logging, level_name, None)
    if not isinstance(level, int):
        level = logging.WARNING

    log_file = cfg.log.resolve_file()
    if log_file is not None:
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            logging.basicConfig(
                filename=str(log_file),
                level=level,
                format="%(asctime)s %(name)s %(levelname)s %(message)s",
            )
            return
        except OSError as exc:
            _warn(f"Cannot write log file {log_file}: {exc}")
    logging.basicConfig(level=level)


# ===========================================================================
# Command: init
# ===========================================================================


def cmd_init(args: argparse.Namespace, cfg: RavenConfig) -> None:
    """Print the shell hook script (eval "$(raven init zsh)")."""
    print(SHELL_HOOKS[args.shell], end="")


# ===========================================================================
# Command: history start | end | delete  (shell hooks)
# ===========================================================================


def cmd_history_start(args: argparse.Namespace, cfg: RavenConfig) -> None:
    """Record a command that is about to run and print its id."""
    captured = HistoryCaptured(
        timestamp=now_utc(),
        command=" ".join(args.command),
        cwd=get_current_dir(),
    )
    with _open_store(args, cfg) as store:
        record_id = store.save(captured.to_history())
    print(record_id)


def cmd_history_end(args: argparse.Namespace, cfg: RavenConfig) -> None:
    """Set the exit code of a running command.

    Never fails: empty, non-numeric and unknown ids are ignored.
    """
    raw_id = (args.id or "").strip()
    if not raw_id:
        return
    try:
        record_id = int(raw_id)
    except ValueError:
        logger.debug("Ignoring non-numeric history id %r", raw_id)
        return

    try:
        with _open_store(args, cfg) as store:
            record = store.get(record_id)
            if record is None:
                logger.debug("Ignoring unknown history id %d", record_id)
                return
            record.exit_code = args.exit
            store.update(record)
    except (StoreError, MigrationError) as exc:
        logger.warning("Could not record exit code for %d: %s", record_id, exc)


def cmd_history_delete(args: argparse.Namespace, cfg: RavenConfig) -> None:
    """Delete a record (deleting a missing id is not an error)."""
    with _open_store(args, cfg) as store:
        store.delete(args.id)
    _info(f"Deleted {args.id}")


# ===========================================================================
# Command: import
# ===========================================================================


def _detect_shell() -> Optional[str]:
    shell = _env_str("SHELL", "")
    for name in IMPORTERS:
        if shell.endswith("/" + name):
            return name
    return None


def cmd_import(args: argparse.Namespace, cfg: RavenConfig) -> None:
    """Import a shell history file into the store."""
    shell = args.shell
    if shell == "auto":
        shell = _detect_shell()
        if shell is None:
            _warn("Error: not able to detect a supported shell type ($SHELL)")
            sys.exit(1)
        _info(f"Detected {shell}")

    importer_cls = IMPORTERS[shell]
    if args.file:
        importer = importer_cls(Path(args.file).expanduser())
    else:
        importer = importer_cls.new()
    _info(f"Importing history for {importer_cls.NAME} from {importer.histpath}")

    with _open_store(args, cfg) as store:
        count = import_history(store, importer)

    if getattr(args, "json", False):
        print(json.dumps({
            "shell": importer_cls.NAME,
            "source": str(importer.histpath),
            "imported": count,
        }))
    else:
        print(f"Imported {count} commands")


# ===========================================================================
# Command: search
# ===========================================================================


def _resolve_query(args: argparse.Namespace) -> str:
    """Query words from the command line, else RAVEN_QUERY."""
    if args.query:
        return " ".join(args.query)
    return _env_str("RAVEN_QUERY", "")


def _resolve_mode(args: argparse.Namespace, search_cfg: SearchConfig) -> MatchMode:
    """--mode > --suggest (prefix) > config search.mode."""
    if args.mode:
        return MatchMode.parse(args.mode)
    if args.suggest:
        return MatchMode.PREFIX
    return search_cfg.match_mode


def cmd_search(args: argparse.Namespace, cfg: RavenConfig) -> None:
    """Print matching commands, most recent first. Exit 1 on no match."""
    query = _resolve_query(args)
    search_cfg = _search_config(cfg)
    limit = args.limit if args.limit is not None else search_cfg.limit
    filters = HistoryFilters(
        exit=args.exit,
        cwd=args.cwd,
        limit=limit or None,
        mode=_resolve_mode(args, search_cfg),
        rank=args.rank,
    )
    logger.debug("search %r with filters %s", query, filters)

    with _open_store(args, cfg) as store:
        entries = store.search(query, filters)

    logger.debug("search had %d results", len(entries))
    if not entries:
        sys.exit(1)

    if getattr(args, "json", False):
        print(json.dumps([e.to_dict() for e in entries], indent=2, ensure_ascii=False))
    else:
        for entry in entries:
            print(entry.command)


# ===========================================================================
# Command: stats
# ===========================================================================


def cmd_stats(args: argparse.Namespace, cfg: RavenConfig) -> None:
    """Show store statistics."""
    with _open_store(args, cfg) as store:
        stats = {
            "db_path": store.db_path,
            "schema_version": store.schema_version(),
            "total_commands": store.count_total(),
        }

    if getattr(args, "json", False):
        print(json.dumps(stats, indent=2))
    else:
        print(f"Database:        {stats['db_path']}")
        print(f"Schema version:  {stats['schema_version']}")
        print(f"Total commands:  {stats['total_commands']}")


# ===========================================================================
# Entry point
# ===========================================================================


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser (global flags work before or after the command)."""
    # SUPPRESS defaults keep subparser defaults from overriding values
    # parsed at the main-parser level.
    _common = argparse.ArgumentParser(add_help=False)
    _common.add_argument(
        "--db", default=argparse.SUPPRESS,
        help="Path to SQLite database (default: RAVEN_DB or <data dir>/raven.db)",
    )
    _common.add_argument(
        "--quiet", "-q", action="store_true", default=argparse.SUPPRESS,
        help="Suppress stderr progress messages",
    )
    _common.add_argument(
        "--json", action="store_true", default=argparse.SUPPRESS,
        help="Machine-readable JSON output (search, stats, import)",
    )
    _common.add_argument(
        "-v", "--verbose", action="store_true", default=argparse.SUPPRESS,
        help="Log DEBUG to stderr",
    )

    parser = argparse.ArgumentParser(
        prog="raven",
        description="raven — searchable shell command history",
        parents=[_common],
    )
    parser.add_argument("--version", action="version", version=f"raven {__version__}")

    sub = parser.add_subparsers(dest="command", help="Available commands")

    # -- init --------------------------------------------------------------
    p_init = sub.add_parser("init", parents=[_common], help="Print the shell hook script")
    p_init.add_argument("shell", choices=sorted(SHELL_HOOKS), help="Target shell")
    p_init.set_defaults(func=cmd_init)

    # -- history -----------------------------------------------------------
    p_hist = sub.add_parser("history", parents=[_common], help="Shell hook entry points")
    hist_sub = p_hist.add_subparsers(dest="history_command")

    p_start = hist_sub.add_parser("start", parents=[_common], help="Record a starting command")
    p_start.add_argument("command", nargs="*", help="Command text (after --)")
    p_start.set_defaults(func=cmd_history_start)

    p_end = hist_sub.add_parser("end", parents=[_common], help="Record an exit code")
    p_end.add_argument("id", nargs="?", default="", help="Id printed by 'history start'")
    p_end.add_argument("--exit", "-e", type=int, required=True, help="Exit status")
    p_end.set_defaults(func=cmd_history_end)

    p_del = hist_sub.add_parser("delete", parents=[_common], help="Delete a record")
    p_del.add_argument("id", type=int, help="Record id")
    p_del.set_defaults(func=cmd_history_delete)

    # -- import ------------------------------------------------------------
    p_imp = sub.add_parser("import", parents=[_common], help="Import a shell history file")
    p_imp.add_argument(
        "shell", choices=["auto", *sorted(IMPORTERS)],
        help="Shell whose history to import (auto: detect from $SHELL)",
    )
    p_imp.add_argument("--file", "-f", default=None, help="History file (default: shell's standard file)")
    p_imp.set_defaults(func=cmd_import)

    # -- search ------------------------------------------------------------
    p_search = sub.add_parser("search", parents=[_common], help="Search command history")
    p_search.add_argument("query", nargs="*", help="Search query (default: RAVEN_QUERY)")
    p_search.add_argument("--cwd", "-c", default=None, help="Only commands run in this directory")
    p_search.add_argument("--exit", "-e", type=int, default=None, help="Only commands with this exit code")
    p_search.add_argument("--limit", "-l", type=_non_negative_int, default=None, help="Max results (0 = unlimited)")
    p_search.add_argument(
        "--mode", "-m", choices=[m.value for m in MatchMode], default=None,
        help="Match mode (default: config search.mode or fuzzy)",
    )
    p_search.add_argument("--suggest", "-s", action="store_true", help="Shorthand for --mode prefix")
    p_search.add_argument("--rank", action="store_true", help="Order by relevance instead of recency")
    p_search.set_defaults(func=cmd_search)

    # -- stats -------------------------------------------------------------
    p_stats = sub.add_parser("stats", parents=[_common], help="Store statistics")
    p_stats.set_defaults(func=cmd_stats)

    return parser


def main(argv: Optional[List[str]] = None) -> None:
    """CLI entry point: raven <command> [args]."""
    global _quiet

    parser = build_parser()
    args = parser.parse_args(argv)

    _quiet = getattr(args, "quiet", False)

    if not hasattr(args, "func"):
        parser.print_help()
        sys.exit(1)

    try:
        cfg = _load_config()
        _setup_logging(args, cfg)
        args.func(args, cfg)
    except BrokenPipeError:
        # Handle broken pipe gracefully (e.g. raven search | head)
        devnull = os.open(os.devnull, os.O_WRONLY)
        os.dup2(devnull, sys.stdout.fileno())
        sys.exit(0)
    except KeyboardInterrupt:
        sys.exit(0)
    except (StoreError, MigrationError, HistoryImportError, ValidationError) as e:
        _warn(f"Error: {e}")
        sys.exit(1)
    except Exception as e:
        _warn(f"Internal error: {e}")
        if getattr(args, "verbose", False):
            import traceback
            traceback.print_exc(file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()

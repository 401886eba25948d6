"""Command-line interface router for localdb."""

from __future__ import annotations

import argparse
import json
import sqlite3
import sys
import threading
from collections.abc import Mapping, Sequence
from pathlib import Path

from localdb.config import load_config
from localdb.observability import LoggingConfig, setup_structured_logging, shutdown_logging
from localdb.persistence import (
    ConnectionHandle,
    PragmaVersionStore,
    SQLiteExecutor,
    SqlSchema,
    assemble_dsn,
    open_session_from_config,
    sqlite_uri,
)


class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    def __init__(self, message: str, *, exit_code: int = 1) -> None:
        super().__init__(message)
        self.exit_code = exit_code


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router."""

    parser = argparse.ArgumentParser(
        prog="localdb",
        description=(
            "localdb — versioned local SQLite databases.\n\n"
            "Common workflows:\n"
            "  localdb status --db app.db                    Show identity and version\n"
            "  localdb upgrade --db app.db --script v1.sql   Create or upgrade a database\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--json", action="store_true", help="Emit deterministic JSON output")
    common.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        default=False,
        help="Log session events to stderr.",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    status_parser = subparsers.add_parser(
        "status",
        parents=[common],
        help="Show application id and schema version without modifying the file",
    )
    status_parser.add_argument("--db", dest="db_path", required=True, help="Database file")
    status_parser.set_defaults(handler=_cmd_status)

    upgrade_parser = subparsers.add_parser(
        "upgrade",
        parents=[common],
        help="Open a database with a schema built from SQL scripts, upgrading it",
        description=(
            "The first --script is the root schema (version 1); each further\n"
            "--script is the migration to the next version.\n\n"
            "Examples:\n"
            "  localdb upgrade --db app.db --script v1.sql --script v2.sql\n"
            "  localdb upgrade --config localdb.toml --script v1.sql --backup-dir backups\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    upgrade_parser.add_argument("--db", dest="db_path", default=None, help="Database file")
    upgrade_parser.add_argument(
        "--script",
        dest="scripts",
        action="append",
        required=True,
        help="SQL script file; repeat in version order",
    )
    upgrade_parser.add_argument(
        "--backup-dir", default=None, help="Copy the database here before upgrading"
    )
    upgrade_parser.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to localdb TOML config (default: ./localdb.toml if present).",
    )
    upgrade_parser.set_defaults(handler=_cmd_upgrade)

    return parser


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return 2

    logging_handle = setup_structured_logging(
        LoggingConfig(level="INFO" if namespace.verbose else "WARNING")
    )
    try:
        result = handler(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    finally:
        shutdown_logging(logging_handle)
    return int(result)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_status(args: argparse.Namespace) -> int:
    db_path = _cli_path(args.db_path)
    payload: dict[str, object] = {"command": "status", "db": db_path, "exists": False}

    if Path(db_path).is_file():
        executor = SQLiteExecutor(db_path)
        # Read-only URI so inspecting never creates or modifies the file.
        conn = sqlite3.connect(
            sqlite_uri(assemble_dsn(db_path, {"mode": "ro"})),
            uri=True,
            isolation_level=None,
            check_same_thread=False,
        )
        try:
            conn.row_factory = sqlite3.Row
            handle = ConnectionHandle(conn, executor, threading.RLock())
            store = PragmaVersionStore()
            payload["exists"] = True
            payload["application_id"] = store.get_application_id(handle)
            payload["user_version"] = store.get_user_version(handle)
        finally:
            conn.close()

    if args.json:
        _emit_json(payload)
    else:
        for key in ("db", "exists", "application_id", "user_version"):
            if key in payload:
                print(f"{key}: {payload[key]}")
    return 0


def _cmd_upgrade(args: argparse.Namespace) -> int:
    scripts = [_read_script(raw) for raw in args.scripts]
    schema = SqlSchema(scripts[0])
    for offset, script in enumerate(scripts[1:]):
        schema.define_upgrade(offset + 2, script)

    overrides: dict[str, object] = {}
    if args.db_path is not None:
        overrides["path"] = _cli_path(args.db_path)
    if args.backup_dir is not None:
        overrides["backup_dir"] = _cli_path(args.backup_dir)
    config = load_config(args.config_path, overrides=overrides)

    with open_session_from_config(config, schema) as session:
        result = session.upgrade_result

    payload: dict[str, object] = {"command": "upgrade", "db": config.path, **result.to_dict()}
    if args.json:
        _emit_json(payload)
    elif result.upgraded:
        applied = ", ".join(str(version) for version in result.applied_versions)
        print(
            f"upgraded {config.path} from v{result.previous_version} "
            f"to v{result.current_version} (applied: {applied})"
        )
    else:
        print(f"{config.path} is current at v{result.current_version}")
    return 0


def _read_script(raw: str) -> str:
    path = Path(raw).expanduser()
    try:
        return path.read_text(encoding="utf-8")
    except OSError as exc:
        raise CLIError(f"cannot read script {raw}: {exc}", exit_code=2) from exc


def _cli_path(raw: str) -> str:
    if raw in {"", ":memory:"}:
        return raw
    return Path(raw).expanduser().resolve().as_posix()


def _emit_json(payload: Mapping[str, object]) -> None:
    """Emit a JSON payload to stdout with deterministic formatting."""

    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


__all__ = ["CLIError", "build_parser", "run_cli"]

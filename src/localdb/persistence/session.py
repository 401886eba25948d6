"""Session lifecycle: open, upgrade, use, close.

``open_session`` is the only way to obtain a :class:`Session`. It either
returns a fully upgraded session or raises with the connection closed; a
partially initialized session is never handed out.
"""

from __future__ import annotations

import asyncio
import sqlite3
import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, TypeVar

import structlog

from localdb.constants import (
    DEFAULT_BUSY_RETRY_BACKOFF_MS,
    DEFAULT_BUSY_RETRY_LIMIT,
    DEFAULT_BUSY_TIMEOUT_MS,
    DEFAULT_CACHED_STATEMENTS,
    DEFAULT_JOURNAL_MODE,
    JOURNAL_MODES,
)
from localdb.errors import DatabaseError, HandleClosedError
from localdb.persistence.backup import backup_database
from localdb.persistence.dsn import assemble_dsn, database_file, split_dsn, sqlite_uri
from localdb.persistence.handle import ConnectionHandle, Handle, SQLiteExecutor
from localdb.persistence.schema import Schema, UpgradeResult, upgrade_database
from localdb.persistence.statements import StatementCache
from localdb.persistence.transaction import TransactionRunner
from localdb.persistence.version import PragmaVersionStore, VersionStore

if TYPE_CHECKING:
    from localdb.config.loader import SessionConfig

T = TypeVar("T")

_MEMORY_PATHS = frozenset({"", ":memory:"})


@dataclass(frozen=True, slots=True)
class ConnectionSettings:
    """Connection tuning applied to every session."""

    busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS
    busy_retry_limit: int = DEFAULT_BUSY_RETRY_LIMIT
    busy_retry_backoff_ms: int = DEFAULT_BUSY_RETRY_BACKOFF_MS
    journal_mode: str = DEFAULT_JOURNAL_MODE
    foreign_keys: bool = True
    immediate_transactions: bool = True
    cached_statements: int = DEFAULT_CACHED_STATEMENTS

    def __post_init__(self) -> None:
        if self.busy_timeout_ms < 0:
            raise ValueError("busy_timeout_ms must be >= 0")
        if self.busy_retry_limit < 0:
            raise ValueError("busy_retry_limit must be >= 0")
        if self.busy_retry_backoff_ms < 0:
            raise ValueError("busy_retry_backoff_ms must be >= 0")
        if self.cached_statements < 0:
            raise ValueError("cached_statements must be >= 0")
        if self.journal_mode.upper() not in JOURNAL_MODES:
            allowed = ", ".join(JOURNAL_MODES)
            raise ValueError(f"journal_mode must be one of: {allowed}; got {self.journal_mode!r}")


class Session:
    """An open, upgraded database.

    Instances are created by :func:`open_session`. All work shares one
    connection; transactions and root-handle calls are serialized.
    """

    def __init__(
        self,
        *,
        conn: sqlite3.Connection,
        path: str,
        dsn: str,
        schema: Schema,
        executor: SQLiteExecutor,
        lock: threading.RLock,
        runner: TransactionRunner,
        upgrade_result: UpgradeResult,
        opened: datetime,
        logger: Any,
    ) -> None:
        self._conn = conn
        self._path = path
        self._dsn = dsn
        self._schema = schema
        self._lock = lock
        self._runner = runner
        self._upgrade_result = upgrade_result
        self._opened = opened
        self._logger = logger
        self._root = ConnectionHandle(conn, executor, lock)
        self._statements = StatementCache(self._root.prepare, logger=logger)
        self._close_lock = threading.Lock()
        self._closed = False

    @property
    def opened(self) -> datetime:
        return self._opened

    @property
    def path(self) -> str:
        return self._path

    @property
    def dsn(self) -> str:
        return self._dsn

    @property
    def database_file(self) -> Path | None:
        return database_file(self._dsn)

    @property
    def schema(self) -> Schema:
        return self._schema

    @property
    def upgrade_result(self) -> UpgradeResult:
        return self._upgrade_result

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def statements(self) -> StatementCache:
        self._ensure_open()
        return self._statements

    def handle(self) -> Handle:
        self._ensure_open()
        return self._root

    def wrap_tx(self, work: Callable[[Handle], T]) -> T:
        self._ensure_open()
        return self._runner.wrap_tx(work)

    async def wrap_tx_async(self, work: Callable[[Handle], T]) -> T:
        self._ensure_open()
        return await self._runner.wrap_tx_async(work)

    def close(self) -> None:
        """Close cached statements, then the connection. Safe to call repeatedly."""

        with self._close_lock:
            if self._closed:
                return
            self._closed = True
        try:
            self._statements.close()
        finally:
            with self._lock:
                self._conn.close()
            self._logger.info("session_closed", db_path=self._path)

    def __enter__(self) -> Session:
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        del exc_type, exc, tb
        self.close()

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"<Session {state} {self._path!r} v{self._upgrade_result.current_version}>"

    def _ensure_open(self) -> None:
        if self._closed:
            raise HandleClosedError(f"session for {self._path} is closed")


def open_session(
    path: str | Path,
    schema: Schema,
    *,
    version_store: VersionStore | None = None,
    backup_dir: str | Path | None = None,
    connection_options: Mapping[str, str] | None = None,
    settings: ConnectionSettings | None = None,
    logger: Any | None = None,
) -> Session:
    """Open ``path``, upgrade it to ``schema`` and return the session.

    When ``backup_dir`` is set and the existing database file is older than
    the schema, the file is copied into ``backup_dir`` before the upgrade
    transaction begins; a failed backup aborts the open.
    """

    opened = datetime.now(UTC)
    settings = settings if settings is not None else ConnectionSettings()
    log = logger if logger is not None else structlog.get_logger(__name__)
    store: VersionStore = version_store if version_store is not None else PragmaVersionStore()

    target = _normalize_target(path)
    dsn = assemble_dsn(target, connection_options)
    db_file = database_file(dsn)
    existed = db_file is not None and db_file.is_file()
    if db_file is not None:
        db_file.parent.mkdir(parents=True, exist_ok=True)

    executor = SQLiteExecutor(
        target,
        busy_retry_limit=settings.busy_retry_limit,
        busy_retry_backoff_ms=settings.busy_retry_backoff_ms,
    )
    conn = _connect(dsn, settings, executor)
    try:
        lock = threading.RLock()
        _configure_connection(conn, executor, settings)
        schema_copy = schema.copy()
        runner = TransactionRunner(
            conn,
            executor,
            lock,
            immediate=settings.immediate_transactions,
            logger=log,
        )

        if backup_dir is not None and db_file is not None and existed:
            root = ConnectionHandle(conn, executor, lock)
            stored_version = store.get_user_version(root)
            if stored_version < schema_copy.latest_version:
                root.query_one("PRAGMA wal_checkpoint(TRUNCATE)")
                backup_path = backup_database(db_file, backup_dir, schema_copy.latest_version)
                log.info(
                    "database_backed_up",
                    db_path=str(db_file),
                    backup_path=str(backup_path),
                    from_version=stored_version,
                    target_version=schema_copy.latest_version,
                )

        # Journal mode is switched only after the backup, since it rewrites the file header.
        _configure_journal_mode(conn, executor, settings, in_memory=db_file is None)
        result = upgrade_database(runner, schema_copy, store)
    except BaseException:
        conn.close()
        raise

    if result.upgraded:
        log.info(
            "schema_upgraded",
            db_path=target,
            application_id=result.application_id,
            from_version=result.previous_version,
            to_version=result.current_version,
        )
    else:
        log.debug("schema_upgrade_skipped", db_path=target, version=result.current_version)
    log.info("session_opened", db_path=target, version=result.current_version)

    return Session(
        conn=conn,
        path=target,
        dsn=dsn,
        schema=schema_copy,
        executor=executor,
        lock=lock,
        runner=runner,
        upgrade_result=result,
        opened=opened,
        logger=log,
    )


async def open_session_async(
    path: str | Path,
    schema: Schema,
    *,
    version_store: VersionStore | None = None,
    backup_dir: str | Path | None = None,
    connection_options: Mapping[str, str] | None = None,
    settings: ConnectionSettings | None = None,
    logger: Any | None = None,
) -> Session:
    return await asyncio.to_thread(
        open_session,
        path,
        schema,
        version_store=version_store,
        backup_dir=backup_dir,
        connection_options=connection_options,
        settings=settings,
        logger=logger,
    )


def open_session_from_config(
    config: SessionConfig,
    schema: Schema,
    *,
    version_store: VersionStore | None = None,
    logger: Any | None = None,
) -> Session:
    return open_session(
        config.path,
        schema,
        version_store=version_store,
        backup_dir=config.backup_dir,
        connection_options=config.connection_options,
        settings=config.settings,
        logger=logger,
    )


def _normalize_target(path: str | Path) -> str:
    if not isinstance(path, (str, Path)):
        raise TypeError(f"path must be str or pathlib.Path; got {type(path).__name__}")
    location, query = split_dsn(str(path))
    if location not in _MEMORY_PATHS:
        location = str(Path(location).expanduser())
    return f"{location}?{query}" if query else location


def _connect(
    dsn: str,
    settings: ConnectionSettings,
    executor: SQLiteExecutor,
) -> sqlite3.Connection:
    try:
        conn = sqlite3.connect(
            sqlite_uri(dsn),
            uri=True,
            timeout=settings.busy_timeout_ms / 1000.0,
            isolation_level=None,
            check_same_thread=False,
            cached_statements=settings.cached_statements,
        )
    except sqlite3.Error as exc:
        executor.raise_actionable_error(exc, operation="open database")
        raise
    conn.row_factory = sqlite3.Row
    return conn


def _configure_connection(
    conn: sqlite3.Connection,
    executor: SQLiteExecutor,
    settings: ConnectionSettings,
) -> None:
    foreign_keys = "ON" if settings.foreign_keys else "OFF"
    executor.execute(conn, f"PRAGMA foreign_keys={foreign_keys}", operation="configure foreign_keys")
    executor.execute(
        conn, f"PRAGMA busy_timeout={settings.busy_timeout_ms:d}", operation="configure busy_timeout"
    )


def _configure_journal_mode(
    conn: sqlite3.Connection,
    executor: SQLiteExecutor,
    settings: ConnectionSettings,
    *,
    in_memory: bool,
) -> None:
    requested = settings.journal_mode.upper()
    journal_row = executor.execute(
        conn, f"PRAGMA journal_mode={requested}", operation="configure journal_mode"
    ).fetchone()
    if journal_row is None:
        raise DatabaseError("failed to configure journal_mode")
    journal_mode = str(journal_row[0]).upper()
    accepted = {requested, "MEMORY"} if in_memory else {requested}
    if journal_mode not in accepted:
        raise DatabaseError(f"journal_mode must be {requested}, got {journal_mode!r}")


__all__ = [
    "ConnectionSettings",
    "Session",
    "open_session",
    "open_session_async",
    "open_session_from_config",
]

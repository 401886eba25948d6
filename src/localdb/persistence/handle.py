"""Database handles: the execute/query/prepare capability over one SQLite connection.

Two variants implement :class:`Handle`: :class:`ConnectionHandle`, the
session's root handle, and :class:`TransactionHandle`, which is only valid
inside a single ``wrap_tx`` call. Both delegate statement execution to a
shared :class:`SQLiteExecutor` that owns busy-retry and error classification.
"""

from __future__ import annotations

import re
import sqlite3
import threading
import time
from collections.abc import Callable, Iterable, Iterator, Mapping, Sequence
from contextlib import AbstractContextManager, contextmanager
from typing import Final, Protocol, TypeAlias

from localdb.constants import DEFAULT_BUSY_RETRY_BACKOFF_MS, DEFAULT_BUSY_RETRY_LIMIT
from localdb.errors import (
    DatabaseBusyError,
    DatabaseCorruptionError,
    DatabaseError,
    HandleClosedError,
    StatementError,
)

SQLValue = str | int | float | bytes | None
SQLParams: TypeAlias = Sequence[SQLValue] | Mapping[str, SQLValue]
RowValue = str | int | float | bytes | None
Row = dict[str, RowValue]

_SQLITE_BUSY_CODES: Final[frozenset[int]] = frozenset(
    code
    for code in (
        getattr(sqlite3, "SQLITE_BUSY", None),
        getattr(sqlite3, "SQLITE_BUSY_RECOVERY", None),
        getattr(sqlite3, "SQLITE_BUSY_SNAPSHOT", None),
        getattr(sqlite3, "SQLITE_LOCKED", None),
        getattr(sqlite3, "SQLITE_LOCKED_SHAREDCACHE", None),
    )
    if isinstance(code, int)
)

_SQLITE_CORRUPTION_CODES: Final[frozenset[int]] = frozenset(
    code
    for code in (
        getattr(sqlite3, "SQLITE_CORRUPT", None),
        getattr(sqlite3, "SQLITE_NOTADB", None),
    )
    if isinstance(code, int)
)

_BUSY_SUBSTRINGS: Final[tuple[str, ...]] = (
    "database is locked",
    "database table is locked",
    "database schema is locked",
)

_CORRUPTION_SUBSTRINGS: Final[tuple[str, ...]] = (
    "database disk image is malformed",
    "malformed database",
    "file is not a database",
)

_COMMENT_PATTERN: Final[re.Pattern[str]] = re.compile(r"--[^\n]*|/\*.*?\*/", re.DOTALL)


class Handle(Protocol):
    """Capability set shared by root and transaction-scoped handles."""

    def execute(self, sql: str, params: SQLParams = ()) -> int: ...

    def executemany(self, sql: str, params_seq: Iterable[SQLParams]) -> int: ...

    def execute_script(self, script: str) -> None: ...

    def query_one(self, sql: str, params: SQLParams = ()) -> Row | None: ...

    def query_all(self, sql: str, params: SQLParams = ()) -> list[Row]: ...

    def prepare(self, sql: str) -> PreparedStatement: ...


class _StatementOwner(Protocol):
    def _access(self, *, require_open: bool = True) -> AbstractContextManager[None]: ...


class SQLiteExecutor:
    """Executes statements with bounded busy retries and actionable errors."""

    def __init__(
        self,
        label: str,
        *,
        busy_retry_limit: int = DEFAULT_BUSY_RETRY_LIMIT,
        busy_retry_backoff_ms: int = DEFAULT_BUSY_RETRY_BACKOFF_MS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if busy_retry_limit < 0:
            raise ValueError("busy_retry_limit must be >= 0")
        if busy_retry_backoff_ms < 0:
            raise ValueError("busy_retry_backoff_ms must be >= 0")
        self._label = label
        self._busy_retry_limit = busy_retry_limit
        self._busy_retry_backoff_ms = busy_retry_backoff_ms
        self._sleep = sleep

    @property
    def label(self) -> str:
        return self._label

    def execute(
        self,
        target: sqlite3.Connection | sqlite3.Cursor,
        sql: str,
        params: SQLParams = (),
        *,
        operation: str,
    ) -> sqlite3.Cursor:
        bound = _bind(params)
        for attempt in range(self._busy_retry_limit + 1):
            try:
                return target.execute(sql, bound)
            except sqlite3.IntegrityError:
                raise
            except sqlite3.Error as exc:
                if self.is_busy_error(exc) and attempt < self._busy_retry_limit:
                    self._backoff(attempt)
                    continue
                self.raise_actionable_error(exc, operation=operation)
        raise DatabaseBusyError(f"{operation} exhausted retries unexpectedly")

    def executemany(
        self,
        target: sqlite3.Connection | sqlite3.Cursor,
        sql: str,
        params_list: Sequence[SQLParams],
        *,
        operation: str,
    ) -> sqlite3.Cursor:
        bound = [_bind(params) for params in params_list]
        for attempt in range(self._busy_retry_limit + 1):
            try:
                return target.executemany(sql, bound)
            except sqlite3.IntegrityError:
                raise
            except sqlite3.Error as exc:
                if self.is_busy_error(exc) and attempt < self._busy_retry_limit:
                    self._backoff(attempt)
                    continue
                self.raise_actionable_error(exc, operation=operation)
        raise DatabaseBusyError(f"{operation} exhausted retries unexpectedly")

    def is_busy_error(self, exc: sqlite3.Error) -> bool:
        code = getattr(exc, "sqlite_errorcode", None)
        if isinstance(code, int) and code in _SQLITE_BUSY_CODES:
            return True
        message = str(exc).lower()
        return any(fragment in message for fragment in _BUSY_SUBSTRINGS)

    def is_corruption_error(self, exc: sqlite3.Error) -> bool:
        code = getattr(exc, "sqlite_errorcode", None)
        if isinstance(code, int) and code in _SQLITE_CORRUPTION_CODES:
            return True
        message = str(exc).lower()
        return any(fragment in message for fragment in _CORRUPTION_SUBSTRINGS)

    def raise_actionable_error(self, exc: sqlite3.Error, *, operation: str) -> None:
        if self.is_corruption_error(exc):
            raise DatabaseCorruptionError(
                f"{operation} failed for {self._label}: {exc}. "
                "Restore the most recent pre-upgrade backup if the file is damaged."
            ) from exc
        if self.is_busy_error(exc):
            raise DatabaseBusyError(
                f"{operation} hit SQLITE_BUSY for {self._label} after "
                f"{self._busy_retry_limit + 1} attempt(s): {exc}"
            ) from exc
        raise DatabaseError(f"{operation} failed for {self._label}: {exc}") from exc

    def _backoff(self, attempt: int) -> None:
        self._sleep((self._busy_retry_backoff_ms / 1000.0) * float(2**attempt))


class PreparedStatement:
    """A statement bound to one query text, with its own cursor."""

    def __init__(
        self,
        sql: str,
        *,
        cursor: sqlite3.Cursor,
        executor: SQLiteExecutor,
        owner: _StatementOwner,
    ) -> None:
        self._sql = sql
        self._cursor = cursor
        self._executor = executor
        self._owner = owner
        self._closed = False

    @property
    def sql(self) -> str:
        return self._sql

    @property
    def closed(self) -> bool:
        return self._closed

    def execute(self, params: SQLParams = ()) -> int:
        with self._checkout():
            cursor = self._executor.execute(
                self._cursor, self._sql, params, operation="execute prepared statement"
            )
            return cursor.rowcount

    def executemany(self, params_seq: Iterable[SQLParams]) -> int:
        params_list = list(params_seq)
        with self._checkout():
            cursor = self._executor.executemany(
                self._cursor, self._sql, params_list, operation="execute prepared statement"
            )
            return cursor.rowcount

    def query_one(self, params: SQLParams = ()) -> Row | None:
        with self._checkout():
            cursor = self._executor.execute(
                self._cursor, self._sql, params, operation="query prepared statement"
            )
            row = cursor.fetchone()
            return None if row is None else _row_to_dict(row)

    def query_all(self, params: SQLParams = ()) -> list[Row]:
        with self._checkout():
            cursor = self._executor.execute(
                self._cursor, self._sql, params, operation="query prepared statement"
            )
            return [_row_to_dict(row) for row in cursor.fetchall()]

    def close(self) -> None:
        if self._closed:
            return
        with self._owner._access(require_open=False):
            self._closed = True
            self._cursor.close()

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"<PreparedStatement {state} {self._sql!r}>"

    @contextmanager
    def _checkout(self) -> Iterator[None]:
        if self._closed:
            raise HandleClosedError(f"prepared statement is closed: {self._sql!r}")
        with self._owner._access():
            yield


class ConnectionHandle:
    """Root handle; every call is serialized with open transactions."""

    def __init__(
        self,
        conn: sqlite3.Connection,
        executor: SQLiteExecutor,
        lock: threading.RLock,
    ) -> None:
        self._conn = conn
        self._executor = executor
        self._lock = lock

    def execute(self, sql: str, params: SQLParams = ()) -> int:
        with self._access():
            return self._executor.execute(
                self._conn, sql, params, operation="execute statement"
            ).rowcount

    def executemany(self, sql: str, params_seq: Iterable[SQLParams]) -> int:
        params_list = list(params_seq)
        with self._access():
            return self._executor.executemany(
                self._conn, sql, params_list, operation="execute many"
            ).rowcount

    def execute_script(self, script: str) -> None:
        with self._access():
            _run_script(self._conn, self._executor, script)

    def query_one(self, sql: str, params: SQLParams = ()) -> Row | None:
        with self._access():
            row = self._executor.execute(self._conn, sql, params, operation="query one").fetchone()
            return None if row is None else _row_to_dict(row)

    def query_all(self, sql: str, params: SQLParams = ()) -> list[Row]:
        with self._access():
            rows = self._executor.execute(self._conn, sql, params, operation="query all").fetchall()
            return [_row_to_dict(row) for row in rows]

    def prepare(self, sql: str) -> PreparedStatement:
        validate_statement(sql)
        with self._access():
            cursor = self._conn.cursor()
        return PreparedStatement(sql, cursor=cursor, executor=self._executor, owner=self)

    @contextmanager
    def _access(self, *, require_open: bool = True) -> Iterator[None]:
        del require_open
        with self._lock:
            yield


class TransactionHandle:
    """Handle scoped to one transaction; unusable once the transaction ends."""

    def __init__(self, conn: sqlite3.Connection, executor: SQLiteExecutor) -> None:
        self._conn = conn
        self._executor = executor
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def execute(self, sql: str, params: SQLParams = ()) -> int:
        with self._access():
            return self._executor.execute(
                self._conn, sql, params, operation="execute statement"
            ).rowcount

    def executemany(self, sql: str, params_seq: Iterable[SQLParams]) -> int:
        params_list = list(params_seq)
        with self._access():
            return self._executor.executemany(
                self._conn, sql, params_list, operation="execute many"
            ).rowcount

    def execute_script(self, script: str) -> None:
        with self._access():
            _run_script(self._conn, self._executor, script)

    def query_one(self, sql: str, params: SQLParams = ()) -> Row | None:
        with self._access():
            row = self._executor.execute(self._conn, sql, params, operation="query one").fetchone()
            return None if row is None else _row_to_dict(row)

    def query_all(self, sql: str, params: SQLParams = ()) -> list[Row]:
        with self._access():
            rows = self._executor.execute(self._conn, sql, params, operation="query all").fetchall()
            return [_row_to_dict(row) for row in rows]

    def prepare(self, sql: str) -> PreparedStatement:
        validate_statement(sql)
        with self._access():
            cursor = self._conn.cursor()
        return PreparedStatement(sql, cursor=cursor, executor=self._executor, owner=self)

    def invalidate(self) -> None:
        self._active = False

    @contextmanager
    def _access(self, *, require_open: bool = True) -> Iterator[None]:
        if require_open and not self._active:
            raise HandleClosedError("transaction handle used after its transaction ended")
        yield


def split_statements(script: str) -> list[str]:
    """Split ``script`` into complete SQL statements.

    Statement boundaries are found with ``sqlite3.complete_statement`` so that
    semicolons in string literals and trigger bodies do not split a statement.
    Blank and comment-only fragments are dropped.
    """

    statements: list[str] = []
    pending = ""
    remaining = script
    while remaining:
        head, separator, remaining = remaining.partition(";")
        pending += head + separator
        if separator and sqlite3.complete_statement(pending):
            if not _is_blank(pending):
                statements.append(pending.strip())
            pending = ""
    if not _is_blank(pending):
        statements.append(pending.strip())
    return statements


def validate_statement(sql: str) -> None:
    """Reject empty text and text containing more than one statement."""

    statements = split_statements(sql)
    if not statements:
        raise StatementError("cannot prepare an empty statement")
    if len(statements) > 1:
        raise StatementError(
            f"cannot prepare {len(statements)} statements at once; prepare them individually"
        )


def _run_script(conn: sqlite3.Connection, executor: SQLiteExecutor, script: str) -> None:
    # Cursor.executescript may COMMIT a pending transaction, so statements run one by one.
    for statement in split_statements(script):
        executor.execute(conn, statement, (), operation="execute script")


def _is_blank(sql: str) -> bool:
    return not _COMMENT_PATTERN.sub("", sql).strip().strip(";").strip()


def _bind(params: SQLParams) -> SQLParams:
    if isinstance(params, Mapping):
        return params
    return tuple(params)


def _row_to_dict(row: sqlite3.Row) -> Row:
    raw = dict(row)
    return {str(key): raw[key] for key in raw}


__all__ = [
    "ConnectionHandle",
    "Handle",
    "PreparedStatement",
    "Row",
    "RowValue",
    "SQLParams",
    "SQLValue",
    "SQLiteExecutor",
    "TransactionHandle",
    "split_statements",
    "validate_statement",
]

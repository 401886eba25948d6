"""Error taxonomy for localdb.

Ordinary failures derive from :class:`LocalDBError` and are safe to catch and
handle. Violated internal invariants derive from :class:`LocalDBFault`, which is
a ``BaseException`` so that ``except Exception`` blocks do not swallow them.
"""

from __future__ import annotations

import sqlite3


class LocalDBError(RuntimeError):
    """Base class for recoverable localdb errors."""


class DatabaseError(LocalDBError):
    """Raised when the SQLite engine rejects an operation."""


class DatabaseBusyError(DatabaseError):
    """Raised when bounded busy retries are exhausted."""


class DatabaseCorruptionError(DatabaseError):
    """Raised when SQLite reports possible corruption."""


class HandleClosedError(LocalDBError):
    """Raised when a transaction handle or statement is used after it ended."""


class StatementError(LocalDBError):
    """Raised when query text cannot be prepared as a single statement."""


class ConnectionTargetError(LocalDBError, ValueError):
    """Raised when the database path or connection options are malformed."""


class BackupError(LocalDBError):
    """Raised when the pre-upgrade backup cannot be written."""


class SchemaError(LocalDBError):
    """Base class for failures of the open-time schema upgrade."""


class ApplicationIDMismatchError(SchemaError):
    """Raised when the database belongs to a different schema family."""

    def __init__(self, stored: int, expected: int) -> None:
        self.stored = stored
        self.expected = expected
        super().__init__(f"application_id ({stored}) does not match schema ID ({expected})")


class SchemaVersionTooNewError(SchemaError):
    """Raised when the database was written by a newer schema."""

    def __init__(self, stored: int, latest: int) -> None:
        self.stored = stored
        self.latest = latest
        super().__init__(
            f"user_version ({stored}) is higher than the schema version ({latest})"
        )


class MigrationError(SchemaError):
    """Raised when a migration script fails.

    ``__cause__`` holds the error the script raised and ``engine_error`` the
    underlying ``sqlite3.Error``, if there is one.
    """

    def __init__(self, version: int, cause: BaseException) -> None:
        self.version = version
        self.engine_error = _find_engine_error(cause)
        super().__init__(f"migration to version {version} failed: {cause}")


def _find_engine_error(exc: BaseException | None) -> sqlite3.Error | None:
    seen: set[int] = set()
    while exc is not None and id(exc) not in seen:
        if isinstance(exc, sqlite3.Error):
            return exc
        seen.add(id(exc))
        exc = exc.__cause__
    return None


class LocalDBFault(BaseException):
    """Unrecoverable program fault: an internal invariant no longer holds."""


class TransactionFault(LocalDBFault):
    """Raised when a transaction could not be finalized exactly once."""


class SchemaDefinitionFault(LocalDBFault):
    """Raised when schema versions are registered out of order."""


__all__ = [
    "ApplicationIDMismatchError",
    "BackupError",
    "ConnectionTargetError",
    "DatabaseBusyError",
    "DatabaseCorruptionError",
    "DatabaseError",
    "HandleClosedError",
    "LocalDBError",
    "LocalDBFault",
    "MigrationError",
    "SchemaDefinitionFault",
    "SchemaError",
    "SchemaVersionTooNewError",
    "StatementError",
    "TransactionFault",
]

"""Persistence layer: sessions, schema upgrades, transactions and statement caching."""

from localdb.persistence.backup import backup_database, backup_filename
from localdb.persistence.dsn import assemble_dsn, database_file, split_dsn, sqlite_uri
from localdb.persistence.handle import (
    ConnectionHandle,
    Handle,
    PreparedStatement,
    Row,
    SQLiteExecutor,
    SQLParams,
    TransactionHandle,
    split_statements,
)
from localdb.persistence.schema import Schema, SqlSchema, UpgradeResult, upgrade_database
from localdb.persistence.session import (
    ConnectionSettings,
    Session,
    open_session,
    open_session_async,
    open_session_from_config,
)
from localdb.persistence.statements import CachedStatement, StatementCache
from localdb.persistence.transaction import TransactionRunner
from localdb.persistence.version import (
    FallbackVersionStore,
    PragmaVersionStore,
    VersionReader,
    VersionStore,
)

__all__ = [
    "CachedStatement",
    "ConnectionHandle",
    "ConnectionSettings",
    "FallbackVersionStore",
    "Handle",
    "PragmaVersionStore",
    "PreparedStatement",
    "Row",
    "SQLParams",
    "SQLiteExecutor",
    "Schema",
    "Session",
    "SqlSchema",
    "StatementCache",
    "TransactionHandle",
    "TransactionRunner",
    "UpgradeResult",
    "VersionReader",
    "VersionStore",
    "assemble_dsn",
    "backup_database",
    "backup_filename",
    "database_file",
    "open_session",
    "open_session_async",
    "open_session_from_config",
    "split_dsn",
    "split_statements",
    "sqlite_uri",
    "upgrade_database",
]

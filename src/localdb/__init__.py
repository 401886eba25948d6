"""
localdb — local, file-backed SQLite sessions with versioned schemas.

Purpose
- Open a database, verify it belongs to the expected schema family, and upgrade
  it atomically to the latest schema version before handing out a session.
- Run units of work in transactions that always end exactly once.
- Cache prepared statements by query text across threads.

Functional requirements
- Must not have side effects at import time (no config loading, no logging init).
"""

from localdb.errors import (
    ApplicationIDMismatchError,
    LocalDBError,
    LocalDBFault,
    MigrationError,
    SchemaError,
    SchemaVersionTooNewError,
    TransactionFault,
)
from localdb.persistence import (
    ConnectionSettings,
    FallbackVersionStore,
    Handle,
    PragmaVersionStore,
    Session,
    SqlSchema,
    StatementCache,
    UpgradeResult,
    open_session,
    open_session_async,
    open_session_from_config,
)

__version__ = "0.1.0"

__all__ = [
    "ApplicationIDMismatchError",
    "ConnectionSettings",
    "FallbackVersionStore",
    "Handle",
    "LocalDBError",
    "LocalDBFault",
    "MigrationError",
    "PragmaVersionStore",
    "SchemaError",
    "SchemaVersionTooNewError",
    "Session",
    "SqlSchema",
    "StatementCache",
    "TransactionFault",
    "UpgradeResult",
    "__version__",
    "open_session",
    "open_session_async",
    "open_session_from_config",
]

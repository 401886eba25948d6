"""Stable constants shared across localdb modules."""

from __future__ import annotations

from typing import Final

# Connection defaults.
DEFAULT_BUSY_TIMEOUT_MS: Final[int] = 5_000
DEFAULT_BUSY_RETRY_LIMIT: Final[int] = 4
DEFAULT_BUSY_RETRY_BACKOFF_MS: Final[int] = 25
DEFAULT_JOURNAL_MODE: Final[str] = "WAL"
DEFAULT_CACHED_STATEMENTS: Final[int] = 256

JOURNAL_MODES: Final[tuple[str, ...]] = ("DELETE", "TRUNCATE", "PERSIST", "MEMORY", "WAL", "OFF")

# Root schema script is always version 1.
ROOT_SCHEMA_VERSION: Final[int] = 1

INT32_MIN: Final[int] = -(2**31)
INT32_MAX: Final[int] = 2**31 - 1

# Configuration sources.
DEFAULT_CONFIG_FILE: Final[str] = "localdb.toml"
CONFIG_TABLE: Final[str] = "localdb"
ENV_PREFIX: Final[str] = "LOCALDB_"

__all__ = [
    "CONFIG_TABLE",
    "DEFAULT_BUSY_RETRY_BACKOFF_MS",
    "DEFAULT_BUSY_RETRY_LIMIT",
    "DEFAULT_BUSY_TIMEOUT_MS",
    "DEFAULT_CACHED_STATEMENTS",
    "DEFAULT_CONFIG_FILE",
    "DEFAULT_JOURNAL_MODE",
    "ENV_PREFIX",
    "INT32_MAX",
    "INT32_MIN",
    "JOURNAL_MODES",
    "ROOT_SCHEMA_VERSION",
]

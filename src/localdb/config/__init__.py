"""
localdb config package public API.

File: src/localdb/config/__init__.py

Purpose
- Export config loading entrypoints and the load error type.

Functional requirements
- Support loading from ``localdb.toml`` + ``LOCALDB_`` env overrides.
"""

from localdb.config.loader import (
    ConfigLoadError,
    SessionConfig,
    dump_effective_config,
    load_config,
)

__all__ = [
    "ConfigLoadError",
    "SessionConfig",
    "dump_effective_config",
    "load_config",
]

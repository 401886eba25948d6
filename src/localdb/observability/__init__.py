"""Structured logging for localdb processes."""

from localdb.observability.logging import (
    LoggingConfig,
    StructuredLoggingHandle,
    setup_structured_logging,
    shutdown_logging,
)

__all__ = [
    "LoggingConfig",
    "StructuredLoggingHandle",
    "setup_structured_logging",
    "shutdown_logging",
]

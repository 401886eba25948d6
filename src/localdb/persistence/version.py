"""Persistent schema identity and version storage.

The default store keeps both values in the SQLite file header
(``PRAGMA application_id`` and ``PRAGMA user_version``), so no bookkeeping
table is needed. :class:`FallbackVersionStore` lets a database that predates
header-based versioning be adopted once from a legacy source.
"""

from __future__ import annotations

import threading
from typing import Any, Protocol

import structlog

from localdb.constants import INT32_MAX, INT32_MIN
from localdb.persistence.handle import Handle


class VersionReader(Protocol):
    def get_application_id(self, handle: Handle) -> int: ...

    def get_user_version(self, handle: Handle) -> int: ...


class VersionStore(VersionReader, Protocol):
    def set_application_id(self, handle: Handle, value: int) -> None: ...

    def set_user_version(self, handle: Handle, value: int) -> None: ...


class PragmaVersionStore:
    """Version store backed by the ``application_id``/``user_version`` header fields."""

    def get_application_id(self, handle: Handle) -> int:
        return _read_pragma(handle, "application_id")

    def get_user_version(self, handle: Handle) -> int:
        return _read_pragma(handle, "user_version")

    def set_application_id(self, handle: Handle, value: int) -> None:
        _write_pragma(handle, "application_id", value)

    def set_user_version(self, handle: Handle, value: int) -> None:
        _write_pragma(handle, "user_version", value)

    def __repr__(self) -> str:
        return "PragmaVersionStore()"


class FallbackVersionStore:
    """Reads from ``primary`` and consults ``fallback`` only while the primary reports 0.

    Writes always go to ``primary``. The fallback's answer is memoized per
    field, so a legacy source is read at most once per store instance no matter
    how many times the value is requested.
    """

    def __init__(
        self,
        primary: VersionStore,
        fallback: VersionReader,
        *,
        logger: Any | None = None,
    ) -> None:
        self._primary = primary
        self._fallback = fallback
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._lock = threading.Lock()
        self._fallback_application_id: int | None = None
        self._fallback_user_version: int | None = None

    @property
    def primary(self) -> VersionStore:
        return self._primary

    @property
    def fallback(self) -> VersionReader:
        return self._fallback

    def get_application_id(self, handle: Handle) -> int:
        value = self._primary.get_application_id(handle)
        if value != 0:
            return value
        with self._lock:
            if self._fallback_application_id is None:
                self._fallback_application_id = self._fallback.get_application_id(handle)
                self._logger.info(
                    "fallback_version_consulted",
                    field="application_id",
                    value=self._fallback_application_id,
                )
            return self._fallback_application_id

    def get_user_version(self, handle: Handle) -> int:
        value = self._primary.get_user_version(handle)
        if value != 0:
            return value
        with self._lock:
            if self._fallback_user_version is None:
                self._fallback_user_version = self._fallback.get_user_version(handle)
                self._logger.info(
                    "fallback_version_consulted",
                    field="user_version",
                    value=self._fallback_user_version,
                )
            return self._fallback_user_version

    def set_application_id(self, handle: Handle, value: int) -> None:
        self._primary.set_application_id(handle, value)

    def set_user_version(self, handle: Handle, value: int) -> None:
        self._primary.set_user_version(handle, value)


def _read_pragma(handle: Handle, pragma: str) -> int:
    row = handle.query_one(f"PRAGMA {pragma}")
    if row is None:
        return 0
    value = row.get(pragma)
    if not isinstance(value, int):
        raise TypeError(f"PRAGMA {pragma} returned a non-integer value: {value!r}")
    return value


def _write_pragma(handle: Handle, pragma: str, value: int) -> None:
    # PRAGMA arguments cannot be bound as parameters; the value is validated instead.
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"{pragma} must be an int")
    if value < INT32_MIN or value > INT32_MAX:
        raise ValueError(f"{pragma} must fit in a signed 32-bit integer: {value}")
    handle.execute(f"PRAGMA {pragma} = {value:d}")


__all__ = [
    "FallbackVersionStore",
    "PragmaVersionStore",
    "VersionReader",
    "VersionStore",
]

"""Shared deterministic fixtures and builders for persistence tests."""

from __future__ import annotations

import sqlite3
import threading
from pathlib import Path
from typing import Final

from localdb.persistence.handle import ConnectionHandle, Handle, SQLiteExecutor
from localdb.persistence.schema import SqlSchema

ROOT_SCRIPT: Final[str] = """
CREATE TABLE items (
    id INTEGER PRIMARY KEY,
    name TEXT NOT NULL UNIQUE
);
"""

V2_SCRIPT: Final[str] = """
ALTER TABLE items ADD COLUMN note TEXT;
CREATE INDEX idx_items_note ON items(note);
"""

V3_SCRIPT: Final[str] = """
CREATE TABLE tags (
    item_id INTEGER NOT NULL REFERENCES items(id),
    tag TEXT NOT NULL -- free-form; may contain ';'
);
INSERT INTO items(name, note) VALUES ('seeded; by v3', 'v3');
"""


def make_schema(latest_version: int = 1) -> SqlSchema:
    schema = SqlSchema(ROOT_SCRIPT)
    for version, script in ((2, V2_SCRIPT), (3, V3_SCRIPT)):
        if version > latest_version:
            break
        schema.define_upgrade(version, script)
    return schema


def read_header(path: Path) -> tuple[int, int]:
    """Return ``(application_id, user_version)`` read with a fresh connection."""

    conn = sqlite3.connect(path)
    try:
        application_id = conn.execute("PRAGMA application_id").fetchone()[0]
        user_version = conn.execute("PRAGMA user_version").fetchone()[0]
    finally:
        conn.close()
    return int(application_id), int(user_version)


def table_names(path: Path) -> set[str]:
    conn = sqlite3.connect(path)
    try:
        rows = conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'").fetchall()
    finally:
        conn.close()
    return {str(row[0]) for row in rows}


def raw_connection(path: Path) -> sqlite3.Connection:
    conn = sqlite3.connect(path, isolation_level=None, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    return conn


def raw_handle(conn: sqlite3.Connection, label: str = "test.db") -> Handle:
    return ConnectionHandle(conn, SQLiteExecutor(label), threading.RLock())


class CountingReader:
    """Legacy version source that records how often each field is read."""

    def __init__(self, *, application_id: int = 0, user_version: int = 0) -> None:
        self.application_id = application_id
        self.user_version = user_version
        self.application_id_reads = 0
        self.user_version_reads = 0
        self._lock = threading.Lock()

    def get_application_id(self, handle: Handle) -> int:
        del handle
        with self._lock:
            self.application_id_reads += 1
        return self.application_id

    def get_user_version(self, handle: Handle) -> int:
        del handle
        with self._lock:
            self.user_version_reads += 1
        return self.user_version


class RecordingLogger:
    """Minimal structlog-compatible logger capturing ``(level, event, fields)``."""

    def __init__(self) -> None:
        self.events: list[tuple[str, str, dict[str, object]]] = []
        self._lock = threading.Lock()

    def _record(self, level: str, event: str, **fields: object) -> None:
        with self._lock:
            self.events.append((level, event, fields))

    def debug(self, event: str, **fields: object) -> None:
        self._record("debug", event, **fields)

    def info(self, event: str, **fields: object) -> None:
        self._record("info", event, **fields)

    def warning(self, event: str, **fields: object) -> None:
        self._record("warning", event, **fields)

    def names(self) -> list[str]:
        with self._lock:
            return [event for _, event, _ in self.events]

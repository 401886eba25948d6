"""Concurrent cache of prepared statements keyed by query text."""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterable
from typing import Any

import structlog

from localdb.persistence.handle import PreparedStatement, Row, SQLParams

StatementPreparer = Callable[[str], PreparedStatement]


class CachedStatement:
    """A prepared statement owned by a :class:`StatementCache` entry.

    Closing it removes its own cache entry (only if that entry still refers to
    this object) and then closes the underlying statement. Both steps happen at
    most once; later ``close`` calls are no-ops.
    """

    def __init__(self, cache: StatementCache, statement: PreparedStatement) -> None:
        self._cache = cache
        self._statement = statement
        self._close_lock = threading.Lock()
        self._close_started = False

    @property
    def sql(self) -> str:
        return self._statement.sql

    @property
    def closed(self) -> bool:
        return self._statement.closed

    def execute(self, params: SQLParams = ()) -> int:
        return self._statement.execute(params)

    def executemany(self, params_seq: Iterable[SQLParams]) -> int:
        return self._statement.executemany(params_seq)

    def query_one(self, params: SQLParams = ()) -> Row | None:
        return self._statement.query_one(params)

    def query_all(self, params: SQLParams = ()) -> list[Row]:
        return self._statement.query_all(params)

    def close(self) -> None:
        with self._close_lock:
            if self._close_started:
                return
            self._close_started = True
            self._cache._discard(self.sql, self)
            self._statement.close()

    def __repr__(self) -> str:
        return f"<CachedStatement {self.sql!r}>"


class StatementCache:
    """Returns the same :class:`CachedStatement` for repeated identical query text.

    Preparation happens outside the map lock, so concurrent misses on the same
    text may each prepare a statement; only the first one inserted is kept and
    the others are closed and discarded. Calling
    :meth:`prepare` while :meth:`close` runs is undefined behavior.
    """

    def __init__(self, preparer: StatementPreparer, *, logger: Any | None = None) -> None:
        self._preparer = preparer
        self._entries: dict[str, CachedStatement] = {}
        self._lock = threading.Lock()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def prepare(self, query: str) -> CachedStatement:
        with self._lock:
            cached = self._entries.get(query)
        if cached is not None:
            return cached

        fresh = CachedStatement(self, self._preparer(query))
        with self._lock:
            winner = self._entries.setdefault(query, fresh)
        if winner is not fresh:
            self._logger.debug("statement_cache_race_lost", query=query)
            fresh.close()
        return winner

    def close(self) -> None:
        """Close and evict every cached statement, raising collected errors together."""

        with self._lock:
            entries = list(self._entries.items())
            self._entries.clear()

        errors: list[Exception] = []
        for query, statement in entries:
            try:
                statement.close()
            except Exception as exc:
                exc.add_note(f"while closing cached statement {query!r}")
                errors.append(exc)
        if errors:
            raise ExceptionGroup("failed to close cached statements", errors)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, query: object) -> bool:
        with self._lock:
            return query in self._entries

    def _discard(self, query: str, statement: CachedStatement) -> None:
        with self._lock:
            if self._entries.get(query) is statement:
                del self._entries[query]


__all__ = ["CachedStatement", "StatementCache", "StatementPreparer"]

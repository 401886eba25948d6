"""Statement cache identity, eviction, race, and close-aggregation tests."""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING

import pytest

from localdb.persistence.session import open_session
from localdb.persistence.statements import CachedStatement, StatementCache

from . import RecordingLogger, make_schema

if TYPE_CHECKING:
    from pathlib import Path


class _FakeStatement:
    def __init__(self, sql: str, *, fail_close: bool = False) -> None:
        self.sql = sql
        self.close_calls = 0
        self._fail_close = fail_close

    @property
    def closed(self) -> bool:
        return self.close_calls > 0

    def close(self) -> None:
        self.close_calls += 1
        if self._fail_close:
            raise OSError(f"cannot close {self.sql}")


class _FakePreparer:
    def __init__(self, *, fail_close_for: frozenset[str] = frozenset()) -> None:
        self.prepared: list[_FakeStatement] = []
        self._fail_close_for = fail_close_for
        self._lock = threading.Lock()

    def __call__(self, sql: str) -> _FakeStatement:
        statement = _FakeStatement(sql, fail_close=sql in self._fail_close_for)
        with self._lock:
            self.prepared.append(statement)
        return statement


def _cache(preparer: _FakePreparer, logger: RecordingLogger | None = None) -> StatementCache:
    return StatementCache(preparer, logger=logger or RecordingLogger())  # type: ignore[arg-type]


def test_same_text_returns_identical_statement() -> None:
    preparer = _FakePreparer()
    cache = _cache(preparer)

    first = cache.prepare("SELECT 1")
    second = cache.prepare("SELECT 1")
    other = cache.prepare("SELECT 2")

    assert first is second
    assert other is not first
    assert len(preparer.prepared) == 2
    assert len(cache) == 2
    assert "SELECT 1" in cache


def test_closed_statement_is_replaced_with_fresh_one() -> None:
    preparer = _FakePreparer()
    cache = _cache(preparer)

    first = cache.prepare("SELECT 1")
    first.close()
    first.close()

    assert "SELECT 1" not in cache
    assert preparer.prepared[0].close_calls == 1

    fresh = cache.prepare("SELECT 1")
    assert fresh is not first
    assert cache.prepare("SELECT 1") is fresh


def test_stale_close_does_not_evict_newer_entry() -> None:
    preparer = _FakePreparer()
    cache = _cache(preparer)

    stale = cache.prepare("SELECT 1")
    stale.close()
    fresh = cache.prepare("SELECT 1")
    stale.close()

    assert cache.prepare("SELECT 1") is fresh
    assert preparer.prepared[1].close_calls == 0


def test_cache_close_closes_everything_and_stays_usable() -> None:
    preparer = _FakePreparer()
    cache = _cache(preparer)
    before = [cache.prepare(f"SELECT {value}") for value in range(3)]

    cache.close()

    assert len(cache) == 0
    assert all(statement.close_calls == 1 for statement in preparer.prepared)
    after = cache.prepare("SELECT 0")
    assert after is not before[0]
    assert len(cache) == 1


def test_concurrent_miss_keeps_one_winner_and_closes_loser() -> None:
    barrier = threading.Barrier(2, timeout=5.0)
    preparer = _FakePreparer()

    def racing_preparer(sql: str) -> _FakeStatement:
        statement = preparer(sql)
        barrier.wait()
        return statement

    logger = RecordingLogger()
    cache = StatementCache(racing_preparer, logger=logger)  # type: ignore[arg-type]
    results: list[CachedStatement] = []
    results_lock = threading.Lock()

    def worker() -> None:
        statement = cache.prepare("SELECT race")
        with results_lock:
            results.append(statement)

    threads = [threading.Thread(target=worker) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=5.0)

    assert len(results) == 2
    assert results[0] is results[1]
    assert len(preparer.prepared) == 2
    assert sorted(statement.close_calls for statement in preparer.prepared) == [0, 1]
    assert "SELECT race" in cache
    assert logger.names() == ["statement_cache_race_lost"]


def test_many_threads_share_one_statement_per_text() -> None:
    preparer = _FakePreparer()
    cache = _cache(preparer)
    queries = [f"SELECT {value}" for value in range(4)]
    seen: dict[str, set[int]] = {query: set() for query in queries}
    seen_lock = threading.Lock()

    def worker() -> None:
        for _ in range(50):
            for query in queries:
                statement = cache.prepare(query)
                with seen_lock:
                    seen[query].add(id(statement))

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10.0)

    assert all(len(ids) == 1 for ids in seen.values())
    assert len(cache) == len(queries)


def test_cache_close_collects_errors_into_exception_group() -> None:
    preparer = _FakePreparer(fail_close_for=frozenset({"SELECT bad"}))
    cache = _cache(preparer)
    cache.prepare("SELECT good")
    cache.prepare("SELECT bad")

    with pytest.raises(ExceptionGroup) as exc_info:
        cache.close()

    assert len(exc_info.value.exceptions) == 1
    assert isinstance(exc_info.value.exceptions[0], OSError)
    assert all(statement.close_calls == 1 for statement in preparer.prepared)
    assert len(cache) == 0


def test_session_statements_run_against_database(tmp_path: Path) -> None:
    with open_session(tmp_path / "cache.db", make_schema(1)) as session:
        insert = session.statements.prepare("INSERT INTO items(name) VALUES (?)")
        select = session.statements.prepare("SELECT name FROM items ORDER BY name")

        assert insert.executemany([("b",), ("a",)]) == 2
        assert session.statements.prepare("INSERT INTO items(name) VALUES (?)") is insert
        assert select.query_all() == [{"name": "a"}, {"name": "b"}]

        def work(tx: object) -> None:
            insert.execute(("c",))
            raise RuntimeError("discard")

        with pytest.raises(RuntimeError):
            session.wrap_tx(work)

        assert [row["name"] for row in select.query_all()] == ["a", "b"]

    assert insert.closed is True
    assert select.closed is True

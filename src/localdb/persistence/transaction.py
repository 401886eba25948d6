"""Transaction-safety wrapper around a unit of work."""

from __future__ import annotations

import asyncio
import sqlite3
import threading
from collections.abc import Callable
from typing import Any, TypeVar

import structlog

from localdb.errors import DatabaseError, TransactionFault
from localdb.persistence.handle import Handle, SQLiteExecutor, TransactionHandle

T = TypeVar("T")


class TransactionRunner:
    """Runs units of work inside a transaction that is always finalized exactly once.

    The runner holds the connection lock for the whole transaction, so root
    handle calls from other threads wait until it commits or rolls back.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        executor: SQLiteExecutor,
        lock: threading.RLock,
        *,
        immediate: bool = True,
        logger: Any | None = None,
    ) -> None:
        self._conn = conn
        self._executor = executor
        self._lock = lock
        self._immediate = immediate
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def wrap_tx(self, work: Callable[[Handle], T]) -> T:
        """Run ``work`` in a transaction.

        Commit when ``work`` returns; roll back and re-raise the same exception
        when it raises. A transaction that cannot be finalized exactly once
        raises :class:`~localdb.errors.TransactionFault`.
        """

        with self._lock:
            if self._conn.in_transaction:
                raise DatabaseError(
                    f"cannot begin a transaction for {self._executor.label}: "
                    "another transaction is already open on this connection"
                )
            begin_sql = "BEGIN IMMEDIATE" if self._immediate else "BEGIN"
            self._executor.execute(self._conn, begin_sql, (), operation="begin transaction")

            handle = TransactionHandle(self._conn, self._executor)
            try:
                result = work(handle)
            except BaseException as exc:
                handle.invalidate()
                self._rollback(exc)
                raise
            handle.invalidate()
            self._commit()
            return result

    async def wrap_tx_async(self, work: Callable[[Handle], T]) -> T:
        return await asyncio.to_thread(self.wrap_tx, work)

    def _rollback(self, cause: BaseException) -> None:
        if not self._conn.in_transaction:
            raise TransactionFault(
                f"transaction on {self._executor.label} was ended by the unit of work "
                f"before it raised {type(cause).__name__}"
            )
        try:
            self._executor.execute(self._conn, "ROLLBACK", (), operation="rollback transaction")
        except BaseException as rollback_exc:
            raise TransactionFault(
                f"rollback failed on {self._executor.label}: {rollback_exc}"
            ) from rollback_exc
        self._logger.info(
            "transaction_rolled_back",
            db_path=self._executor.label,
            error_type=type(cause).__name__,
        )

    def _commit(self) -> None:
        if not self._conn.in_transaction:
            raise TransactionFault(
                f"transaction on {self._executor.label} was ended by the unit of work"
            )
        try:
            self._executor.execute(self._conn, "COMMIT", (), operation="commit transaction")
        except BaseException as exc:
            self._logger.warning(
                "transaction_commit_failed",
                db_path=self._executor.label,
                error=str(exc),
            )
            if self._conn.in_transaction:
                try:
                    self._executor.execute(
                        self._conn, "ROLLBACK", (), operation="rollback failed commit"
                    )
                except BaseException as rollback_exc:
                    raise TransactionFault(
                        f"rollback after failed commit on {self._executor.label}: {rollback_exc}"
                    ) from rollback_exc
            raise


__all__ = ["TransactionRunner"]

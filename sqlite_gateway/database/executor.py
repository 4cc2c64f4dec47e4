"""Database layer — Statement executor.

Runs already-validated statements on pooled handles.  Each call borrows one
handle, holds its lock for the duration and wraps the work in a single
transaction.  Engine failures surface as ``ExecutionError`` carrying the
engine's message unchanged; nothing is retried.
"""

from __future__ import annotations

import sqlite3
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Sequence

import sqlalchemy as sa

from sqlite_gateway.database.pool import ConnectionPool
from sqlite_gateway.exceptions import ExecutionError
from sqlite_gateway.logging import get_logger
from sqlite_gateway.security.validator import (
    changes_connection_state,
    hash_statement,
    statement_kind,
)

log = get_logger(__name__)


@dataclass
class QueryResult:
    success: bool
    execution_time_ms: float
    rows: list[dict[str, Any]] | None = None
    rows_affected: int | None = None
    last_insert_rowid: int | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "success": self.success,
            "execution_time_ms": self.execution_time_ms,
        }
        if self.rows is not None:
            data["rows"] = self.rows
            data["row_count"] = len(self.rows)
        if self.rows_affected is not None:
            data["rows_affected"] = self.rows_affected
        if self.last_insert_rowid is not None:
            data["last_insert_rowid"] = self.last_insert_rowid
        return data


@dataclass
class TransactionResult:
    success: bool
    execution_time_ms: float
    results: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "execution_time_ms": self.execution_time_ms,
            "statements_executed": len(self.results),
            "results": self.results,
        }


def engine_message(exc: sa.exc.StatementError) -> str:
    """The DBAPI error text without SQLAlchemy's statement/parameter decoration."""
    return str(exc.orig) if exc.orig is not None else str(exc)


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 3)


def run_statement(
    conn: sa.Connection, statement: str, parameters: Sequence[Any] = ()
) -> dict[str, Any]:
    """Execute one statement on *conn*, inside the caller's transaction."""
    result = conn.exec_driver_sql(statement, tuple(parameters) if parameters else None)
    if result.returns_rows:
        return {"rows": [dict(row) for row in result.mappings().all()]}
    out: dict[str, Any] = {"rows_affected": result.rowcount}
    if statement_kind(statement) == "insert":
        out["last_insert_rowid"] = result.lastrowid
    return out


class Executor:
    def __init__(self, pool: ConnectionPool) -> None:
        self._pool = pool

    def execute(self, statement: str, parameters: Sequence[Any] = ()) -> QueryResult:
        started = time.perf_counter()
        with self._pool.connection() as handle, handle.lock:
            try:
                if statement_kind(statement) == "standalone":
                    out = self._run_standalone(handle.connection, statement, parameters)
                else:
                    with handle.connection.begin():
                        out = run_statement(handle.connection, statement, parameters)
            except sqlite3.Error as exc:
                raise ExecutionError(str(exc), operation="execute") from exc
            except sa.exc.StatementError as exc:
                elapsed = _elapsed_ms(started)
                log.warning(
                    "statement_failed",
                    statement_hash=hash_statement(statement),
                    elapsed_ms=elapsed,
                    error=engine_message(exc),
                )
                raise ExecutionError(engine_message(exc), operation="execute") from exc
            finally:
                if changes_connection_state(statement):
                    self._pool.reset_handle(handle)

        elapsed = _elapsed_ms(started)
        log.debug("statement_executed", statement_hash=hash_statement(statement), elapsed_ms=elapsed)
        return QueryResult(success=True, execution_time_ms=elapsed, **out)

    def execute_transaction(
        self, statements: Sequence[tuple[str, Sequence[Any]]]
    ) -> TransactionResult:
        """Run every statement in one transaction; any failure rolls back all of them."""
        started = time.perf_counter()
        results: list[dict[str, Any]] = []
        with self._pool.connection() as handle, handle.lock:
            index = 0
            try:
                with handle.connection.begin():
                    for index, (statement, parameters) in enumerate(statements):
                        results.append(run_statement(handle.connection, statement, parameters))
            except sa.exc.StatementError as exc:
                log.warning(
                    "transaction_rolled_back",
                    failed_index=index,
                    statements=len(statements),
                    error=engine_message(exc),
                )
                raise ExecutionError(engine_message(exc), operation="transaction") from exc
            finally:
                if any(changes_connection_state(statement) for statement, _ in statements):
                    self._pool.reset_handle(handle)

        elapsed = _elapsed_ms(started)
        log.debug("transaction_committed", statements=len(statements), elapsed_ms=elapsed)
        return TransactionResult(success=True, execution_time_ms=elapsed, results=results)

    @staticmethod
    def _run_standalone(
        conn: sa.Connection, statement: str, parameters: Sequence[Any]
    ) -> dict[str, Any]:
        # VACUUM / ATTACH / DETACH go straight to the driver; SQLAlchemy would autobegin.
        cursor = conn.connection.dbapi_connection.cursor()
        try:
            cursor.execute(statement, tuple(parameters))
            return {"rows_affected": max(cursor.rowcount, 0)}
        finally:
            cursor.close()

    def backup(self, target: str | Path) -> dict[str, Any]:
        """Online copy of the whole database to *target* via the SQLite backup API."""
        started = time.perf_counter()
        target_path = Path(target).expanduser().resolve()
        target_path.parent.mkdir(parents=True, exist_ok=True)

        with self._pool.connection() as handle, handle.lock:
            source = handle.connection.connection.dbapi_connection
            destination = sqlite3.connect(str(target_path))
            try:
                source.backup(destination)
            except sqlite3.Error as exc:
                raise ExecutionError(str(exc), operation="backup") from exc
            finally:
                destination.close()

        elapsed = _elapsed_ms(started)
        log.info("backup_completed", path=str(target_path), elapsed_ms=elapsed)
        return {
            "success": True,
            "backup_path": str(target_path),
            "size_bytes": target_path.stat().st_size,
            "execution_time_ms": elapsed,
        }

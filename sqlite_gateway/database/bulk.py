"""Database layer — Bulk operation engine.

Runs many-record insert / update / delete jobs on one pooled handle inside
one transaction:

    Init → (RelatedInsert) → BatchLoop → Done | Aborted

* Records are processed in batches of ``batch_size`` (default 1000).
* ``continue_on_error=False``: the first failing record aborts the job, the
  whole transaction rolls back and ``BulkOperationAborted`` is raised with
  the progress reached so far.
* ``continue_on_error=True``: each record runs under its own SAVEPOINT; a
  failure undoes only that record, is appended to ``progress.errors`` and
  the loop continues.

Every statement the engine builds is validated against the caller's
granted scopes before it runs.  Lookups the engine makes for itself
(foreign-key probes, cascade discovery, parent-key reads) carry no caller
SQL and skip validation.

Progress is published after every record as a snapshot copy: pushed to an
optional ``queue.Queue`` without blocking, and kept for polling through
``get_progress(job_id)``.
"""

from __future__ import annotations

import copy
import math
import queue
import threading
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Mapping, Sequence

import sqlalchemy as sa

from sqlite_gateway.database.executor import engine_message
from sqlite_gateway.database.introspector import ForeignKey, dependent_tables, foreign_keys
from sqlite_gateway.database.pool import ConnectionPool
from sqlite_gateway.database.statements import (
    build_delete,
    build_delete_in,
    build_exists,
    build_insert,
    build_select,
    build_update,
    quote_identifier,
)
from sqlite_gateway.exceptions import (
    BulkOperationAborted,
    ExecutionError,
    GatewayError,
    QueryValidationError,
)
from sqlite_gateway.logging import get_logger
from sqlite_gateway.security.models import PermissionScope
from sqlite_gateway.security.validator import QueryValidator

log = get_logger(__name__)

DEFAULT_BATCH_SIZE = 1000
NO_ROWS_AFFECTED = "No rows affected - record may not exist"

# Keys of a multi-row ``DELETE ... WHERE (..) OR (..)`` per statement.
_CASCADE_CHUNK = 100
# Finished jobs kept for ``get_progress`` polling.
_MAX_TRACKED_JOBS = 256


# ---------------------------------------------------------------------------
# Job description
# ---------------------------------------------------------------------------


@dataclass
class BulkOptions:
    batch_size: int = DEFAULT_BATCH_SIZE
    continue_on_error: bool = False
    validate_foreign_keys: bool = False
    insert_related_data: bool = False
    cascade_delete: bool = False

    def __post_init__(self) -> None:
        if self.batch_size < 1:
            raise QueryValidationError(["batch_size must be >= 1"], "bulk")


@dataclass(frozen=True)
class ForeignKeyMapping:
    referenced_table: str
    referenced_column: str


@dataclass
class RelatedTable:
    """Records to insert ahead of the main table.

    ``foreign_key_mappings`` maps a column of the *main* table to the column
    of this table whose value it refers to.  ``None`` means "infer from the
    main table's declared foreign keys".
    """

    records: list[dict[str, Any]]
    foreign_key_mappings: dict[str, ForeignKeyMapping] | None = None


@dataclass
class UpdateEntry:
    data: dict[str, Any]
    where: dict[str, Any]


# ---------------------------------------------------------------------------
# Progress and result
# ---------------------------------------------------------------------------


@dataclass
class BulkProgress:
    total_records: int
    total_batches: int
    processed_records: int = 0
    successful_records: int = 0
    failed_records: int = 0
    current_batch: int = 0
    started_at: float = field(default_factory=time.time)
    errors: list[dict[str, Any]] = field(default_factory=list)
    estimated_time_remaining_ms: float | None = None

    def record_success(self) -> None:
        self.processed_records += 1
        self.successful_records += 1

    def record_failure(self, record_index: int, record: Any, error: str) -> None:
        self.processed_records += 1
        self.failed_records += 1
        self.add_error(record_index, record, error)

    def add_error(self, record_index: int, record: Any, error: str) -> None:
        self.errors.append(
            {
                "record_index": record_index,
                "record": record,
                "error": error,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
        )

    def update_estimate(self, now: float | None = None) -> None:
        """Linear estimate from the throughput so far."""
        elapsed = (now if now is not None else time.time()) - self.started_at
        if self.processed_records == 0 or elapsed <= 0:
            self.estimated_time_remaining_ms = None
            return
        rate = self.processed_records / elapsed
        remaining = self.total_records - self.processed_records
        self.estimated_time_remaining_ms = round(remaining / rate * 1000, 3)

    def snapshot(self) -> "BulkProgress":
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_records": self.total_records,
            "processed_records": self.processed_records,
            "successful_records": self.successful_records,
            "failed_records": self.failed_records,
            "current_batch": self.current_batch,
            "total_batches": self.total_batches,
            "started_at": datetime.fromtimestamp(self.started_at, timezone.utc).isoformat(),
            "errors": list(self.errors),
            "estimated_time_remaining_ms": self.estimated_time_remaining_ms,
        }


@dataclass
class BulkOperationResult:
    success: bool
    progress: BulkProgress
    execution_time_ms: float
    summary: dict[str, Any]
    job_id: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "job_id": self.job_id,
            "progress": self.progress.to_dict(),
            "execution_time_ms": self.execution_time_ms,
            "summary": self.summary,
        }


@dataclass
class _Job:
    job_id: str
    operation: str
    table: str
    progress: BulkProgress
    granted_scopes: frozenset[PermissionScope]
    client_id: str
    options: BulkOptions
    progress_queue: queue.Queue | None = None
    affected_tables: set[str] = field(default_factory=set)
    related_inserted: int = 0
    fk_cache: dict[str, list[ForeignKey]] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class BulkOperationEngine:
    """Batched, transactional bulk insert / update / delete."""

    def __init__(self, pool: ConnectionPool, validator: QueryValidator) -> None:
        self._pool = pool
        self._validator = validator
        self._progress: OrderedDict[str, BulkProgress] = OrderedDict()
        self._lock = threading.Lock()

    def get_progress(self, job_id: str) -> BulkProgress | None:
        """Latest progress snapshot of a running or recently finished job."""
        with self._lock:
            snapshot = self._progress.get(job_id)
        return snapshot.snapshot() if snapshot is not None else None

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def bulk_insert(
        self,
        table: str,
        records: Sequence[Mapping[str, Any]],
        granted_scopes: Iterable[PermissionScope],
        *,
        related_data: Mapping[str, RelatedTable] | None = None,
        options: BulkOptions | None = None,
        client_id: str = "default",
        job_id: str | None = None,
        progress_queue: queue.Queue | None = None,
    ) -> BulkOperationResult:
        items = [dict(r) for r in records]
        job = self._new_job("bulk_insert", table, len(items), granted_scopes, options,
                            client_id, job_id, progress_queue)

        def body(conn: sa.Connection) -> None:
            value_maps: dict[str, dict[str, dict[Any, Any]]] = {}
            mappings: dict[str, ForeignKeyMapping] = {}
            if job.options.insert_related_data and related_data:
                mappings = self._resolve_mappings(conn, job, related_data)
                value_maps = self._insert_related(conn, job, related_data, mappings)

            def insert_one(record: dict[str, Any]) -> None:
                row = _remap(record, mappings, value_maps)
                if job.options.validate_foreign_keys:
                    self._check_foreign_keys(conn, job, table, row)
                sql, params = build_insert(table, row)
                self._run(conn, job, sql, params)

            self._batch_loop(conn, job, items, insert_one)
            job.affected_tables.add(table)

        return self._execute(job, body)

    def bulk_update(
        self,
        table: str,
        updates: Sequence[UpdateEntry | Mapping[str, Any]],
        granted_scopes: Iterable[PermissionScope],
        *,
        options: BulkOptions | None = None,
        client_id: str = "default",
        job_id: str | None = None,
        progress_queue: queue.Queue | None = None,
    ) -> BulkOperationResult:
        items = [
            u if isinstance(u, UpdateEntry) else UpdateEntry(dict(u["data"]), dict(u["where"]))
            for u in updates
        ]
        job = self._new_job("bulk_update", table, len(items), granted_scopes, options,
                            client_id, job_id, progress_queue)

        def body(conn: sa.Connection) -> None:
            def update_one(entry: UpdateEntry) -> None:
                if job.options.validate_foreign_keys:
                    self._check_foreign_keys(conn, job, table, entry.data)
                sql, params = build_update(table, entry.data, entry.where)
                if self._run(conn, job, sql, params).rowcount == 0:
                    raise ExecutionError(NO_ROWS_AFFECTED, operation="bulk_update")

            self._batch_loop(conn, job, items, update_one)
            job.affected_tables.add(table)

        return self._execute(job, body)

    def bulk_delete(
        self,
        table: str,
        conditions: Sequence[Mapping[str, Any]],
        granted_scopes: Iterable[PermissionScope],
        *,
        options: BulkOptions | None = None,
        client_id: str = "default",
        job_id: str | None = None,
        progress_queue: queue.Queue | None = None,
    ) -> BulkOperationResult:
        items = [dict(c) for c in conditions]
        job = self._new_job("bulk_delete", table, len(items), granted_scopes, options,
                            client_id, job_id, progress_queue)

        def body(conn: sa.Connection) -> None:
            children = dependent_tables(conn, table) if job.options.cascade_delete else []
            job.affected_tables.update(child.table for child in children)

            def delete_one(condition: dict[str, Any]) -> None:
                for child in children:
                    self._cascade(conn, job, table, condition, child)
                sql, params = build_delete(table, condition)
                if self._run(conn, job, sql, params).rowcount == 0:
                    raise ExecutionError(NO_ROWS_AFFECTED, operation="bulk_delete")

            self._batch_loop(conn, job, items, delete_one)
            job.affected_tables.add(table)

        return self._execute(job, body)

    # ------------------------------------------------------------------
    # Job lifecycle
    # ------------------------------------------------------------------

    def _new_job(
        self,
        operation: str,
        table: str,
        total: int,
        granted_scopes: Iterable[PermissionScope],
        options: BulkOptions | None,
        client_id: str,
        job_id: str | None,
        progress_queue: queue.Queue | None,
    ) -> _Job:
        options = options or BulkOptions()
        quote_identifier(table)
        job = _Job(
            job_id=job_id or str(uuid.uuid4()),
            operation=operation,
            table=table,
            progress=BulkProgress(
                total_records=total,
                total_batches=math.ceil(total / options.batch_size),
            ),
            granted_scopes=frozenset(granted_scopes),
            client_id=client_id,
            options=options,
            progress_queue=progress_queue,
        )
        self._publish(job)
        return job

    def _execute(self, job: _Job, body: Callable[[sa.Connection], None]) -> BulkOperationResult:
        started = time.perf_counter()
        log.info(
            "bulk_operation_started",
            job_id=job.job_id,
            operation=job.operation,
            table=job.table,
            total_records=job.progress.total_records,
            batch_size=job.options.batch_size,
        )
        try:
            with self._pool.connection() as handle, handle.lock:
                with handle.connection.begin():
                    body(handle.connection)
        except BulkOperationAborted as exc:
            log.warning(
                "bulk_operation_aborted",
                job_id=job.job_id,
                operation=job.operation,
                processed=job.progress.processed_records,
                error=exc.message,
            )
            raise
        except sa.exc.StatementError as exc:
            raise BulkOperationAborted(
                engine_message(exc), job.operation, job.progress.snapshot()
            ) from exc

        elapsed = round((time.perf_counter() - started) * 1000, 3)
        progress = job.progress
        progress.estimated_time_remaining_ms = 0.0
        self._publish(job)

        summary: dict[str, Any] = {
            "total_records": progress.total_records,
            "successful_records": progress.successful_records,
            "failed_records": progress.failed_records,
            "affected_tables": sorted(job.affected_tables),
        }
        if job.operation == "bulk_insert":
            summary["related_records_inserted"] = job.related_inserted

        log.info(
            "bulk_operation_completed",
            job_id=job.job_id,
            operation=job.operation,
            successful=progress.successful_records,
            failed=progress.failed_records,
            elapsed_ms=elapsed,
        )
        return BulkOperationResult(
            success=progress.failed_records == 0 or job.options.continue_on_error,
            progress=progress.snapshot(),
            execution_time_ms=elapsed,
            summary=summary,
            job_id=job.job_id,
        )

    def _batch_loop(
        self,
        conn: sa.Connection,
        job: _Job,
        items: Sequence[Any],
        handle_item: Callable[[Any], None],
    ) -> None:
        progress = job.progress
        batch_size = job.options.batch_size
        for batch_number, start in enumerate(range(0, len(items), batch_size), start=1):
            progress.current_batch = batch_number
            for index in range(start, min(start + batch_size, len(items))):
                item = items[index]
                try:
                    if job.options.continue_on_error:
                        with conn.begin_nested():
                            handle_item(item)
                    else:
                        handle_item(item)
                except (GatewayError, sa.exc.StatementError) as exc:
                    message = _failure_message(exc)
                    progress.record_failure(index, _as_record(item), message)
                    self._publish(job)
                    if not job.options.continue_on_error:
                        raise BulkOperationAborted(
                            message, job.operation, progress.snapshot()
                        ) from exc
                    continue
                progress.record_success()
                self._publish(job)

    def _publish(self, job: _Job) -> None:
        job.progress.update_estimate()
        snapshot = job.progress.snapshot()
        with self._lock:
            self._progress[job.job_id] = snapshot
            self._progress.move_to_end(job.job_id)
            while len(self._progress) > _MAX_TRACKED_JOBS:
                self._progress.popitem(last=False)
        if job.progress_queue is not None:
            try:
                job.progress_queue.put_nowait(snapshot)
            except queue.Full:
                log.debug("bulk_progress_dropped", job_id=job.job_id)

    # ------------------------------------------------------------------
    # Statement execution
    # ------------------------------------------------------------------

    def _run(
        self, conn: sa.Connection, job: _Job, sql: str, params: Sequence[Any]
    ) -> sa.CursorResult:
        result = self._validator.validate(sql, params, job.granted_scopes, job.client_id)
        if not result.is_valid:
            raise QueryValidationError(result.errors, job.operation)
        params = result.sanitized_parameters or []
        return conn.exec_driver_sql(result.sanitized_statement, tuple(params) if params else None)

    # ------------------------------------------------------------------
    # Related data
    # ------------------------------------------------------------------

    def _resolve_mappings(
        self,
        conn: sa.Connection,
        job: _Job,
        related_data: Mapping[str, RelatedTable],
    ) -> dict[str, ForeignKeyMapping]:
        """Main-table column → related (table, column) for every related table."""
        declared = self._foreign_keys(conn, job, job.table)
        mappings: dict[str, ForeignKeyMapping] = {}
        for related_table, related in related_data.items():
            if related.foreign_key_mappings is not None:
                mappings.update(related.foreign_key_mappings)
                continue
            for fk in declared:
                if fk.referred_table.lower() != related_table.lower():
                    continue
                for local, referred in zip(fk.columns, fk.referred_columns):
                    mappings[local] = ForeignKeyMapping(related_table, referred)
        return mappings

    def _insert_related(
        self,
        conn: sa.Connection,
        job: _Job,
        related_data: Mapping[str, RelatedTable],
        mappings: Mapping[str, ForeignKeyMapping],
    ) -> dict[str, dict[str, dict[Any, Any]]]:
        """Insert related records; return ``{table: {column: {old value: new row id}}}``."""
        value_maps: dict[str, dict[str, dict[Any, Any]]] = {}
        for related_table, related in related_data.items():
            key_columns = {
                m.referenced_column
                for m in mappings.values()
                if m.referenced_table.lower() == related_table.lower()
            }
            table_map = value_maps.setdefault(related_table.lower(), {c: {} for c in key_columns})

            for record in related.records:
                try:
                    if job.options.continue_on_error:
                        with conn.begin_nested():
                            row_id = self._insert_related_row(conn, job, related_table, record)
                    else:
                        row_id = self._insert_related_row(conn, job, related_table, record)
                except (GatewayError, sa.exc.StatementError) as exc:
                    message = _failure_message(exc)
                    job.progress.add_error(-1, {"table": related_table, **record}, message)
                    self._publish(job)
                    if not job.options.continue_on_error:
                        raise BulkOperationAborted(
                            message, job.operation, job.progress.snapshot()
                        ) from exc
                    continue

                job.related_inserted += 1
                job.affected_tables.add(related_table)
                for column in key_columns:
                    value = record.get(column)
                    if value is not None and _hashable(value):
                        table_map[column][value] = row_id

            log.debug(
                "related_records_inserted",
                job_id=job.job_id,
                table=related_table,
                count=len(related.records),
            )
        return value_maps

    def _insert_related_row(
        self, conn: sa.Connection, job: _Job, table: str, record: Mapping[str, Any]
    ) -> Any:
        sql, params = build_insert(table, record)
        return self._run(conn, job, sql, params).lastrowid

    # ------------------------------------------------------------------
    # Foreign keys and cascades
    # ------------------------------------------------------------------

    def _foreign_keys(self, conn: sa.Connection, job: _Job, table: str) -> list[ForeignKey]:
        if table not in job.fk_cache:
            job.fk_cache[table] = foreign_keys(conn, table)
        return job.fk_cache[table]

    def _check_foreign_keys(
        self, conn: sa.Connection, job: _Job, table: str, row: Mapping[str, Any]
    ) -> None:
        for fk in self._foreign_keys(conn, job, table):
            if not all(column in row for column in fk.columns):
                continue
            values = [row[column] for column in fk.columns]
            if any(value is None for value in values):
                continue
            sql, params = build_exists(fk.referred_table, dict(zip(fk.referred_columns, values)))
            if conn.exec_driver_sql(sql, tuple(params)).first() is None:
                raise ExecutionError(
                    f"Foreign key violation: {table}({', '.join(fk.columns)}) = "
                    f"{values} not found in {fk.referred_table}({', '.join(fk.referred_columns)})",
                    operation=job.operation,
                )

    def _cascade(
        self,
        conn: sa.Connection,
        job: _Job,
        table: str,
        condition: Mapping[str, Any],
        child: ForeignKey,
    ) -> None:
        """Delete rows of *child* that reference parent rows matching *condition*."""
        sql, params = build_select(table, list(child.referred_columns), condition)
        keys = [tuple(row) for row in conn.exec_driver_sql(sql, tuple(params) if params else None)]
        keys = [key for key in keys if all(value is not None for value in key)]
        if not keys:
            return
        deleted = 0
        for start in range(0, len(keys), _CASCADE_CHUNK):
            chunk = keys[start:start + _CASCADE_CHUNK]
            delete_sql, delete_params = build_delete_in(child.table, child.columns, chunk)
            deleted += max(self._run(conn, job, delete_sql, delete_params).rowcount, 0)
        log.debug(
            "cascade_delete",
            job_id=job.job_id,
            parent=table,
            child=child.table,
            rows=deleted,
        )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _remap(
    record: Mapping[str, Any],
    mappings: Mapping[str, ForeignKeyMapping],
    value_maps: Mapping[str, Mapping[str, Mapping[Any, Any]]],
) -> dict[str, Any]:
    row = dict(record)
    for column, mapping in mappings.items():
        value = row.get(column)
        if value is None or not _hashable(value):
            continue
        table_map = value_maps.get(mapping.referenced_table.lower(), {})
        column_map = table_map.get(mapping.referenced_column, {})
        if value in column_map:
            row[column] = column_map[value]
    return row


def _hashable(value: Any) -> bool:
    try:
        hash(value)
    except TypeError:
        return False
    return True


def _as_record(item: Any) -> Any:
    if isinstance(item, UpdateEntry):
        return {"data": item.data, "where": item.where}
    return item


def _failure_message(exc: Exception) -> str:
    if isinstance(exc, sa.exc.StatementError):
        return engine_message(exc)
    if isinstance(exc, GatewayError):
        return exc.message
    return str(exc)

"""Database layer — Schema introspection via ``sqlalchemy.inspect()``.

Discovers tables, views, columns (name/type/nullable/pk/default), indexes,
foreign keys and triggers.  Introspection borrows a pooled handle and
switches it to ``PRAGMA query_only = ON`` for the duration, so these paths
can never write even when the gateway itself is writable.

The module-level helpers (``foreign_keys``, ``dependent_tables``) work on a
connection the caller already holds, inside the caller's transaction.
The bulk engine uses them.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Iterator

import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect

from sqlite_gateway.database.executor import engine_message
from sqlite_gateway.database.pool import ConnectionPool
from sqlite_gateway.exceptions import ExecutionError
from sqlite_gateway.logging import get_logger

log = get_logger(__name__)


@dataclass(frozen=True)
class ForeignKey:
    table: str
    columns: tuple[str, ...]
    referred_table: str
    referred_columns: tuple[str, ...]


# ---------------------------------------------------------------------------
# Helpers on a held connection
# ---------------------------------------------------------------------------


def foreign_keys(conn: sa.Connection, table: str) -> list[ForeignKey]:
    """Foreign keys declared *by* ``table``."""
    result: list[ForeignKey] = []
    try:
        declared = sa_inspect(conn).get_foreign_keys(table)
    except sa.exc.NoSuchTableError:
        return result
    for fk in declared:
        referred_columns = tuple(fk.get("referred_columns") or ())
        referred_table = fk.get("referred_table", "")
        if not referred_columns or not any(referred_columns):
            # FOREIGN KEY (x) REFERENCES parent, without columns: parent's primary key
            pk = sa_inspect(conn).get_pk_constraint(referred_table)
            referred_columns = tuple(pk.get("constrained_columns") or ("rowid",))
        result.append(
            ForeignKey(
                table=table,
                columns=tuple(fk.get("constrained_columns") or ()),
                referred_table=referred_table,
                referred_columns=referred_columns,
            )
        )
    return result


def dependent_tables(conn: sa.Connection, table: str) -> list[ForeignKey]:
    """Foreign keys in *other* tables that point at ``table`` (direct children only)."""
    target = table.lower()
    children: list[ForeignKey] = []
    for name in sa_inspect(conn).get_table_names():
        if name.lower() == target:
            continue
        children.extend(fk for fk in foreign_keys(conn, name) if fk.referred_table.lower() == target)
    return children


@contextmanager
def query_only(conn: sa.Connection) -> Iterator[sa.Connection]:
    """Force ``PRAGMA query_only = ON`` for the block, then restore the previous value."""
    previous = conn.exec_driver_sql("PRAGMA query_only").scalar()
    conn.exec_driver_sql("PRAGMA query_only = ON")
    try:
        yield conn
    finally:
        conn.exec_driver_sql(f"PRAGMA query_only = {int(bool(previous))}")


# ---------------------------------------------------------------------------
# Introspector
# ---------------------------------------------------------------------------


class SchemaIntrospector:
    """Read-only schema discovery over the connection pool."""

    def __init__(self, pool: ConnectionPool) -> None:
        self._pool = pool

    def schema_info(self, table: str | None = None) -> dict[str, Any]:
        """Full schema, or a single table/view when *table* is given."""
        try:
            with self._pool.connection() as handle, handle.lock:
                conn = handle.connection
                with conn.begin(), query_only(conn):
                    inspector = sa_inspect(conn)
                    table_names = sorted(inspector.get_table_names())
                    view_names = sorted(inspector.get_view_names())

                    if table is not None:
                        if table in table_names:
                            return self._describe_table(conn, inspector, table)
                        if table in view_names:
                            return self._describe_view(inspector, table)
                        raise ExecutionError(f"Table not found: {table}", operation="schema")

                    return {
                        "tables": [self._describe_table(conn, inspector, t) for t in table_names],
                        "views": [self._describe_view(inspector, v) for v in view_names],
                        "table_count": len(table_names),
                        "view_count": len(view_names),
                    }
        except sa.exc.StatementError as exc:
            raise ExecutionError(engine_message(exc), operation="schema") from exc

    def list_tables(self) -> dict[str, Any]:
        try:
            with self._pool.connection() as handle, handle.lock:
                conn = handle.connection
                with conn.begin(), query_only(conn):
                    inspector = sa_inspect(conn)
                    entries = [
                        {"name": name, "type": "table"} for name in inspector.get_table_names()
                    ] + [{"name": name, "type": "view"} for name in inspector.get_view_names()]
        except sa.exc.StatementError as exc:
            raise ExecutionError(engine_message(exc), operation="tables") from exc

        entries.sort(key=lambda e: e["name"])
        return {"tables": entries, "count": len(entries)}

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    @staticmethod
    def _describe_table(conn: sa.Connection, inspector: Any, name: str) -> dict[str, Any]:
        pk_info = inspector.get_pk_constraint(name)
        pk_columns = pk_info.get("constrained_columns", []) if pk_info else []

        columns = [
            {
                "name": col["name"],
                "type": str(col.get("type", "UNKNOWN")),
                "nullable": col.get("nullable", True),
                "primary_key": col["name"] in pk_columns,
                "default": None if col.get("default") is None else str(col["default"]),
            }
            for col in inspector.get_columns(name)
        ]

        fks = [
            {
                "columns": list(fk.columns),
                "referred_table": fk.referred_table,
                "referred_columns": list(fk.referred_columns),
            }
            for fk in foreign_keys(conn, name)
        ]

        indexes = [
            {
                "name": idx.get("name", ""),
                "columns": idx.get("column_names", []),
                "unique": bool(idx.get("unique", False)),
            }
            for idx in inspector.get_indexes(name)
        ]

        triggers = [
            {"name": row.name, "sql": row.sql}
            for row in conn.exec_driver_sql(
                "SELECT name, sql FROM sqlite_master WHERE type = 'trigger' AND tbl_name = ? "
                "ORDER BY name",
                (name,),
            )
        ]

        return {
            "name": name,
            "type": "table",
            "columns": columns,
            "primary_key": pk_columns,
            "foreign_keys": fks,
            "indexes": indexes,
            "triggers": triggers,
        }

    @staticmethod
    def _describe_view(inspector: Any, name: str) -> dict[str, Any]:
        return {
            "name": name,
            "type": "view",
            "columns": [
                {"name": col["name"], "type": str(col.get("type", "UNKNOWN"))}
                for col in inspector.get_columns(name)
            ],
            "definition": inspector.get_view_definition(name),
        }

"""Database layer — SQLAlchemy engine construction.

The engine only opens raw handles; the gateway's ``ConnectionPool`` decides
how many exist and when they close, so SQLAlchemy's own pooling is
disabled with ``NullPool``.

Every new DBAPI connection is configured by a ``connect`` listener:
    - driver-level implicit transactions off (``isolation_level = None``)
    - ``PRAGMA foreign_keys = ON``
    - ``PRAGMA busy_timeout`` from configuration
    - ``PRAGMA synchronous = NORMAL``
    - ``PRAGMA journal_mode = WAL`` for writable file databases
    - ``PRAGMA query_only``, ON only in read-only mode

A ``begin`` listener then emits ``BEGIN`` explicitly, so every SQLAlchemy
transaction (DDL included) maps to one real SQLite transaction.
"""

from __future__ import annotations

import uuid
from pathlib import Path
from typing import Any

import sqlalchemy as sa
from sqlalchemy import event
from sqlalchemy.pool import NullPool

from sqlite_gateway.config import MEMORY_DATABASE, DatabaseConfig
from sqlite_gateway.database.statements import quote_identifier
from sqlite_gateway.exceptions import ConfigurationError
from sqlite_gateway.logging import get_logger

log = get_logger(__name__)


def build_url(path: str, read_only: bool = False) -> str:
    """Return the SQLAlchemy URL for *path*.

    ``:memory:`` becomes a uniquely named shared-cache URI so that every
    handle opened from the same engine sees one database.
    """
    if path == MEMORY_DATABASE:
        name = f"gateway-{uuid.uuid4().hex}"
        return f"sqlite:///file:{name}?mode=memory&cache=shared&uri=true"

    db_path = Path(path).expanduser().resolve()
    if read_only:
        if not db_path.exists():
            raise ConfigurationError(
                f"Database file not found: {db_path}",
                context={"path": str(db_path), "read_only": True},
            )
        return f"sqlite:///file:{db_path.as_posix()}?mode=ro&uri=true"

    db_path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{db_path.as_posix()}"


def _apply_connection_pragmas(cursor: Any, config: DatabaseConfig) -> None:
    cursor.execute("PRAGMA foreign_keys = ON")
    cursor.execute(f"PRAGMA busy_timeout = {int(config.busy_timeout_ms)}")
    cursor.execute("PRAGMA synchronous = NORMAL")
    cursor.execute(f"PRAGMA query_only = {'ON' if config.read_only else 'OFF'}")


def reset_connection_state(conn: sa.Connection, config: DatabaseConfig) -> None:
    """Put a handle back into its freshly connected state.

    Detaches every attached database and reapplies the connection pragmas,
    undoing whatever a caller's ``PRAGMA`` / ``ATTACH`` left behind.  Must
    run outside a transaction.
    """
    cursor = conn.connection.dbapi_connection.cursor()
    try:
        attached = [
            row[1]
            for row in cursor.execute("PRAGMA database_list").fetchall()
            if row[1] not in ("main", "temp")
        ]
        for name in attached:
            cursor.execute(f"DETACH DATABASE {quote_identifier(name)}")
        _apply_connection_pragmas(cursor, config)
    finally:
        cursor.close()
    if attached:
        log.debug("connection_reset", detached=attached)


def create_gateway_engine(config: DatabaseConfig) -> sa.Engine:
    """Create the engine the connection pool draws handles from."""
    url = build_url(config.path, read_only=config.read_only)
    is_memory = config.path == MEMORY_DATABASE

    engine = sa.create_engine(
        url,
        poolclass=NullPool,
        connect_args={
            "check_same_thread": False,
            "timeout": config.busy_timeout_ms / 1000,
        },
    )

    @event.listens_for(engine, "connect")
    def _configure_connection(dbapi_conn: Any, _record: Any) -> None:
        dbapi_conn.isolation_level = None
        cursor = dbapi_conn.cursor()
        try:
            _apply_connection_pragmas(cursor, config)
            if config.enable_wal and not config.read_only and not is_memory:
                cursor.execute("PRAGMA journal_mode = WAL")
        finally:
            cursor.close()

    @event.listens_for(engine, "begin")
    def _emit_begin(conn: sa.Connection) -> None:
        conn.exec_driver_sql("BEGIN")

    log.info(
        "engine_created",
        database=config.path,
        read_only=config.read_only,
        wal=config.enable_wal and not config.read_only and not is_memory,
    )
    return engine

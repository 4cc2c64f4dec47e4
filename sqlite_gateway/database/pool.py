"""Database layer — Bounded connection pool.

The pool owns one always-open *primary* handle plus at most
``max_connections`` additional handles:

    borrow()     pop an idle handle, else open a new one while
                 ``active < max_connections``, else lend the primary
                 (shared; counted in ``primary_borrowers``, not ``active``)
    give_back()  keep the handle idle while fewer than ``idle_target``
                 are idle, else close it
    reset_handle()  undo per-connection state a caller changed

``idle + active <= max_connections`` holds at all times.  The primary is
never placed on the idle list and only closed by ``close()``.

Bookkeeping is guarded by one lock.  Each handle also carries its own lock
which callers hold while driving the connection, so the shared primary is
never used by two threads at once::

    with pool.connection() as handle, handle.lock:
        handle.connection.exec_driver_sql("SELECT 1")

All methods block; async callers wrap them in ``asyncio.to_thread()``.
"""

from __future__ import annotations

import itertools
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Callable, Iterator

import sqlalchemy as sa

from sqlite_gateway.exceptions import ExecutionError, PoolClosedError
from sqlite_gateway.logging import get_logger

log = get_logger(__name__)

_handle_ids = itertools.count(1)


@dataclass(eq=False)
class PooledConnection:
    """One database handle plus pool bookkeeping."""

    connection: sa.Connection
    is_primary: bool = False
    in_use: bool = False
    handle_id: int = field(default_factory=lambda: next(_handle_ids))
    lock: threading.Lock = field(default_factory=threading.Lock)

    def close(self) -> None:
        try:
            self.connection.close()
        except sa.exc.SQLAlchemyError as exc:
            log.warning("handle_close_failed", handle_id=self.handle_id, error=str(exc))


class ConnectionPool:
    def __init__(
        self,
        connect: Callable[[], sa.Connection],
        max_connections: int = 10,
        idle_target: int = 3,
        reset: Callable[[sa.Connection], None] | None = None,
    ) -> None:
        if max_connections < 1:
            raise ValueError("max_connections must be >= 1")
        self._connect = connect
        self._reset = reset
        self._max_connections = max_connections
        self._idle_target = idle_target
        self._idle: list[PooledConnection] = []
        self._active = 0
        self._primary: PooledConnection | None = None
        self._primary_borrowers = 0
        self._lock = threading.Lock()
        self._open = False

    @classmethod
    def from_engine(
        cls,
        engine: sa.Engine,
        max_connections: int = 10,
        idle_target: int = 3,
        reset: Callable[[sa.Connection], None] | None = None,
    ) -> "ConnectionPool":
        return cls(
            engine.connect,
            max_connections=max_connections,
            idle_target=idle_target,
            reset=reset,
        )

    @property
    def max_connections(self) -> int:
        return self._max_connections

    @property
    def is_open(self) -> bool:
        return self._open

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open(self) -> None:
        """Open the primary handle and pre-open idle handles."""
        with self._lock:
            if self._open:
                return
            self._primary = PooledConnection(self._new_connection(), is_primary=True)
            self._open = True

        for _ in range(min(self._idle_target, self._max_connections)):
            try:
                handle = PooledConnection(self._new_connection())
            except ExecutionError as exc:
                log.warning("pool_prefill_failed", error=exc.message)
                break
            with self._lock:
                self._idle.append(handle)

        log.info(
            "pool_opened",
            max_connections=self._max_connections,
            idle=len(self._idle),
        )

    def close(self) -> None:
        """Close idle handles and the primary.

        Handles on loan are closed when they are given back.
        """
        with self._lock:
            if not self._open:
                return
            self._open = False
            idle, self._idle = self._idle, []
            primary, self._primary = self._primary, None

        for handle in idle:
            handle.close()
        if primary is not None:
            with primary.lock:
                primary.close()
        log.info("pool_closed", closed_idle=len(idle))

    # ------------------------------------------------------------------
    # Borrow / return
    # ------------------------------------------------------------------

    def borrow(self) -> PooledConnection:
        with self._lock:
            if not self._open or self._primary is None:
                raise PoolClosedError("Connection pool is not open")
            if self._idle:
                handle = self._idle.pop()
                self._active += 1
                handle.in_use = True
                return handle
            if self._active >= self._max_connections:
                self._primary_borrowers += 1
                log.debug("pool_exhausted_lending_primary", active=self._active)
                return self._primary
            self._active += 1

        try:
            handle = PooledConnection(self._new_connection(), in_use=True)
        except ExecutionError:
            with self._lock:
                self._active -= 1
            raise
        return handle

    def give_back(self, handle: PooledConnection) -> None:
        if handle.is_primary:
            with self._lock:
                self._primary_borrowers = max(0, self._primary_borrowers - 1)
            return

        handle.in_use = False
        if handle.connection.in_transaction():
            handle.connection.rollback()

        with self._lock:
            self._active = max(0, self._active - 1)
            if self._open and len(self._idle) < self._idle_target:
                self._idle.append(handle)
                return
        handle.close()

    def reset_handle(self, handle: PooledConnection) -> None:
        """Restore *handle* to its freshly connected state.

        Callers hold ``handle.lock`` and have no transaction open.  Used after
        statements such as ``PRAGMA`` or ``ATTACH`` whose effect would
        otherwise leak to the next borrower.
        """
        if self._reset is None:
            return
        try:
            self._reset(handle.connection)
        except sa.exc.DBAPIError as exc:
            raise ExecutionError(str(exc.orig), operation="reset") from exc
        except sqlite3.Error as exc:
            raise ExecutionError(str(exc), operation="reset") from exc

    @contextmanager
    def connection(self) -> Iterator[PooledConnection]:
        """Borrow a handle for the duration of the ``with`` block."""
        handle = self.borrow()
        try:
            yield handle
        finally:
            self.give_back(handle)

    def stats(self) -> dict[str, int]:
        with self._lock:
            idle = len(self._idle)
            return {
                "total": idle + self._active + 1,
                "active": self._active,
                "idle": idle,
                "primary_borrowers": self._primary_borrowers,
                "max_connections": self._max_connections,
            }

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _new_connection(self) -> sa.Connection:
        try:
            return self._connect()
        except sa.exc.DBAPIError as exc:
            raise ExecutionError(str(exc.orig), operation="connect") from exc

"""Shared pytest fixtures for the sqlite-gateway test suite."""

from __future__ import annotations

import functools
from pathlib import Path
from typing import Generator

import pytest
import sqlalchemy as sa

from sqlite_gateway.config import Settings
from sqlite_gateway.database.engine import create_gateway_engine, reset_connection_state
from sqlite_gateway.database.executor import Executor
from sqlite_gateway.database.pool import ConnectionPool
from sqlite_gateway.security.validator import QueryValidator
from sqlite_gateway.server import GatewayServer

SCHEMA = (
    "CREATE TABLE users ("
    " id INTEGER PRIMARY KEY, name TEXT NOT NULL, age INTEGER, city TEXT, external_id INTEGER)",
    "CREATE TABLE posts ("
    " id INTEGER PRIMARY KEY, title TEXT, content TEXT,"
    " user_id INTEGER REFERENCES users(id))",
    "CREATE TABLE comments ("
    " id INTEGER PRIMARY KEY, body TEXT, user_id INTEGER REFERENCES users(id))",
    "CREATE VIEW adult_users AS SELECT id, name FROM users WHERE age >= 18",
)

SEED = (
    ("INSERT INTO users (id, name, age, city) VALUES (?, ?, ?, ?)", [1, "Alice", 30, "New York"]),
    ("INSERT INTO users (id, name, age, city) VALUES (?, ?, ?, ?)", [2, "Bob", 22, "Boston"]),
    ("INSERT INTO posts (id, title, content, user_id) VALUES (?, ?, ?, ?)", [1, "Hello", "First", 1]),
    ("INSERT INTO posts (id, title, content, user_id) VALUES (?, ?, ?, ?)", [2, "Again", "Second", 1]),
    ("INSERT INTO posts (id, title, content, user_id) VALUES (?, ?, ?, ?)", [3, "Mine", "Third", 2]),
    ("INSERT INTO comments (id, body, user_id) VALUES (?, ?, ?)", [1, "Nice", 1]),
    ("INSERT INTO comments (id, body, user_id) VALUES (?, ?, ?)", [2, "Hi", 2]),
)


def seed_database(executor: Executor) -> None:
    executor.execute_transaction([(sql, []) for sql in SCHEMA] + list(SEED))


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "gateway.db"


@pytest.fixture
def test_settings(db_path: Path) -> Settings:
    return Settings(
        database={"path": str(db_path), "max_connections": 4, "idle_target": 2},
        security={"rate_limit_per_minute": 1000, "default_scopes": ["read", "list"]},
        logging={"level": "debug", "format": "console", "audit_file": None},
    )


# ---------------------------------------------------------------------------
# Database layer
# ---------------------------------------------------------------------------


@pytest.fixture
def engine(test_settings: Settings) -> Generator[sa.Engine, None, None]:
    eng = create_gateway_engine(test_settings.database)
    yield eng
    eng.dispose()


@pytest.fixture
def pool(engine: sa.Engine, test_settings: Settings) -> Generator[ConnectionPool, None, None]:
    p = ConnectionPool.from_engine(
        engine,
        max_connections=4,
        idle_target=2,
        reset=functools.partial(reset_connection_state, config=test_settings.database),
    )
    p.open()
    yield p
    p.close()


@pytest.fixture
def executor(pool: ConnectionPool) -> Executor:
    return Executor(pool)


@pytest.fixture
def schema(executor: Executor) -> Executor:
    """Tables and view only, no rows."""
    executor.execute_transaction([(sql, []) for sql in SCHEMA])
    return executor


@pytest.fixture
def seeded(executor: Executor) -> Executor:
    seed_database(executor)
    return executor


@pytest.fixture
def validator() -> QueryValidator:
    return QueryValidator()


# ---------------------------------------------------------------------------
# Server
# ---------------------------------------------------------------------------


@pytest.fixture
def server(test_settings: Settings) -> Generator[GatewayServer, None, None]:
    srv = GatewayServer(test_settings)
    srv.start()
    seed_database(srv.executor)
    yield srv
    srv.close()

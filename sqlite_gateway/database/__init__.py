"""Database layer — engine, connection pool, executor, introspection and bulk jobs."""

from sqlite_gateway.database.bulk import (
    BulkOperationEngine,
    BulkOperationResult,
    BulkOptions,
    BulkProgress,
)
from sqlite_gateway.database.engine import create_gateway_engine
from sqlite_gateway.database.executor import Executor, QueryResult, TransactionResult
from sqlite_gateway.database.introspector import SchemaIntrospector
from sqlite_gateway.database.pool import ConnectionPool, PooledConnection

__all__ = [
    "BulkOperationEngine",
    "BulkOperationResult",
    "BulkOptions",
    "BulkProgress",
    "ConnectionPool",
    "Executor",
    "PooledConnection",
    "QueryResult",
    "SchemaIntrospector",
    "TransactionResult",
    "create_gateway_engine",
]

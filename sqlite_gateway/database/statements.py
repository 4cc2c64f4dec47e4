"""Database layer — Parameterised statement builders.

Builders used by the CRUD tools and the bulk engine.  Values always travel
as positional ``?`` parameters; identifiers are double-quoted with embedded
quotes doubled.  Every built statement is still validated before it runs.
"""

from __future__ import annotations

from typing import Any, Mapping, Sequence

from sqlite_gateway.exceptions import QueryValidationError


def quote_identifier(name: str) -> str:
    if not isinstance(name, str) or not name.strip():
        raise QueryValidationError(["Identifier must be a non-empty string"])
    if "\x00" in name:
        raise QueryValidationError([f"Invalid identifier: {name!r}"])
    return '"' + name.replace('"', '""') + '"'


def _where_clause(where: Mapping[str, Any]) -> tuple[str, list[Any]]:
    parts: list[str] = []
    params: list[Any] = []
    for column, value in where.items():
        if value is None:
            parts.append(f"{quote_identifier(column)} IS NULL")
        else:
            parts.append(f"{quote_identifier(column)} = ?")
            params.append(value)
    return " AND ".join(parts), params


def build_insert(table: str, record: Mapping[str, Any]) -> tuple[str, list[Any]]:
    if not record:
        return f"INSERT INTO {quote_identifier(table)} DEFAULT VALUES", []
    columns = ", ".join(quote_identifier(c) for c in record)
    placeholders = ", ".join("?" for _ in record)
    return (
        f"INSERT INTO {quote_identifier(table)} ({columns}) VALUES ({placeholders})",
        list(record.values()),
    )


def build_update(
    table: str, data: Mapping[str, Any], where: Mapping[str, Any]
) -> tuple[str, list[Any]]:
    if not data:
        raise QueryValidationError(["Update requires at least one column to set"], "update")
    if not where:
        raise QueryValidationError(["Update requires a WHERE condition"], "update")
    assignments = ", ".join(f"{quote_identifier(c)} = ?" for c in data)
    clause, where_params = _where_clause(where)
    return (
        f"UPDATE {quote_identifier(table)} SET {assignments} WHERE {clause}",
        [*data.values(), *where_params],
    )


def build_delete(table: str, where: Mapping[str, Any]) -> tuple[str, list[Any]]:
    if not where:
        raise QueryValidationError(["Delete requires a WHERE condition"], "delete")
    clause, params = _where_clause(where)
    return f"DELETE FROM {quote_identifier(table)} WHERE {clause}", params


def build_delete_in(
    table: str, columns: Sequence[str], keys: Sequence[Sequence[Any]]
) -> tuple[str, list[Any]]:
    """``DELETE FROM table WHERE (c1 = ? AND c2 = ?) OR ...`` for each key tuple."""
    if not keys:
        raise QueryValidationError(["Delete requires at least one key"], "delete")
    row = " AND ".join(f"{quote_identifier(c)} = ?" for c in columns)
    clause = " OR ".join(f"({row})" for _ in keys)
    params = [value for key in keys for value in key]
    return f"DELETE FROM {quote_identifier(table)} WHERE {clause}", params


def build_select(
    table: str, columns: Sequence[str], where: Mapping[str, Any]
) -> tuple[str, list[Any]]:
    cols = ", ".join(quote_identifier(c) for c in columns) if columns else "*"
    sql = f"SELECT {cols} FROM {quote_identifier(table)}"
    if not where:
        return sql, []
    clause, params = _where_clause(where)
    return f"{sql} WHERE {clause}", params


def build_exists(table: str, where: Mapping[str, Any]) -> tuple[str, list[Any]]:
    clause, params = _where_clause(where)
    return f"SELECT 1 FROM {quote_identifier(table)} WHERE {clause} LIMIT 1", params

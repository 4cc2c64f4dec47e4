"""Tool catalogue — the contract between the gateway and remote callers.

Each ``ToolSpec`` names a tool, describes it, points at its pydantic
parameter model and lists the scopes the caller needs before the tool
runs at all.  Tools that carry caller SQL (``sqlite_query``,
``sqlite_transaction``) are additionally gated per statement by the
validator.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel

from sqlite_gateway.protocol import params as p
from sqlite_gateway.security.models import PermissionScope

_S = PermissionScope


@dataclass
class ToolSpec:
    name: str
    description: str
    params_model: type[BaseModel]
    required_scopes: frozenset[PermissionScope] = frozenset()

    def to_json_schema(self) -> dict[str, Any]:
        """JSON Schema for the tool's arguments (camelCase names)."""
        return self.params_model.model_json_schema(by_alias=True)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.to_json_schema(),
            "required_scopes": sorted(s.value for s in self.required_scopes),
        }


TOOLS: tuple[ToolSpec, ...] = (
    ToolSpec(
        name="sqlite_query",
        description=(
            "Execute a SQL statement on the SQLite database. Required scopes depend "
            "on the statement (SELECT needs read and list, INSERT needs create, ...)."
        ),
        params_model=p.QueryParams,
    ),
    ToolSpec(
        name="sqlite_insert",
        description="Insert one row into a table.",
        params_model=p.InsertParams,
        required_scopes=frozenset({_S.CREATE}),
    ),
    ToolSpec(
        name="sqlite_update",
        description="Update the rows of a table matching a WHERE mapping.",
        params_model=p.UpdateParams,
        required_scopes=frozenset({_S.UPDATE}),
    ),
    ToolSpec(
        name="sqlite_delete",
        description="Delete the rows of a table matching a WHERE mapping.",
        params_model=p.DeleteParams,
        required_scopes=frozenset({_S.DELETE}),
    ),
    ToolSpec(
        name="sqlite_schema",
        description="Describe the database schema, or a single table or view.",
        params_model=p.SchemaParams,
        required_scopes=frozenset({_S.LIST}),
    ),
    ToolSpec(
        name="sqlite_tables",
        description="List all tables and views in the database.",
        params_model=p.TablesParams,
        required_scopes=frozenset({_S.LIST}),
    ),
    ToolSpec(
        name="sqlite_transaction",
        description="Execute several statements in one all-or-nothing transaction.",
        params_model=p.TransactionParams,
        required_scopes=frozenset({_S.TRANSACTION}),
    ),
    ToolSpec(
        name="sqlite_backup",
        description="Create an online backup copy of the database.",
        params_model=p.BackupParams,
        required_scopes=frozenset({_S.UTILITY}),
    ),
    ToolSpec(
        name="sqlite_bulk_insert",
        description=(
            "Bulk insert records in batches, optionally inserting related rows first "
            "and remapping foreign keys to their generated ids."
        ),
        params_model=p.BulkInsertParams,
        required_scopes=frozenset({_S.CREATE}),
    ),
    ToolSpec(
        name="sqlite_bulk_update",
        description="Bulk update rows in batches; each entry is {data, where}.",
        params_model=p.BulkUpdateParams,
        required_scopes=frozenset({_S.UPDATE}),
    ),
    ToolSpec(
        name="sqlite_bulk_delete",
        description=(
            "Bulk delete rows in batches, optionally deleting dependent rows of "
            "child tables first."
        ),
        params_model=p.BulkDeleteParams,
        required_scopes=frozenset({_S.DELETE}),
    ),
)

TOOLS_BY_NAME: dict[str, ToolSpec] = {tool.name: tool for tool in TOOLS}

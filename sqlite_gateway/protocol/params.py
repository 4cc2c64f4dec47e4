"""Typed parameter models for every gateway tool.

Field names are snake_case; the camelCase names remote callers send
(``mainTable``, ``continueOnError``, ``backupPath``...) are accepted as
aliases.
"""

from __future__ import annotations

from typing import Annotated, Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class ToolParams(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
    )


Scalar = str | int | float | bool | None


# ---------------------------------------------------------------------------
# Single-statement tools
# ---------------------------------------------------------------------------


class QueryParams(ToolParams):
    query: str = Field(description="SQL statement to execute. Use ? placeholders for values.")
    parameters: list[Any] = Field(
        default_factory=list,
        description="Positional parameters bound to the ? placeholders.",
    )


class InsertParams(ToolParams):
    table: str = Field(description="Table name to insert into.")
    data: dict[str, Scalar] = Field(description="Column-to-value mapping.")


class UpdateParams(ToolParams):
    table: str = Field(description="Table name to update.")
    data: dict[str, Scalar] = Field(description="Columns to update.")
    where: dict[str, Scalar] = Field(description="WHERE conditions as column-to-value mapping.")

    @field_validator("data", "where")
    @classmethod
    def not_empty(cls, v: dict[str, Any]) -> dict[str, Any]:
        if not v:
            raise ValueError("must contain at least one column")
        return v


class DeleteParams(ToolParams):
    table: str = Field(description="Table name to delete from.")
    where: dict[str, Scalar] = Field(description="WHERE conditions as column-to-value mapping.")

    @field_validator("where")
    @classmethod
    def not_empty(cls, v: dict[str, Any]) -> dict[str, Any]:
        if not v:
            raise ValueError("must contain at least one column")
        return v


class SchemaParams(ToolParams):
    table: str | None = Field(default=None, description="Specific table or view name (optional).")


class TablesParams(ToolParams):
    pass


class TransactionStatement(ToolParams):
    query: str
    parameters: list[Any] = Field(default_factory=list)


class TransactionParams(ToolParams):
    queries: list[TransactionStatement] = Field(
        min_length=1,
        description="Statements executed in order inside one transaction.",
    )


class BackupParams(ToolParams):
    path: str = Field(
        validation_alias=AliasChoices("path", "backupPath", "backup_path"),
        description="Backup file path.",
    )


# ---------------------------------------------------------------------------
# Bulk tools
# ---------------------------------------------------------------------------


class BulkOptionsParams(ToolParams):
    batch_size: Annotated[int, Field(ge=1, le=100_000)] | None = Field(
        default=None,
        description="Records per batch (server default when omitted).",
    )
    continue_on_error: bool = False
    validate_foreign_keys: bool = False
    insert_related_data: bool = False
    cascade_delete: bool = False


class ForeignKeyMappingParams(ToolParams):
    referenced_table: str
    referenced_column: str


class RelatedTableParams(ToolParams):
    records: list[dict[str, Scalar]]
    foreign_key_mappings: dict[str, ForeignKeyMappingParams] | None = None


class BulkInsertParams(ToolParams):
    main_table: str = Field(description="Main table name to insert into.")
    records: list[dict[str, Scalar]] = Field(description="Records to insert.")
    related_data: dict[str, RelatedTableParams | list[dict[str, Scalar]]] | None = Field(
        default=None,
        description=(
            "Related table data inserted first: {table: {records, foreignKeyMappings}} "
            "or {table: [records]} to infer mappings from declared foreign keys."
        ),
    )
    options: BulkOptionsParams = Field(default_factory=BulkOptionsParams)


class UpdateEntryParams(ToolParams):
    data: dict[str, Scalar]
    where: dict[str, Scalar]


class BulkUpdateParams(ToolParams):
    table: str = Field(description="Table name to update.")
    updates: list[UpdateEntryParams] = Field(description="Update operations: [{data, where}].")
    options: BulkOptionsParams = Field(default_factory=BulkOptionsParams)


class BulkDeleteParams(ToolParams):
    table: str = Field(description="Table name to delete from.")
    conditions: list[dict[str, Scalar]] = Field(description="WHERE conditions, one per deletion.")
    options: BulkOptionsParams = Field(default_factory=BulkOptionsParams)

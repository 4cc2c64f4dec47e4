"""Security layer — Data models shared by the permission model, validator and audit trail."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any


class PermissionScope(str, Enum):
    """The fixed set of tags gating a class of statements."""

    LIST = "list"
    READ = "read"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    EXECUTE = "execute"
    DDL = "ddl"
    TRANSACTION = "transaction"
    UTILITY = "utility"

    def __str__(self) -> str:
        return self.value


class AuditStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    DENIED = "denied"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class ClientSession:
    client_id: str
    granted_scopes: frozenset[PermissionScope] = frozenset()


@dataclass
class ValidationResult:
    """Outcome of validating one statement for one caller.

    ``errors == []`` is the only state in which the statement may be executed.
    ``sanitized_statement`` / ``sanitized_parameters`` are only populated
    when validation succeeded.
    """

    is_valid: bool
    detected_operations: list[str] = field(default_factory=list)
    required_scopes: frozenset[PermissionScope] = frozenset()
    missing_scopes: frozenset[PermissionScope] = frozenset()
    errors: list[str] = field(default_factory=list)
    sanitized_statement: str | None = None
    sanitized_parameters: list[Any] | None = None


@dataclass(frozen=True)
class AuditRecord:
    log_id: str
    client_id: str
    operation_type: str
    statement_hash: str
    result_status: AuditStatus
    executed_at: str
    duration_ms: float
    error_message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["result_status"] = self.result_status.value
        return data

"""SQLite Gateway — Exception hierarchy.

All exceptions raised by the gateway inherit from GatewayError so that
callers can catch the full family with a single except clause when needed.

Hierarchy:
    GatewayError
    ├── ConfigurationError
    ├── SecurityError
    │   ├── QueryValidationError
    │   ├── AuthorizationError
    │   └── RateLimitExceededError
    ├── DatabaseError
    │   ├── PoolClosedError
    │   └── ExecutionError
    │       └── BulkOperationAborted
    └── UnknownToolError
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Iterable

if TYPE_CHECKING:
    from sqlite_gateway.database.bulk import BulkProgress


class GatewayError(Exception):
    """Base exception for all gateway errors."""

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context: dict[str, Any] = context or {}

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, context={self.context})"


class ConfigurationError(GatewayError):
    """Invalid connection string, scope list or configuration file."""


# ---------------------------------------------------------------------------
# Security layer
# ---------------------------------------------------------------------------


class SecurityError(GatewayError):
    """Base for every error that rejects a request before it reaches the engine."""


class QueryValidationError(SecurityError):
    """The statement or its parameters failed validation.

    Malformed, oversized, multi-statement or dangerous-pattern input.
    Never retried.
    """

    def __init__(self, errors: list[str], operation: str = "") -> None:
        super().__init__(
            "Validation failed: " + "; ".join(errors),
            context={"errors": list(errors), "operation": operation},
        )
        self.errors = list(errors)
        self.operation = operation


class AuthorizationError(SecurityError):
    """The caller lacks one or more of the scopes the request requires."""

    def __init__(
        self,
        client_id: str,
        missing_scopes: Iterable[str],
        required_scopes: Iterable[str] = (),
        errors: list[str] | None = None,
    ) -> None:
        missing = sorted(str(s) for s in missing_scopes)
        required = sorted(str(s) for s in required_scopes)
        super().__init__(
            f"Client '{client_id}' is missing required scopes: {', '.join(missing)}",
            context={
                "client_id": client_id,
                "missing_scopes": missing,
                "required_scopes": required,
                "errors": list(errors or []),
            },
        )
        self.client_id = client_id
        self.missing_scopes = missing
        self.required_scopes = required
        self.errors = list(errors or [])


class RateLimitExceededError(SecurityError):
    """The caller exceeded its request ceiling for the current window."""

    def __init__(self, client_id: str, limit: int, window_seconds: float = 60.0) -> None:
        super().__init__(
            f"Rate limit exceeded for '{client_id}': max {limit} requests "
            f"per {window_seconds:g}s",
            context={
                "client_id": client_id,
                "limit": limit,
                "window_seconds": window_seconds,
            },
        )
        self.client_id = client_id
        self.limit = limit
        self.window_seconds = window_seconds


# ---------------------------------------------------------------------------
# Database layer
# ---------------------------------------------------------------------------


class DatabaseError(GatewayError):
    """Base for errors raised by the pool, executor and bulk engine."""


class PoolClosedError(DatabaseError):
    """A handle was requested from a pool that is not open."""


class ExecutionError(DatabaseError):
    """The engine rejected a statement, transaction or bulk batch.

    ``message`` is the engine's own error text, unmodified.
    """

    def __init__(self, message: str, operation: str = "") -> None:
        super().__init__(message, context={"operation": operation})
        self.operation = operation


class BulkOperationAborted(ExecutionError):
    """A bulk job hit a failure with ``continue_on_error=False`` and was rolled back."""

    def __init__(self, message: str, operation: str, progress: BulkProgress) -> None:
        super().__init__(message, operation=operation)
        self.progress = progress
        self.context["progress"] = progress.to_dict()


class UnknownToolError(GatewayError):
    """No tool with the given name is registered."""

    def __init__(self, tool_name: str) -> None:
        super().__init__(f"Unknown tool: {tool_name}", context={"tool": tool_name})
        self.tool_name = tool_name

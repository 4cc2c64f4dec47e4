"""Security layer — permission model, statement validation, rate limiting and audit."""

from sqlite_gateway.security.audit import AuditTrail
from sqlite_gateway.security.models import (
    AuditRecord,
    AuditStatus,
    ClientSession,
    PermissionScope,
    ValidationResult,
)
from sqlite_gateway.security.permissions import ClientRegistry, parse_scopes
from sqlite_gateway.security.rate_limiter import ClientRateLimiter
from sqlite_gateway.security.validator import QueryValidator, hash_statement

__all__ = [
    "AuditRecord",
    "AuditStatus",
    "AuditTrail",
    "ClientRateLimiter",
    "ClientRegistry",
    "ClientSession",
    "PermissionScope",
    "QueryValidator",
    "ValidationResult",
    "hash_statement",
    "parse_scopes",
]

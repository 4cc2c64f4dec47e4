"""Security layer — Query validator.

Every statement a caller submits, and every statement the bulk engine
generates on a caller's behalf, passes through ``QueryValidator.validate``
before it may reach a database handle.

Validation pipeline (errors accumulate, except for step 1):
    1. Shape: non-empty string no longer than ``max_statement_length``.
    2. Dangerous-pattern scan.
    3. Operation classification and required scopes.
    4. Authorization against the caller's granted scopes.
    5. Structural checks (multiple statements, subqueries without read).
    6. Parameter shape (flat list of scalars).
    7. Sanitization, only when nothing above failed.
"""

from __future__ import annotations

import hashlib
import re
from typing import Any, Iterable, Sequence

from sqlite_gateway.logging import get_logger
from sqlite_gateway.security.models import PermissionScope, ValidationResult
from sqlite_gateway.security.patterns import (
    PATTERN_SET_VERSION,
    DangerousPattern,
    default_patterns,
)
from sqlite_gateway.security.permissions import (
    check_authorization,
    detect_operations,
    format_scopes,
    required_scopes,
    strip_string_literals,
)

log = get_logger(__name__)

DEFAULT_MAX_STATEMENT_LENGTH = 10_000

_SANITIZE_RE = re.compile(
    r"('(?:[^']|'')*'|\"(?:[^\"]|\"\")*\")|--[^\n]*|/\*.*?\*/|\s+",
    re.DOTALL,
)
_UNSAFE_PARAM_CHARS_RE = re.compile(r"[<>'\"&]")
_SUBQUERY_RE = re.compile(r"\(\s*(select|with)\b", re.IGNORECASE)
_LEADING_WORD_RE = re.compile(r"^\s*([A-Za-z]+)")
_TRANSACTION_CONTROL_WORDS = frozenset({"BEGIN", "COMMIT", "END", "ROLLBACK", "SAVEPOINT", "RELEASE"})
_CONNECTION_STATE_WORDS = frozenset({"PRAGMA", "ATTACH", "DETACH"})


def hash_statement(statement: str) -> str:
    """First 16 hex characters of the statement's SHA-256 digest."""
    return hashlib.sha256(statement.encode("utf-8")).hexdigest()[:16]


def statement_kind(statement: str) -> str:
    """Classify by leading keyword: ``read``, ``insert``, ``standalone`` or ``write``.

    ``standalone`` statements cannot run inside a transaction.
    """
    word = _leading_word(statement)
    if word in ("SELECT", "WITH", "VALUES", "EXPLAIN"):
        return "read"
    if word in ("INSERT", "REPLACE"):
        return "insert"
    if word in ("VACUUM", "ATTACH", "DETACH"):
        return "standalone"
    return "write"


def is_transaction_control(statement: str) -> bool:
    """True for statements that open, end or mark a transaction."""
    return _leading_word(statement) in _TRANSACTION_CONTROL_WORDS


def changes_connection_state(statement: str) -> bool:
    """True for statements whose effect outlives them on the handle that ran them."""
    return _leading_word(statement) in _CONNECTION_STATE_WORDS


def _leading_word(statement: str) -> str:
    match = _LEADING_WORD_RE.match(statement)
    return match.group(1).upper() if match else ""


def sanitize_statement(statement: str) -> str:
    """Drop comments and collapse whitespace outside quoted literals."""

    def _replace(match: re.Match[str]) -> str:
        return match.group(1) or " "

    for _ in range(2):
        statement = _SANITIZE_RE.sub(_replace, statement)
    return statement.strip()


def sanitize_parameters(parameters: Sequence[Any]) -> list[Any]:
    return [
        _UNSAFE_PARAM_CHARS_RE.sub("", value) if isinstance(value, str) else value
        for value in parameters
    ]


class QueryValidator:
    """Validates one statement for one caller.

    Usage::

        validator = QueryValidator(max_statement_length=10_000)
        result = validator.validate(sql, params, granted_scopes, client_id="alice")
        if not result.is_valid:
            raise QueryValidationError(result.errors)
    """

    def __init__(
        self,
        max_statement_length: int = DEFAULT_MAX_STATEMENT_LENGTH,
        patterns: Iterable[DangerousPattern] | None = None,
    ) -> None:
        self._max_statement_length = max_statement_length
        self._patterns = list(patterns) if patterns is not None else default_patterns()

    @property
    def patterns(self) -> list[DangerousPattern]:
        return self._patterns

    @property
    def max_statement_length(self) -> int:
        return self._max_statement_length

    def validate(
        self,
        statement: Any,
        parameters: Any = None,
        granted_scopes: Iterable[PermissionScope] = (),
        client_id: str = "default",
    ) -> ValidationResult:
        if not isinstance(statement, str) or not statement.strip():
            return ValidationResult(is_valid=False, errors=["Statement must be a non-empty string"])
        if len(statement) > self._max_statement_length:
            return ValidationResult(
                is_valid=False,
                errors=[f"Statement too long (max {self._max_statement_length} characters)"],
            )

        granted = frozenset(granted_scopes)
        errors: list[str] = []
        without_literals = strip_string_literals(statement)

        # Step 2: dangerous patterns
        for rule in self._patterns:
            if rule.enabled and rule.matches(statement, without_literals):
                log.warning(
                    "dangerous_pattern_detected",
                    pattern_id=rule.id,
                    pattern_set=PATTERN_SET_VERSION,
                    statement_hash=hash_statement(statement),
                    client_id=client_id,
                )
                errors.append(f"Dangerous pattern detected: {rule.description}")

        # Step 3: classification
        operations = detect_operations(statement)
        needed = required_scopes(operations)
        if not operations:
            errors.append("No recognized operation in statement")

        # Step 4: authorization
        decision = check_authorization(granted, needed)
        if not decision.authorized:
            errors.append(f"Insufficient permissions. Missing: {format_scopes(decision.missing)}")

        # Step 5: structure
        body = without_literals.rstrip()
        if body.endswith(";"):
            body = body[:-1]
        if ";" in body:
            errors.append("Multiple statements not allowed")
        if PermissionScope.READ not in granted and _SUBQUERY_RE.search(without_literals):
            errors.append("Subqueries require read permission")

        # Step 6: parameters
        param_list: list[Any] = []
        if parameters is not None:
            if not isinstance(parameters, (list, tuple)):
                errors.append("Parameters must be a flat list")
            elif any(isinstance(p, (list, tuple, dict, set)) for p in parameters):
                errors.append("Parameters must be a flat list")
            else:
                param_list = list(parameters)

        if errors:
            return ValidationResult(
                is_valid=False,
                detected_operations=operations,
                required_scopes=needed,
                missing_scopes=decision.missing,
                errors=errors,
            )

        # Step 7: sanitization
        return ValidationResult(
            is_valid=True,
            detected_operations=operations,
            required_scopes=needed,
            missing_scopes=frozenset(),
            errors=[],
            sanitized_statement=sanitize_statement(statement),
            sanitized_parameters=sanitize_parameters(param_list),
        )

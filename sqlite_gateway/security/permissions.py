"""Security layer — Permission model.

Maps statement keywords to the scopes a caller must hold.  Classification
is lexical: string literals are blanked out, then every keyword of the
table found as a whole word (case-insensitive) contributes its scopes.
The scan may over-flag (a column named ``update`` still counts), never
under-flag.

The keyword table is a static tuple so that a test can enumerate it.
"""

from __future__ import annotations

import re
import threading
from dataclasses import dataclass
from typing import Iterable

from sqlite_gateway.exceptions import ConfigurationError
from sqlite_gateway.logging import get_logger
from sqlite_gateway.security.models import ClientSession, PermissionScope

log = get_logger(__name__)

_S = PermissionScope

PERMISSION_KEYWORDS: tuple[tuple[str, frozenset[PermissionScope]], ...] = (
    ("SELECT", frozenset({_S.READ, _S.LIST})),
    ("INSERT", frozenset({_S.CREATE})),
    ("UPDATE", frozenset({_S.UPDATE})),
    ("DELETE", frozenset({_S.DELETE})),
    ("CREATE", frozenset({_S.DDL})),
    ("ALTER", frozenset({_S.DDL})),
    ("DROP", frozenset({_S.DDL})),
    ("TRUNCATE", frozenset({_S.DDL})),
    ("BEGIN", frozenset({_S.TRANSACTION})),
    ("COMMIT", frozenset({_S.TRANSACTION})),
    ("ROLLBACK", frozenset({_S.TRANSACTION})),
    ("SAVEPOINT", frozenset({_S.TRANSACTION})),
    ("VACUUM", frozenset({_S.UTILITY})),
    ("ANALYZE", frozenset({_S.UTILITY})),
    ("REINDEX", frozenset({_S.UTILITY})),
    ("PRAGMA", frozenset({_S.UTILITY})),
    ("ATTACH", frozenset({_S.UTILITY})),
    ("DETACH", frozenset({_S.UTILITY})),
)

_KEYWORD_SCOPES: dict[str, frozenset[PermissionScope]] = dict(PERMISSION_KEYWORDS)

_KEYWORD_RE = re.compile(
    r"\b(" + "|".join(keyword for keyword, _ in PERMISSION_KEYWORDS) + r")\b",
    re.IGNORECASE,
)

# Single- or double-quoted literal, with doubled quotes as escapes.
_STRING_LITERAL_RE = re.compile(r"'(?:[^']|'')*'|\"(?:[^\"]|\"\")*\"")


def strip_string_literals(statement: str) -> str:
    """Replace every quoted literal with an empty pair of quotes."""
    return _STRING_LITERAL_RE.sub("''", statement)


def detect_operations(statement: str) -> list[str]:
    """Return the distinct table keywords present in *statement*, in order of first appearance."""
    seen: list[str] = []
    for match in _KEYWORD_RE.finditer(strip_string_literals(statement)):
        keyword = match.group(1).upper()
        if keyword not in seen:
            seen.append(keyword)
    return seen


def required_scopes(operations: Iterable[str]) -> frozenset[PermissionScope]:
    scopes: set[PermissionScope] = set()
    for operation in operations:
        scopes |= _KEYWORD_SCOPES.get(operation.upper(), frozenset())
    return frozenset(scopes)


@dataclass(frozen=True)
class AuthorizationDecision:
    authorized: bool
    missing: frozenset[PermissionScope] = frozenset()


def check_authorization(
    granted: Iterable[PermissionScope],
    required: Iterable[PermissionScope],
) -> AuthorizationDecision:
    """Every required scope must be granted."""
    missing = frozenset(required) - frozenset(granted)
    return AuthorizationDecision(authorized=not missing, missing=missing)


def format_scopes(scopes: Iterable[PermissionScope]) -> str:
    return ", ".join(sorted(scope.value for scope in scopes))


def parse_scopes(scope_string: str) -> frozenset[PermissionScope]:
    """Parse ``"list,read,utility"`` into a set of scopes.

    Unknown tags are dropped; an input with no valid tag is an error.
    """
    valid = {scope.value for scope in PermissionScope}
    scopes = frozenset(
        PermissionScope(token)
        for token in (part.strip().lower() for part in scope_string.split(","))
        if token in valid
    )
    if not scopes:
        raise ConfigurationError(
            f"No valid permissions found in: {scope_string}",
            context={"scopes": scope_string, "valid": sorted(valid)},
        )
    return scopes


class ClientRegistry:
    """Thread-safe map of ``client_id`` → ``ClientSession``.

    Unknown clients resolve to a session with no scopes.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, ClientSession] = {}
        self._lock = threading.Lock()

    def set_client_scopes(
        self, client_id: str, scopes: Iterable[PermissionScope]
    ) -> ClientSession:
        session = ClientSession(client_id=client_id, granted_scopes=frozenset(scopes))
        with self._lock:
            self._sessions[client_id] = session
        log.info(
            "client_scopes_set",
            client_id=client_id,
            scopes=sorted(s.value for s in session.granted_scopes),
        )
        return session

    def remove_client(self, client_id: str) -> None:
        with self._lock:
            self._sessions.pop(client_id, None)

    def get_session(self, client_id: str) -> ClientSession:
        with self._lock:
            session = self._sessions.get(client_id)
        return session or ClientSession(client_id=client_id)

    def scopes_for(self, client_id: str) -> frozenset[PermissionScope]:
        return self.get_session(client_id).granted_scopes

    def list_clients(self) -> list[str]:
        with self._lock:
            return sorted(self._sessions)

"""Security layer — Dangerous-pattern catalogue.

Each pattern is a named, independently testable rule.  The validator runs
every enabled pattern against each statement and turns a match into a
validation error.  Bump ``PATTERN_SET_VERSION`` whenever the list changes
so audit consumers can tell which rule set produced a rejection.

Patterns flagged ``on_literals=False`` are matched after quoted literals
have been blanked, so that ordinary text values (``'Issue #4 -- urgent'``)
do not trip structural rules.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

PATTERN_SET_VERSION = "1.0.0"


@dataclass
class DangerousPattern:
    """A single rejection rule.

    Attributes:
        id:           Unique identifier (e.g. "stacked_statement").
        description:  Human-readable message used in validation errors.
        pattern:      Compiled regex.
        on_literals:  Match against the raw statement (True) or against the
                      statement with string literals blanked (False).
        enabled:      Whether the rule is active.
    """

    id: str
    description: str
    pattern: re.Pattern[str]
    on_literals: bool = False
    enabled: bool = True
    tags: list[str] = field(default_factory=list)

    def matches(self, raw: str, without_literals: str) -> bool:
        return bool(self.pattern.search(raw if self.on_literals else without_literals))


_I = re.IGNORECASE


DEFAULT_PATTERNS: tuple[DangerousPattern, ...] = (
    DangerousPattern(
        id="stacked_statement",
        description="Stacked statement after terminator",
        pattern=re.compile(
            r";\s*(select|insert|update|delete|drop|create|alter|attach|detach|pragma|replace)\b",
            _I,
        ),
        tags=["injection"],
    ),
    DangerousPattern(
        id="union_select",
        description="UNION-based injection",
        pattern=re.compile(r"\bunion\b(\s+all)?\s+select\b", _I),
        tags=["injection"],
    ),
    DangerousPattern(
        id="comment_marker",
        description="SQL comment marker",
        pattern=re.compile(r"--|/\*|\*/|#"),
        tags=["injection", "obfuscation"],
    ),
    DangerousPattern(
        id="encoded_quote",
        description="Encoded quote character",
        pattern=re.compile(r"%27|%22|\\x27|\\x22|\\u0027|\\u0022", _I),
        on_literals=True,
        tags=["obfuscation"],
    ),
    DangerousPattern(
        id="script_keyword",
        description="Script injection keyword",
        pattern=re.compile(r"<\s*script\b|\b(javascript|vbscript)\s*:|\bon(load|error|click)\s*=", _I),
        on_literals=True,
        tags=["xss"],
    ),
    DangerousPattern(
        id="eval_exec",
        description="Dynamic evaluation keyword",
        pattern=re.compile(r"\b(eval|exec|execute|xp_cmdshell|sp_executesql)\s*\(", _I),
        tags=["injection"],
    ),
    DangerousPattern(
        id="boolean_tautology",
        description="Boolean tautology",
        pattern=re.compile(
            r"\b(or|and)\s+(\d+\s*=\s*\d+|'[^']*'\s*=\s*'[^']*'|true\b)",
            _I,
        ),
        on_literals=True,
        tags=["injection"],
    ),
)


def default_patterns() -> list[DangerousPattern]:
    """Return fresh copies of the built-in patterns (safe to mutate ``enabled``)."""
    return [
        DangerousPattern(
            id=p.id,
            description=p.description,
            pattern=p.pattern,
            on_literals=p.on_literals,
            enabled=p.enabled,
            tags=list(p.tags),
        )
        for p in DEFAULT_PATTERNS
    ]

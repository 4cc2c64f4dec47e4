"""SQLite Gateway — permission-gated access to a local SQLite database.

Untrusted callers reach the database only through typed tools
(query, insert, update, delete, transaction, bulk operations, schema,
backup).  Every call is rate limited, validated against the caller's
permission scopes, executed over a bounded connection pool and audited.
"""

__version__ = "1.0.0"
__protocol_version__ = "1.0"

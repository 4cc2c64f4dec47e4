"""Security layer — Audit trail.

Keeps one ``AuditRecord`` per completed or denied tool call in a capped,
append-only in-memory buffer.  Once the buffer grows past ``capacity`` it
is trimmed to its newest half.

Every record is also emitted as a structlog ``audit_entry`` event and,
when an audit file is configured, appended to it as one JSON line
(NDJSON).  Records carry the statement hash, never the statement text.
"""

from __future__ import annotations

import json
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path

from sqlite_gateway.logging import get_logger
from sqlite_gateway.security.models import AuditRecord, AuditStatus

log = get_logger(__name__)


class AuditTrail:
    def __init__(self, capacity: int = 10_000, audit_file: Path | None = None) -> None:
        self._capacity = capacity
        self._records: list[AuditRecord] = []
        self._lock = threading.Lock()
        self._file_lock = threading.Lock()
        self._audit_file = audit_file.expanduser() if audit_file else None
        if self._audit_file is not None:
            self._audit_file.parent.mkdir(parents=True, exist_ok=True)

    @property
    def capacity(self) -> int:
        return self._capacity

    def record(
        self,
        client_id: str,
        operation_type: str,
        statement_hash: str,
        result_status: AuditStatus,
        duration_ms: float,
        error_message: str | None = None,
    ) -> AuditRecord:
        entry = AuditRecord(
            log_id=str(uuid.uuid4()),
            client_id=client_id,
            operation_type=operation_type,
            statement_hash=statement_hash,
            result_status=AuditStatus(result_status),
            executed_at=datetime.now(timezone.utc).isoformat(),
            duration_ms=round(duration_ms, 3),
            error_message=error_message,
        )
        payload = entry.to_dict()
        with self._lock:
            self._records.append(entry)
            if len(self._records) > self._capacity:
                keep = max(1, self._capacity // 2)
                self._records = self._records[len(self._records) - keep:]

        if self._audit_file is not None:
            line = json.dumps(payload) + "\n"
            with self._file_lock, self._audit_file.open("a", encoding="utf-8") as fh:
                fh.write(line)

        log.info("audit_entry", **payload)
        return entry

    def get_records(self, client_id: str | None = None, limit: int = 100) -> list[AuditRecord]:
        """Return up to *limit* records, newest first, optionally for one client."""
        with self._lock:
            records = list(self._records)
        if client_id is not None:
            records = [r for r in records if r.client_id == client_id]
        return list(reversed(records))[:limit]

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def clear(self) -> None:
        with self._lock:
            self._records.clear()

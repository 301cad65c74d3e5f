"""Audit logger — PII-free trail of every coordination operation.

Each facade call (registration, reservation, status change, case update,
admin action) leaves one ``audit_log`` row, whether it succeeded or not:

* ``input_hash`` — SHA-256 of canonical JSON of the inputs (no raw data).
* ``actor_hash`` — SHA-256 of the caller identity.
* ``sequence``   — the host-supplied sequence position of the operation.

Audit rows are written after the operation's own transaction has committed
or rolled back, so a failed operation is still recorded.
"""

from __future__ import annotations

import hashlib
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from haven.core.storage.database import HavenDatabase

logger = logging.getLogger(__name__)


def _hash_input(data: Any) -> str:
    """SHA-256 hash of canonical JSON, or empty string if not serializable."""
    try:
        canonical = json.dumps(data, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode()).hexdigest()
    except (TypeError, ValueError):
        return ""


def _hash_actor(actor: str) -> str:
    if not actor or not isinstance(actor, str):
        return ""
    return hashlib.sha256(actor.encode("utf-8")).hexdigest()


@dataclass
class AuditEvent:
    """A single audit log entry."""

    operation: str
    actor_hash: str = ""
    input_hash: str = ""
    sequence: int | None = None
    entity_id: str | None = None
    duration_ms: float | None = None
    status: str = "success"              # 'success' | 'failure'
    error_kind: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class AuditLogger:
    """Records audit events to the ``audit_log`` SQLite table.

    Usage::

        audit = AuditLogger(haven_db)
        audit.log_operation(
            "create_service_request",
            caller="provider-7",
            inputs={"resource_id": 3},
            sequence=1200,
            entity_id="42",
        )
    """

    def __init__(self, database: HavenDatabase) -> None:
        self._db = database

    # ---------------------------------------------------------------
    # Write
    # ---------------------------------------------------------------

    def log_event(self, event: AuditEvent) -> str:
        """Insert an audit event and return its UUID (empty string if lost)."""
        event_id = str(uuid.uuid4())
        now = datetime.now(timezone.utc).isoformat()

        metadata_json = (
            json.dumps(event.metadata, separators=(",", ":"), default=str)
            if event.metadata
            else None
        )

        try:
            with self._db.lock:
                self._db.connection.execute(
                    """INSERT INTO audit_log
                       (id, timestamp, operation, actor_hash, input_hash, sequence,
                        entity_id, duration_ms, status, error_kind, metadata_json)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        event_id,
                        now,
                        event.operation,
                        event.actor_hash or None,
                        event.input_hash or None,
                        event.sequence,
                        event.entity_id,
                        event.duration_ms,
                        event.status,
                        event.error_kind,
                        metadata_json,
                    ),
                )
        except Exception:
            logger.exception("Failed to write audit event for %s; event lost", event.operation)
            return ""

        return event_id

    def log_operation(
        self,
        operation: str,
        *,
        caller: str = "",
        inputs: Any = None,
        sequence: int | None = None,
        entity_id: str | int | None = None,
        duration_ms: float | None = None,
        status: str = "success",
        error_kind: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Convenience wrapper: hashes caller and inputs, then logs."""
        return self.log_event(AuditEvent(
            operation=operation,
            actor_hash=_hash_actor(caller),
            input_hash=_hash_input(inputs) if inputs else "",
            sequence=sequence,
            entity_id=str(entity_id) if entity_id is not None else None,
            duration_ms=duration_ms,
            status=status,
            error_kind=error_kind,
            metadata=metadata or {},
        ))

    # ---------------------------------------------------------------
    # Read
    # ---------------------------------------------------------------

    def get_events(
        self,
        *,
        operation: str | None = None,
        status: str | None = None,
        since: str | None = None,
        limit: int = 50,
    ) -> list[dict[str, Any]]:
        """Query audit events with optional filters, newest first."""
        conditions: list[str] = []
        params: list[Any] = []

        if operation:
            conditions.append("operation = ?")
            params.append(operation)
        if status:
            conditions.append("status = ?")
            params.append(status)
        if since:
            conditions.append("timestamp >= ?")
            params.append(since)

        where = (" WHERE " + " AND ".join(conditions)) if conditions else ""
        query = f"SELECT * FROM audit_log{where} ORDER BY timestamp DESC, rowid DESC LIMIT ?"
        params.append(limit)

        with self._db.lock:
            rows = self._db.connection.execute(query, params).fetchall()
        return [dict(row) for row in rows]

    def count_events(self, *, operation: str | None = None, status: str | None = None) -> int:
        """Count audit events, optionally filtered by operation and status."""
        conditions: list[str] = []
        params: list[Any] = []
        if operation:
            conditions.append("operation = ?")
            params.append(operation)
        if status:
            conditions.append("status = ?")
            params.append(status)
        where = (" WHERE " + " AND ".join(conditions)) if conditions else ""
        with self._db.lock:
            row = self._db.connection.execute(
                f"SELECT COUNT(*) FROM audit_log{where}", params
            ).fetchone()
        return row[0]

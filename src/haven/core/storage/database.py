"""SQLite database management for the Haven coordination data bank.

Handles connection lifecycle, schema creation, migrations, and the
serializable transaction every coordination operation runs inside.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

logger = logging.getLogger(__name__)

# Current schema version
SCHEMA_VERSION = 1

# ---------------------------------------------------------------------------
# Schema DDL
# ---------------------------------------------------------------------------

_SCHEMA_V1 = """
CREATE TABLE IF NOT EXISTS clients (
    client_hash          TEXT PRIMARY KEY,
    created_at           INTEGER NOT NULL,
    last_access          INTEGER NOT NULL,
    service_history_hash TEXT NOT NULL DEFAULT '',
    risk_level           INTEGER NOT NULL,
    priority_score       INTEGER NOT NULL DEFAULT 0,
    preferred_services   TEXT NOT NULL DEFAULT '[]',
    accessibility_needs  TEXT NOT NULL DEFAULT '[]',
    emergency_contact_enc TEXT
);

CREATE TABLE IF NOT EXISTS providers (
    provider_id          INTEGER PRIMARY KEY,
    name                 TEXT NOT NULL,
    provider_type        TEXT NOT NULL,
    owner                TEXT NOT NULL,
    contact_info_enc     TEXT,
    offered_services     TEXT NOT NULL DEFAULT '[]',
    capacity_total       INTEGER NOT NULL,
    capacity_utilization INTEGER NOT NULL DEFAULT 0,
    capacity_available   INTEGER NOT NULL,
    location_hash        TEXT NOT NULL DEFAULT '',
    reputation_score     INTEGER NOT NULL,
    status               TEXT NOT NULL,
    created_at           INTEGER NOT NULL
);

-- Slot counters live in clear columns: the reservation path never decrypts
CREATE TABLE IF NOT EXISTS resources (
    resource_id            INTEGER PRIMARY KEY,
    provider_id            INTEGER NOT NULL REFERENCES providers(provider_id),
    resource_type          TEXT NOT NULL,
    name                   TEXT NOT NULL,
    description            TEXT NOT NULL DEFAULT '',
    total_slots            INTEGER NOT NULL,
    available_slots        INTEGER NOT NULL,
    reserved_slots         INTEGER NOT NULL,
    waitlist_count         INTEGER NOT NULL DEFAULT 0,
    start_time             INTEGER NOT NULL,
    end_time               INTEGER NOT NULL,
    location_hash          TEXT NOT NULL DEFAULT '',
    requirements           TEXT NOT NULL DEFAULT '[]',
    accessibility_features TEXT NOT NULL DEFAULT '[]',
    cost                   INTEGER NOT NULL DEFAULT 0,
    status                 TEXT NOT NULL,
    CHECK (available_slots + reserved_slots = total_slots),
    CHECK (available_slots >= 0 AND reserved_slots >= 0)
);

CREATE TABLE IF NOT EXISTS service_requests (
    request_id           INTEGER PRIMARY KEY,
    client_hash          TEXT NOT NULL REFERENCES clients(client_hash),
    service_type         TEXT NOT NULL,
    provider_id          INTEGER NOT NULL REFERENCES providers(provider_id),
    resource_id          INTEGER NOT NULL REFERENCES resources(resource_id),
    requested_time       INTEGER NOT NULL,
    priority             INTEGER NOT NULL,
    special_requirements TEXT NOT NULL DEFAULT '[]',
    status               TEXT NOT NULL,
    assigned_case_worker TEXT,
    outcome_enc          TEXT,
    created_at           INTEGER NOT NULL,
    updated_at           INTEGER NOT NULL,
    expires_at           INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS case_records (
    case_id               INTEGER PRIMARY KEY,
    client_hash           TEXT NOT NULL REFERENCES clients(client_hash),
    case_worker           TEXT NOT NULL,
    service_plan_enc      TEXT,
    goals_enc             TEXT,
    progress_notes_enc    TEXT,
    service_history       TEXT NOT NULL DEFAULT '[]',
    housing_stability     INTEGER NOT NULL DEFAULT 0,
    employment_status     INTEGER NOT NULL DEFAULT 0,
    health_improvements   INTEGER NOT NULL DEFAULT 0,
    service_satisfaction  INTEGER NOT NULL DEFAULT 0,
    privacy_level         INTEGER NOT NULL,
    created_at            INTEGER NOT NULL,
    last_updated          INTEGER NOT NULL
);

-- Singletons: exactly one row each, keyed by id = 1
CREATE TABLE IF NOT EXISTS system_config (
    id                           INTEGER PRIMARY KEY CHECK (id = 1),
    max_reservation_time         INTEGER NOT NULL,
    default_priority_decay       INTEGER NOT NULL,
    minimum_case_update_interval INTEGER NOT NULL,
    privacy_retention_period     INTEGER NOT NULL,
    emergency_override_enabled   INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS privacy_salt (
    id       INTEGER PRIMARY KEY CHECK (id = 1),
    salt_enc TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS counters (
    name  TEXT PRIMARY KEY,
    value INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS case_worker_grants (
    principal   TEXT NOT NULL,
    client_hash TEXT NOT NULL,
    PRIMARY KEY (principal, client_hash)
);

CREATE TABLE IF NOT EXISTS schema_version (
    version    INTEGER NOT NULL,
    applied_at TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_resources_provider ON resources(provider_id);
CREATE INDEX IF NOT EXISTS idx_requests_client    ON service_requests(client_hash);
CREATE INDEX IF NOT EXISTS idx_requests_expiry    ON service_requests(status, expires_at);
CREATE INDEX IF NOT EXISTS idx_cases_client       ON case_records(client_hash);

-- PII-free operation trail
CREATE TABLE IF NOT EXISTS audit_log (
    id            TEXT PRIMARY KEY,
    timestamp     TEXT NOT NULL DEFAULT (datetime('now')),
    operation     TEXT NOT NULL,
    actor_hash    TEXT,
    input_hash    TEXT,
    sequence      INTEGER,
    entity_id     TEXT,
    duration_ms   REAL,
    status        TEXT NOT NULL DEFAULT 'success',
    error_kind    TEXT,
    metadata_json TEXT
);

CREATE INDEX IF NOT EXISTS idx_audit_timestamp ON audit_log(timestamp);
CREATE INDEX IF NOT EXISTS idx_audit_operation ON audit_log(operation);
CREATE INDEX IF NOT EXISTS idx_audit_status    ON audit_log(status);
"""


class DatabaseError(Exception):
    """Raised when database operations fail."""


class HavenDatabase:
    """SQLite database manager for the coordination data bank.

    Supports both file-based and in-memory (`:memory:`) databases.
    In-memory mode is used for testing.

    One connection is shared by every thread; :meth:`transaction` serializes
    access through a re-entrant lock and an ``IMMEDIATE`` SQLite transaction,
    so each coordination operation is applied atomically or not at all.

    Usage::

        db = HavenDatabase(":memory:")
        db.initialize()
        with db.transaction() as conn:
            conn.execute(...)
        db.close()
    """

    def __init__(self, db_path: str = ":memory:") -> None:
        self._db_path = db_path
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()

    @property
    def connection(self) -> sqlite3.Connection:
        """Get the active database connection.

        Raises:
            DatabaseError: If the database has not been initialized.
        """
        if self._conn is None:
            raise DatabaseError("Database not initialized. Call initialize() first.")
        return self._conn

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    def initialize(self) -> None:
        """Create the database connection and ensure schema exists.

        For file-based databases, creates parent directories if needed.
        Idempotent: safe to call multiple times.
        """
        if self._conn is not None:
            return  # Already initialized

        # isolation_level=None: transactions are opened explicitly below
        if self._db_path != ":memory:":
            db_file = Path(self._db_path).expanduser()
            db_file.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(
                str(db_file), isolation_level=None, check_same_thread=False
            )
        else:
            self._conn = sqlite3.connect(
                ":memory:", isolation_level=None, check_same_thread=False
            )

        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._conn.execute("PRAGMA busy_timeout=30000")

        self._ensure_schema()
        logger.info("Haven database initialized: %s", self._db_path)

    def _ensure_schema(self) -> None:
        """Create tables if they don't exist and apply migrations."""
        conn = self.connection

        # CREATE IF NOT EXISTS keeps this idempotent
        conn.executescript(_SCHEMA_V1)

        cursor = conn.execute("SELECT MAX(version) FROM schema_version")
        row = cursor.fetchone()
        current_version = row[0] if row[0] is not None else 0

        if current_version < SCHEMA_VERSION:
            conn.execute(
                "INSERT INTO schema_version (version) VALUES (?)",
                (SCHEMA_VERSION,),
            )
            logger.info(
                "Schema updated from version %d to %d", current_version, SCHEMA_VERSION
            )

    def get_schema_version(self) -> int:
        """Return the current schema version."""
        cursor = self.connection.execute("SELECT MAX(version) FROM schema_version")
        row = cursor.fetchone()
        return row[0] if row[0] is not None else 0

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run the enclosed block as one serializable unit.

        Nested calls join the outermost transaction. Any exception rolls
        back every write made inside the block and is re-raised.
        """
        with self._lock:
            conn = self.connection
            if conn.in_transaction:
                yield conn
                return
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
                logger.info("Haven database closed")

    def __enter__(self) -> HavenDatabase:
        self.initialize()
        return self

    def __exit__(self, *args) -> None:
        self.close()

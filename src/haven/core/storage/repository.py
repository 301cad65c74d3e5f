"""Coordination data repository — CRUD for the encrypted data bank.

The repository mediates between domain objects (clients, providers,
resources, requests, cases) and the SQLite database, using FieldEncryptor to
wrap opaque blobs. It performs no authorization or validation: callers run
it inside :meth:`HavenDatabase.transaction` and own the business rules.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Iterable

from haven.core.errors import SystemStateError
from haven.core.storage.database import HavenDatabase
from haven.core.storage.encryption import FieldEncryptor
from haven.core.storage.models import (
    AnonymousClient,
    Capacity,
    CaseRecord,
    OutcomeMetrics,
    Priority,
    Resource,
    RiskLevel,
    ScheduleWindow,
    ServiceProvider,
    ServiceRequest,
    ServiceType,
    SlotAvailability,
    Status,
    SystemConfig,
)

logger = logging.getLogger(__name__)

COUNTER_NAMES = frozenset({"provider", "resource", "request", "case"})


class RepositoryError(Exception):
    """Raised when repository operations fail."""


def _dumps(values: Iterable[Any]) -> str:
    return json.dumps(list(values), separators=(",", ":"))


def _loads(text: str | None) -> list[Any]:
    if not text:
        return []
    try:
        return json.loads(text)
    except (json.JSONDecodeError, TypeError) as exc:
        raise RepositoryError(f"Corrupt list column: {exc}") from exc


class HavenRepository:
    """CRUD repository for the five keyed collections and the singletons.

    Usage::

        db = HavenDatabase(":memory:")
        db.initialize()
        repo = HavenRepository(db, FieldEncryptor(key="..."))

        with db.transaction():
            provider_id = repo.next_id("provider")
            repo.insert_provider(provider)
    """

    def __init__(self, database: HavenDatabase, encryptor: FieldEncryptor) -> None:
        self._db = database
        self._enc = encryptor

    @property
    def database(self) -> HavenDatabase:
        return self._db

    # ------------------------------------------------------------------
    # Counters
    # ------------------------------------------------------------------

    def next_id(self, name: str) -> int:
        """Advance and return a monotonic counter; the first value is 1."""
        if name not in COUNTER_NAMES:
            raise RepositoryError(f"Unknown counter: {name!r}. Valid: {sorted(COUNTER_NAMES)}")
        conn = self._db.connection
        row = conn.execute("SELECT value FROM counters WHERE name = ?", (name,)).fetchone()
        value = (row[0] if row is not None else 0) + 1
        conn.execute(
            """INSERT INTO counters (name, value) VALUES (?, ?)
               ON CONFLICT(name) DO UPDATE SET value = excluded.value""",
            (name, value),
        )
        return value

    # ------------------------------------------------------------------
    # Singletons: system config and privacy salt
    # ------------------------------------------------------------------

    def has_config(self) -> bool:
        row = self._db.connection.execute("SELECT 1 FROM system_config WHERE id = 1").fetchone()
        return row is not None

    def load_config(self) -> SystemConfig:
        """Return the system config.

        Raises:
            SystemStateError: If the singleton row is missing.
        """
        row = self._db.connection.execute("SELECT * FROM system_config WHERE id = 1").fetchone()
        if row is None:
            raise SystemStateError("System config missing; the system was not initialized")
        return SystemConfig(
            max_reservation_time=row["max_reservation_time"],
            default_priority_decay=row["default_priority_decay"],
            minimum_case_update_interval=row["minimum_case_update_interval"],
            privacy_retention_period=row["privacy_retention_period"],
            emergency_override_enabled=bool(row["emergency_override_enabled"]),
        )

    def save_config(self, config: SystemConfig) -> None:
        self._db.connection.execute(
            """INSERT INTO system_config (
                id, max_reservation_time, default_priority_decay,
                minimum_case_update_interval, privacy_retention_period,
                emergency_override_enabled
            ) VALUES (1, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                max_reservation_time = excluded.max_reservation_time,
                default_priority_decay = excluded.default_priority_decay,
                minimum_case_update_interval = excluded.minimum_case_update_interval,
                privacy_retention_period = excluded.privacy_retention_period,
                emergency_override_enabled = excluded.emergency_override_enabled""",
            (
                config.max_reservation_time,
                config.default_priority_decay,
                config.minimum_case_update_interval,
                config.privacy_retention_period,
                int(config.emergency_override_enabled),
            ),
        )

    def has_salt(self) -> bool:
        row = self._db.connection.execute("SELECT 1 FROM privacy_salt WHERE id = 1").fetchone()
        return row is not None

    def load_salt(self) -> bytes:
        """Return the privacy salt.

        Raises:
            SystemStateError: If the singleton row is missing.
        """
        row = self._db.connection.execute("SELECT salt_enc FROM privacy_salt WHERE id = 1").fetchone()
        if row is None:
            raise SystemStateError("Privacy salt missing; the system was not initialized")
        return self._enc.decrypt_secret(row["salt_enc"])

    def save_salt(self, salt: bytes) -> None:
        self._db.connection.execute(
            """INSERT INTO privacy_salt (id, salt_enc) VALUES (1, ?)
               ON CONFLICT(id) DO UPDATE SET salt_enc = excluded.salt_enc""",
            (self._enc.encrypt_secret(salt),),
        )

    # ------------------------------------------------------------------
    # Case-worker grants
    # ------------------------------------------------------------------

    def add_grant(self, principal: str, client_hash: str) -> bool:
        """Record a case-worker grant. Returns False if it already existed."""
        cursor = self._db.connection.execute(
            "INSERT OR IGNORE INTO case_worker_grants (principal, client_hash) VALUES (?, ?)",
            (principal, client_hash),
        )
        return cursor.rowcount > 0

    def remove_grant(self, principal: str, client_hash: str) -> bool:
        cursor = self._db.connection.execute(
            "DELETE FROM case_worker_grants WHERE principal = ? AND client_hash = ?",
            (principal, client_hash),
        )
        return cursor.rowcount > 0

    def has_grant(self, principal: str, client_hash: str) -> bool:
        row = self._db.connection.execute(
            "SELECT 1 FROM case_worker_grants WHERE principal = ? AND client_hash = ?",
            (principal, client_hash),
        ).fetchone()
        return row is not None

    def get_grants(self, principal: str) -> list[str]:
        """Client hashes a principal is authorized for."""
        rows = self._db.connection.execute(
            "SELECT client_hash FROM case_worker_grants WHERE principal = ? ORDER BY client_hash",
            (principal,),
        ).fetchall()
        return [row[0] for row in rows]

    # ------------------------------------------------------------------
    # Clients
    # ------------------------------------------------------------------

    def insert_client(self, client: AnonymousClient) -> None:
        self._db.connection.execute(
            """INSERT INTO clients (
                client_hash, created_at, last_access, service_history_hash,
                risk_level, priority_score, preferred_services,
                accessibility_needs, emergency_contact_enc
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                client.client_hash,
                client.created_at,
                client.last_access,
                client.service_history_hash,
                int(client.risk_level),
                client.priority_score,
                _dumps(s.value for s in client.preferred_services),
                _dumps(client.accessibility_needs),
                self._enc.encrypt(client.emergency_contact),
            ),
        )

    def update_client(self, client: AnonymousClient) -> None:
        self._db.connection.execute(
            """UPDATE clients SET
                last_access = ?, service_history_hash = ?, risk_level = ?,
                priority_score = ?, preferred_services = ?,
                accessibility_needs = ?, emergency_contact_enc = ?
               WHERE client_hash = ?""",
            (
                client.last_access,
                client.service_history_hash,
                int(client.risk_level),
                client.priority_score,
                _dumps(s.value for s in client.preferred_services),
                _dumps(client.accessibility_needs),
                self._enc.encrypt(client.emergency_contact),
                client.client_hash,
            ),
        )

    def get_client(self, client_hash: str) -> AnonymousClient | None:
        row = self._db.connection.execute(
            "SELECT * FROM clients WHERE client_hash = ?", (client_hash,)
        ).fetchone()
        if row is None:
            return None
        return AnonymousClient(
            client_hash=row["client_hash"],
            created_at=row["created_at"],
            last_access=row["last_access"],
            service_history_hash=row["service_history_hash"],
            risk_level=RiskLevel(row["risk_level"]),
            priority_score=row["priority_score"],
            preferred_services=[ServiceType(s) for s in _loads(row["preferred_services"])],
            accessibility_needs=_loads(row["accessibility_needs"]),
            emergency_contact=self._enc.decrypt(row["emergency_contact_enc"] or ""),
        )

    # ------------------------------------------------------------------
    # Providers
    # ------------------------------------------------------------------

    def insert_provider(self, provider: ServiceProvider) -> None:
        self._db.connection.execute(
            """INSERT INTO providers (
                provider_id, name, provider_type, owner, contact_info_enc,
                offered_services, capacity_total, capacity_utilization,
                capacity_available, location_hash, reputation_score, status,
                created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                provider.provider_id,
                provider.name,
                provider.provider_type,
                provider.owner,
                self._enc.encrypt(provider.contact_info),
                _dumps(s.value for s in provider.offered_services),
                provider.capacity.total,
                provider.capacity.current_utilization,
                provider.capacity.available,
                provider.location_hash,
                provider.reputation_score,
                provider.status.value,
                provider.created_at,
            ),
        )

    def update_provider(self, provider: ServiceProvider) -> None:
        """Persist the mutable provider fields (capacity, status, reputation)."""
        self._db.connection.execute(
            """UPDATE providers SET
                capacity_total = ?, capacity_utilization = ?,
                capacity_available = ?, reputation_score = ?, status = ?
               WHERE provider_id = ?""",
            (
                provider.capacity.total,
                provider.capacity.current_utilization,
                provider.capacity.available,
                provider.reputation_score,
                provider.status.value,
                provider.provider_id,
            ),
        )

    def get_provider(self, provider_id: int) -> ServiceProvider | None:
        row = self._db.connection.execute(
            "SELECT * FROM providers WHERE provider_id = ?", (provider_id,)
        ).fetchone()
        if row is None:
            return None
        return ServiceProvider(
            provider_id=row["provider_id"],
            name=row["name"],
            provider_type=row["provider_type"],
            owner=row["owner"],
            capacity=Capacity(
                total=row["capacity_total"],
                current_utilization=row["capacity_utilization"],
                available=row["capacity_available"],
            ),
            offered_services=[ServiceType(s) for s in _loads(row["offered_services"])],
            contact_info=self._enc.decrypt(row["contact_info_enc"] or ""),
            location_hash=row["location_hash"],
            reputation_score=row["reputation_score"],
            status=Status(row["status"]),
            created_at=row["created_at"],
        )

    # ------------------------------------------------------------------
    # Resources
    # ------------------------------------------------------------------

    def insert_resource(self, resource: Resource) -> None:
        slots = resource.availability
        self._db.connection.execute(
            """INSERT INTO resources (
                resource_id, provider_id, resource_type, name, description,
                total_slots, available_slots, reserved_slots, waitlist_count,
                start_time, end_time, location_hash, requirements,
                accessibility_features, cost, status
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                resource.resource_id,
                resource.provider_id,
                resource.resource_type.value,
                resource.name,
                resource.description,
                slots.total_slots,
                slots.available_slots,
                slots.reserved_slots,
                slots.waitlist_count,
                resource.schedule.start_time,
                resource.schedule.end_time,
                resource.location_hash,
                _dumps(resource.requirements),
                _dumps(resource.accessibility_features),
                resource.cost,
                resource.status.value,
            ),
        )

    def update_resource(self, resource: Resource) -> None:
        """Persist slot counters and status."""
        slots = resource.availability
        self._db.connection.execute(
            """UPDATE resources SET
                available_slots = ?, reserved_slots = ?, waitlist_count = ?,
                status = ?
               WHERE resource_id = ?""",
            (
                slots.available_slots,
                slots.reserved_slots,
                slots.waitlist_count,
                resource.status.value,
                resource.resource_id,
            ),
        )

    def get_resource(self, resource_id: int) -> Resource | None:
        row = self._db.connection.execute(
            "SELECT * FROM resources WHERE resource_id = ?", (resource_id,)
        ).fetchone()
        if row is None:
            return None
        return self._row_to_resource(row)

    def get_resources_for_provider(self, provider_id: int) -> list[Resource]:
        rows = self._db.connection.execute(
            "SELECT * FROM resources WHERE provider_id = ? ORDER BY resource_id",
            (provider_id,),
        ).fetchall()
        return [self._row_to_resource(row) for row in rows]

    # ------------------------------------------------------------------
    # Service requests
    # ------------------------------------------------------------------

    def insert_request(self, request: ServiceRequest) -> None:
        self._db.connection.execute(
            """INSERT INTO service_requests (
                request_id, client_hash, service_type, provider_id,
                resource_id, requested_time, priority, special_requirements,
                status, assigned_case_worker, outcome_enc, created_at,
                updated_at, expires_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                request.request_id,
                request.client_hash,
                request.service_type.value,
                request.provider_id,
                request.resource_id,
                request.requested_time,
                int(request.priority),
                _dumps(request.special_requirements),
                request.status.value,
                request.assigned_case_worker,
                self._enc.encrypt(request.outcome),
                request.created_at,
                request.updated_at,
                request.expires_at,
            ),
        )

    def update_request(self, request: ServiceRequest) -> None:
        self._db.connection.execute(
            """UPDATE service_requests SET
                status = ?, assigned_case_worker = ?, outcome_enc = ?,
                updated_at = ?
               WHERE request_id = ?""",
            (
                request.status.value,
                request.assigned_case_worker,
                self._enc.encrypt(request.outcome),
                request.updated_at,
                request.request_id,
            ),
        )

    def get_request(self, request_id: int) -> ServiceRequest | None:
        row = self._db.connection.execute(
            "SELECT * FROM service_requests WHERE request_id = ?", (request_id,)
        ).fetchone()
        if row is None:
            return None
        return self._row_to_request(row)

    def get_requests_expiring_by(
        self, sequence: int, statuses: list[Status]
    ) -> list[ServiceRequest]:
        """Requests in one of ``statuses`` whose ``expires_at <= sequence``."""
        if not statuses:
            return []
        placeholders = ",".join("?" for _ in statuses)
        rows = self._db.connection.execute(
            f"""SELECT * FROM service_requests
                WHERE status IN ({placeholders}) AND expires_at <= ?
                ORDER BY expires_at, request_id""",
            [s.value for s in statuses] + [sequence],
        ).fetchall()
        return [self._row_to_request(row) for row in rows]

    # ------------------------------------------------------------------
    # Case records
    # ------------------------------------------------------------------

    def insert_case(self, case: CaseRecord) -> None:
        metrics = case.outcome_metrics
        self._db.connection.execute(
            """INSERT INTO case_records (
                case_id, client_hash, case_worker, service_plan_enc, goals_enc,
                progress_notes_enc, service_history, housing_stability,
                employment_status, health_improvements, service_satisfaction,
                privacy_level, created_at, last_updated
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                case.case_id,
                case.client_hash,
                case.case_worker,
                self._enc.encrypt(case.service_plan),
                self._enc.encrypt(case.goals),
                self._enc.encrypt(case.progress_notes),
                _dumps(case.service_history),
                metrics.housing_stability,
                metrics.employment_status,
                metrics.health_improvements,
                metrics.service_satisfaction,
                case.privacy_level,
                case.created_at,
                case.last_updated,
            ),
        )

    def update_case(self, case: CaseRecord) -> None:
        """Persist the append-only lists, metrics and ``last_updated``."""
        metrics = case.outcome_metrics
        self._db.connection.execute(
            """UPDATE case_records SET
                progress_notes_enc = ?, service_history = ?,
                housing_stability = ?, employment_status = ?,
                health_improvements = ?, service_satisfaction = ?,
                last_updated = ?
               WHERE case_id = ?""",
            (
                self._enc.encrypt(case.progress_notes),
                _dumps(case.service_history),
                metrics.housing_stability,
                metrics.employment_status,
                metrics.health_improvements,
                metrics.service_satisfaction,
                case.last_updated,
                case.case_id,
            ),
        )

    def get_case(self, case_id: int) -> CaseRecord | None:
        row = self._db.connection.execute(
            "SELECT * FROM case_records WHERE case_id = ?", (case_id,)
        ).fetchone()
        if row is None:
            return None
        return CaseRecord(
            case_id=row["case_id"],
            client_hash=row["client_hash"],
            case_worker=row["case_worker"],
            privacy_level=row["privacy_level"],
            created_at=row["created_at"],
            last_updated=row["last_updated"],
            service_plan=self._enc.decrypt(row["service_plan_enc"] or ""),
            goals=self._enc.decrypt(row["goals_enc"] or "") or [],
            progress_notes=self._enc.decrypt(row["progress_notes_enc"] or "") or [],
            service_history=_loads(row["service_history"]),
            outcome_metrics=OutcomeMetrics(
                housing_stability=row["housing_stability"],
                employment_status=row["employment_status"],
                health_improvements=row["health_improvements"],
                service_satisfaction=row["service_satisfaction"],
            ),
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_resource(row: Any) -> Resource:
        return Resource(
            resource_id=row["resource_id"],
            provider_id=row["provider_id"],
            resource_type=ServiceType(row["resource_type"]),
            name=row["name"],
            description=row["description"],
            availability=SlotAvailability(
                total_slots=row["total_slots"],
                available_slots=row["available_slots"],
                reserved_slots=row["reserved_slots"],
                waitlist_count=row["waitlist_count"],
            ),
            schedule=ScheduleWindow(start_time=row["start_time"], end_time=row["end_time"]),
            location_hash=row["location_hash"],
            requirements=_loads(row["requirements"]),
            accessibility_features=_loads(row["accessibility_features"]),
            cost=row["cost"],
            status=Status(row["status"]),
        )

    def _row_to_request(self, row: Any) -> ServiceRequest:
        return ServiceRequest(
            request_id=row["request_id"],
            client_hash=row["client_hash"],
            service_type=ServiceType(row["service_type"]),
            provider_id=row["provider_id"],
            resource_id=row["resource_id"],
            requested_time=row["requested_time"],
            priority=Priority(row["priority"]),
            status=Status(row["status"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            expires_at=row["expires_at"],
            special_requirements=_loads(row["special_requirements"]),
            assigned_case_worker=row["assigned_case_worker"],
            outcome=self._enc.decrypt(row["outcome_enc"] or ""),
        )

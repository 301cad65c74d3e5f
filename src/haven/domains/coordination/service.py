"""Coordination service — the facade every collaborator talks to.

This module provides:
- ``CoordinationService``: one method per public operation. Each runs as a
  single serializable transaction against the data bank, is audit-logged,
  and returns an ``OperationResult`` instead of raising.
- ``create_service()``: factory wiring settings, storage and encryption.

Caller identity (``caller``) and the host sequence position (``now``) are
explicit keyword arguments on every mutating operation.
"""

from __future__ import annotations

import dataclasses
import enum
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

from haven.core.audit.logger import AuditLogger
from haven.core.config.settings import Settings, configure_logging, get_settings
from haven.core.errors import ErrorKind, ServiceError, SystemStateError
from haven.core.privacy.access import AccessAuthorizer
from haven.core.privacy.identity import IdentityHasher, generate_salt
from haven.core.storage.database import HavenDatabase
from haven.core.storage.encryption import EncryptionError, FieldEncryptor
from haven.core.storage.models import (
    AnonymousClient,
    CaseRecord,
    OutcomeMetrics,
    Resource,
    ServiceProvider,
    ServiceRequest,
    SystemConfig,
)
from haven.core.storage.repository import HavenRepository
from haven.domains.coordination.admin import SystemAdministrator
from haven.domains.coordination.cases import CaseRecordManager
from haven.domains.coordination.clients import ClientDirectory
from haven.domains.coordination.lifecycle import RequestStateMachine
from haven.domains.coordination.registry import ProviderRegistry
from haven.domains.coordination.reservation import ReservationEngine
from haven.domains.coordination.validation import require_int, require_text

logger = logging.getLogger(__name__)


def to_data(value: Any) -> Any:
    """Dataclasses and enums to plain JSON-friendly values."""
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: to_data(getattr(value, f.name)) for f in dataclasses.fields(value)}
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, list):
        return [to_data(v) for v in value]
    if isinstance(value, dict):
        return {k: to_data(v) for k, v in value.items()}
    return value


@dataclass(frozen=True)
class OperationResult:
    """Outcome of a coordination operation."""

    success: bool
    data: dict[str, Any] = field(default_factory=dict)
    error: ErrorKind | None = None
    message: str = ""

    @classmethod
    def failure(cls, exc: ServiceError) -> OperationResult:
        return cls(success=False, error=exc.kind, message=exc.message, data=dict(exc.details))


class CoordinationService:
    """Privacy-gated reservation and case lifecycle engine.

    Usage::

        service = create_service(owner="admin")
        client = service.register_client(b"raw id", risk_level=2, now=10)
        provider = service.register_provider(
            "Harbor House", "shelter", None, ["shelter"], 40, caller="org-1", now=11
        )
        resource = service.add_resource(
            provider.data["provider_id"], resource_type="shelter", name="Beds",
            total_slots=3, start_time=0, end_time=168, caller="org-1", now=12,
        )
        service.grant_case_worker("org-1", client.data["client_hash"], caller="admin", now=13)
        result = service.create_service_request(
            client.data["client_hash"], "shelter", provider.data["provider_id"],
            resource.data["resource_id"], 20, priority=2, caller="org-1", now=14,
        )
    """

    def __init__(
        self,
        database: HavenDatabase,
        encryptor: FieldEncryptor,
        *,
        owner: str,
        initial_config: SystemConfig | None = None,
    ) -> None:
        if not owner:
            raise SystemStateError("A system owner must be designated")
        self._db = database
        self._db.initialize()
        self._repo = HavenRepository(database, encryptor)
        self._audit = AuditLogger(database)

        self._hasher = IdentityHasher(self._repo)
        self._authorizer = AccessAuthorizer(self._repo, owner)
        self._clients = ClientDirectory(self._repo, self._hasher, self._authorizer)
        self._registry = ProviderRegistry(self._repo)
        self._reservations = ReservationEngine(self._registry)
        self._lifecycle = RequestStateMachine(
            self._repo, self._authorizer, self._clients, self._registry, self._reservations
        )
        self._cases = CaseRecordManager(self._repo)
        self._admin = SystemAdministrator(self._repo, self._authorizer)

        self._bootstrap(initial_config or SystemConfig())

    def _bootstrap(self, initial_config: SystemConfig) -> None:
        """Create the config and salt singletons on first start."""
        with self._db.transaction():
            if not self._repo.has_config():
                self._repo.save_config(initial_config)
                logger.info("Initialized system config with defaults")
            if not self._repo.has_salt():
                self._repo.save_salt(generate_salt())
                logger.info("Initialized privacy salt")
            # Fail fast on a corrupt singleton.
            self._repo.load_config()
            self._repo.load_salt()

    @property
    def owner(self) -> str:
        return self._authorizer.owner

    @property
    def audit(self) -> AuditLogger:
        return self._audit

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _execute(
        self,
        operation: str,
        fn: Callable[[], dict[str, Any]],
        *,
        caller: str,
        now: int | None,
        inputs: Mapping[str, Any] | None = None,
        entity_key: str | None = None,
    ) -> OperationResult:
        start_time = time.monotonic()
        try:
            require_text(caller, "Caller")
            if now is not None:
                require_int(now, "Sequence position")
            with self._db.transaction():
                data = fn()
        except ServiceError as exc:
            elapsed_ms = (time.monotonic() - start_time) * 1000
            logger.info("%s failed: %s (%s)", operation, exc.kind.value, exc.message)
            self._audit.log_operation(
                operation,
                caller=caller,
                inputs=dict(inputs or {}),
                sequence=now,
                duration_ms=round(elapsed_ms, 3),
                status="failure",
                error_kind=exc.kind.value,
            )
            return OperationResult.failure(exc)

        elapsed_ms = (time.monotonic() - start_time) * 1000
        self._audit.log_operation(
            operation,
            caller=caller,
            inputs=dict(inputs or {}),
            sequence=now,
            entity_id=data.get(entity_key) if entity_key else None,
            duration_ms=round(elapsed_ms, 3),
        )
        return OperationResult(success=True, data=data)

    # ------------------------------------------------------------------
    # Identity & clients
    # ------------------------------------------------------------------

    def derive_client_hash(self, raw_identifying_data: bytes) -> str:
        with self._db.transaction():
            return self._hasher.derive_client_hash(raw_identifying_data)

    def can_access(self, actor: str, client_hash: str, now: int) -> bool:
        with self._db.transaction():
            return self._authorizer.can_access(actor, client_hash, now)

    def register_client(
        self,
        raw_identifying_data: bytes,
        *,
        risk_level: int,
        priority_score: int = 0,
        preferred_services: list[str] | None = None,
        accessibility_needs: list[str] | None = None,
        emergency_contact: str | None = None,
        caller: str = "",
        now: int,
    ) -> OperationResult:
        def run() -> dict[str, Any]:
            client = self._clients.register_client(
                raw_identifying_data,
                risk_level=risk_level,
                priority_score=priority_score,
                preferred_services=preferred_services,
                accessibility_needs=accessibility_needs,
                emergency_contact=emergency_contact,
                now=now,
            )
            return {"client_hash": client.client_hash}

        # Raw identifying data never enters the audit trail, not even hashed.
        return self._execute(
            "register_client",
            run,
            caller=caller,
            now=now,
            inputs={"risk_level": risk_level, "priority_score": priority_score},
        )

    def refresh_client_access(self, client_hash: str, *, caller: str, now: int) -> OperationResult:
        def run() -> dict[str, Any]:
            client = self._clients.refresh_access(client_hash, caller=caller, now=now)
            return {"client_hash": client.client_hash, "last_access": client.last_access}

        return self._execute(
            "refresh_client_access", run, caller=caller, now=now,
            inputs={"client_hash": client_hash},
        )

    def view_client(self, client_hash: str, *, caller: str, now: int) -> OperationResult:
        def run() -> dict[str, Any]:
            return {"client": to_data(self._clients.view_client(client_hash, caller=caller, now=now))}

        return self._execute(
            "view_client", run, caller=caller, now=now, inputs={"client_hash": client_hash}
        )

    # ------------------------------------------------------------------
    # Providers & resources
    # ------------------------------------------------------------------

    def register_provider(
        self,
        name: str,
        provider_type: str,
        contact_info: str | None,
        offered_services: list[str],
        total_capacity: int,
        location_hash: str = "",
        *,
        caller: str,
        now: int,
    ) -> OperationResult:
        def run() -> dict[str, Any]:
            provider = self._registry.register_provider(
                name=name,
                provider_type=provider_type,
                contact_info=contact_info,
                offered_services=offered_services,
                total_capacity=total_capacity,
                location_hash=location_hash,
                caller=caller,
                now=now,
            )
            return {"provider_id": provider.provider_id}

        return self._execute(
            "register_provider", run, caller=caller, now=now,
            inputs={"name": name, "total_capacity": total_capacity},
            entity_key="provider_id",
        )

    def update_capacity(
        self, provider_id: int, new_capacity: int, *, caller: str, now: int
    ) -> OperationResult:
        def run() -> dict[str, Any]:
            provider = self._registry.update_capacity(provider_id, new_capacity, caller=caller)
            return {"provider_id": provider_id, "capacity": to_data(provider.capacity)}

        return self._execute(
            "update_capacity", run, caller=caller, now=now,
            inputs={"provider_id": provider_id, "new_capacity": new_capacity},
            entity_key="provider_id",
        )

    def set_provider_status(
        self, provider_id: int, status: str, *, caller: str, now: int
    ) -> OperationResult:
        def run() -> dict[str, Any]:
            provider = self._registry.set_provider_status(provider_id, status, caller=caller)
            return {"provider_id": provider_id, "status": provider.status.value}

        return self._execute(
            "set_provider_status", run, caller=caller, now=now,
            inputs={"provider_id": provider_id, "status": str(status)},
            entity_key="provider_id",
        )

    def add_resource(
        self,
        provider_id: int,
        *,
        resource_type: str,
        name: str,
        total_slots: int,
        start_time: int,
        end_time: int,
        description: str = "",
        location_hash: str = "",
        requirements: list[str] | None = None,
        accessibility_features: list[str] | None = None,
        cost: int = 0,
        caller: str,
        now: int,
    ) -> OperationResult:
        def run() -> dict[str, Any]:
            resource = self._registry.add_resource(
                provider_id,
                resource_type=resource_type,
                name=name,
                total_slots=total_slots,
                start_time=start_time,
                end_time=end_time,
                description=description,
                location_hash=location_hash,
                requirements=requirements,
                accessibility_features=accessibility_features,
                cost=cost,
                caller=caller,
            )
            return {"resource_id": resource.resource_id}

        return self._execute(
            "add_resource", run, caller=caller, now=now,
            inputs={"provider_id": provider_id, "total_slots": total_slots},
            entity_key="resource_id",
        )

    def set_available_slots(
        self, resource_id: int, available_slots: int, *, caller: str, now: int
    ) -> OperationResult:
        def run() -> dict[str, Any]:
            resource = self._registry.set_available_slots(resource_id, available_slots, caller=caller)
            return {"resource_id": resource_id, "availability": to_data(resource.availability)}

        return self._execute(
            "set_available_slots", run, caller=caller, now=now,
            inputs={"resource_id": resource_id, "available_slots": available_slots},
            entity_key="resource_id",
        )

    def set_resource_status(
        self, resource_id: int, status: str, *, caller: str, now: int
    ) -> OperationResult:
        def run() -> dict[str, Any]:
            resource = self._registry.set_resource_status(resource_id, status, caller=caller)
            return {"resource_id": resource_id, "status": resource.status.value}

        return self._execute(
            "set_resource_status", run, caller=caller, now=now,
            inputs={"resource_id": resource_id, "status": str(status)},
            entity_key="resource_id",
        )

    # ------------------------------------------------------------------
    # Service requests
    # ------------------------------------------------------------------

    def create_service_request(
        self,
        client_hash: str,
        service_type: str,
        provider_id: int,
        resource_id: int,
        requested_time: int,
        priority: int,
        special_requirements: list[str] | None = None,
        *,
        caller: str,
        now: int,
    ) -> OperationResult:
        def run() -> dict[str, Any]:
            request = self._lifecycle.create_request(
                client_hash,
                service_type=service_type,
                provider_id=provider_id,
                resource_id=resource_id,
                requested_time=requested_time,
                priority=priority,
                special_requirements=special_requirements,
                caller=caller,
                now=now,
            )
            return {
                "request_id": request.request_id,
                "status": request.status.value,
                "expires_at": request.expires_at,
            }

        return self._execute(
            "create_service_request", run, caller=caller, now=now,
            inputs={
                "client_hash": client_hash,
                "provider_id": provider_id,
                "resource_id": resource_id,
                "priority": priority,
            },
            entity_key="request_id",
        )

    def update_service_request_status(
        self,
        request_id: int,
        new_status: str,
        *,
        caller: str,
        now: int,
        outcome: str | None = None,
    ) -> OperationResult:
        def run() -> dict[str, Any]:
            request = self._lifecycle.update_status(
                request_id, new_status, caller=caller, now=now, outcome=outcome
            )
            return {"request_id": request_id, "status": request.status.value}

        return self._execute(
            "update_service_request_status", run, caller=caller, now=now,
            inputs={"request_id": request_id, "new_status": str(new_status)},
            entity_key="request_id",
        )

    def cancel_service_request(self, request_id: int, *, caller: str, now: int) -> OperationResult:
        """Shorthand for a transition to CANCELLED."""
        return self.update_service_request_status(request_id, "cancelled", caller=caller, now=now)

    def assign_request_case_worker(
        self, request_id: int, case_worker: str, *, caller: str, now: int
    ) -> OperationResult:
        def run() -> dict[str, Any]:
            request = self._lifecycle.assign_case_worker(
                request_id, case_worker, caller=caller, now=now
            )
            return {"request_id": request_id, "assigned_case_worker": request.assigned_case_worker}

        return self._execute(
            "assign_request_case_worker", run, caller=caller, now=now,
            inputs={"request_id": request_id}, entity_key="request_id",
        )

    # ------------------------------------------------------------------
    # Case records
    # ------------------------------------------------------------------

    def create_case(
        self,
        client_hash: str,
        service_plan: str | None,
        goals: list[str] | None,
        privacy_level: int,
        *,
        caller: str,
        now: int,
    ) -> OperationResult:
        def run() -> dict[str, Any]:
            case = self._cases.create_case(
                client_hash,
                service_plan=service_plan,
                goals=goals,
                privacy_level=privacy_level,
                caller=caller,
                now=now,
            )
            return {"case_id": case.case_id}

        return self._execute(
            "create_case", run, caller=caller, now=now,
            inputs={"client_hash": client_hash, "privacy_level": privacy_level},
            entity_key="case_id",
        )

    def append_progress(
        self,
        case_id: int,
        note: str,
        outcome_metrics: OutcomeMetrics | Mapping[str, Any],
        *,
        caller: str,
        now: int,
    ) -> OperationResult:
        def run() -> dict[str, Any]:
            case = self._cases.append_progress(case_id, note, outcome_metrics, caller=caller, now=now)
            return {"case_id": case_id, "progress_notes": len(case.progress_notes)}

        return self._execute(
            "append_progress", run, caller=caller, now=now,
            inputs={"case_id": case_id}, entity_key="case_id",
        )

    def record_case_service(
        self, case_id: int, request_id: int, *, caller: str, now: int
    ) -> OperationResult:
        def run() -> dict[str, Any]:
            case = self._cases.record_service(case_id, request_id, caller=caller, now=now)
            return {"case_id": case_id, "service_history": list(case.service_history)}

        return self._execute(
            "record_case_service", run, caller=caller, now=now,
            inputs={"case_id": case_id, "request_id": request_id}, entity_key="case_id",
        )

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def replace_config(self, config: SystemConfig, *, caller: str, now: int) -> OperationResult:
        def run() -> dict[str, Any]:
            return {"config": to_data(self._admin.replace_config(config, caller=caller))}

        return self._execute(
            "replace_config", run, caller=caller, now=now,
            inputs=dataclasses.asdict(config) if isinstance(config, SystemConfig) else None,
        )

    def set_emergency_override(self, enabled: bool, *, caller: str, now: int) -> OperationResult:
        def run() -> dict[str, Any]:
            config = self._admin.set_emergency_override(enabled, caller=caller)
            return {"emergency_override_enabled": config.emergency_override_enabled}

        return self._execute(
            "set_emergency_override", run, caller=caller, now=now, inputs={"enabled": bool(enabled)}
        )

    def rotate_salt(self, new_salt: bytes | None = None, *, caller: str, now: int) -> OperationResult:
        def run() -> dict[str, Any]:
            self._admin.rotate_salt(new_salt, caller=caller)
            return {"rotated": True}

        return self._execute("rotate_salt", run, caller=caller, now=now)

    def grant_case_worker(
        self, principal: str, client_hash: str, *, caller: str, now: int
    ) -> OperationResult:
        def run() -> dict[str, Any]:
            added = self._admin.grant_case_worker(principal, client_hash, caller=caller)
            return {"granted": added}

        return self._execute(
            "grant_case_worker", run, caller=caller, now=now, inputs={"client_hash": client_hash}
        )

    def revoke_case_worker(
        self, principal: str, client_hash: str, *, caller: str, now: int
    ) -> OperationResult:
        def run() -> dict[str, Any]:
            removed = self._admin.revoke_case_worker(principal, client_hash, caller=caller)
            return {"revoked": removed}

        return self._execute(
            "revoke_case_worker", run, caller=caller, now=now, inputs={"client_hash": client_hash}
        )

    def list_case_worker_grants(self, principal: str, *, caller: str, now: int) -> OperationResult:
        def run() -> dict[str, Any]:
            return {"client_hashes": self._admin.list_grants(principal, caller=caller)}

        return self._execute("list_case_worker_grants", run, caller=caller, now=now)

    # ------------------------------------------------------------------
    # Read accessors (side-effect free, None when absent)
    # ------------------------------------------------------------------

    def get_client(self, client_hash: str) -> AnonymousClient | None:
        """Unchecked read for the trusted host process.

        No actor is named, so no ``can_access`` check or audit row applies.
        Reads on behalf of an actor go through ``view_client``.
        """
        with self._db.transaction():
            return self._repo.get_client(client_hash)

    def get_provider(self, provider_id: int) -> ServiceProvider | None:
        with self._db.transaction():
            return self._repo.get_provider(provider_id)

    def get_resource(self, resource_id: int) -> Resource | None:
        with self._db.transaction():
            return self._repo.get_resource(resource_id)

    def get_resources_for_provider(self, provider_id: int) -> list[Resource]:
        with self._db.transaction():
            return self._repo.get_resources_for_provider(provider_id)

    def get_request(self, request_id: int) -> ServiceRequest | None:
        with self._db.transaction():
            return self._repo.get_request(request_id)

    def get_case(self, case_id: int) -> CaseRecord | None:
        with self._db.transaction():
            return self._repo.get_case(case_id)

    def get_config(self) -> SystemConfig:
        with self._db.transaction():
            return self._repo.load_config()

    def list_expired_requests(self, now: int) -> list[ServiceRequest]:
        with self._db.transaction():
            return self._lifecycle.list_expired(now)

    def close(self) -> None:
        self._db.close()


def create_service(
    *,
    settings: Settings | None = None,
    database: HavenDatabase | None = None,
    encryptor: FieldEncryptor | None = None,
    owner: str | None = None,
) -> CoordinationService:
    """Build a coordination service from settings, with optional overrides.

    Raises:
        EncryptionError: No encryptor given and ``ENCRYPTION_KEY`` unset or invalid.
        SystemStateError: No system owner configured.
    """
    settings = settings or get_settings()
    configure_logging(settings)

    if encryptor is None:
        if not settings.encryption_key:
            raise EncryptionError(
                "No ENCRYPTION_KEY configured. Generate one with "
                "FieldEncryptor.generate_key() and set ENCRYPTION_KEY."
            )
        encryptor = FieldEncryptor(settings.encryption_key)

    if database is None:
        database = HavenDatabase(settings.db_path)
    database.initialize()

    owner = owner if owner is not None else settings.system_owner
    initial_config = SystemConfig(
        max_reservation_time=settings.max_reservation_time,
        default_priority_decay=settings.default_priority_decay,
        minimum_case_update_interval=settings.minimum_case_update_interval,
        privacy_retention_period=settings.privacy_retention_period,
        emergency_override_enabled=settings.emergency_override_enabled,
    )
    service = CoordinationService(database, encryptor, owner=owner, initial_config=initial_config)
    logger.info(
        "Coordination service ready (schema v%d, owner configured: %s)",
        database.get_schema_version(),
        bool(owner),
    )
    return service

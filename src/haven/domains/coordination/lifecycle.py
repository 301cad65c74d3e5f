"""Service request lifecycle.

PENDING → ACTIVE | CANCELLED
ACTIVE  → COMPLETED | CANCELLED
COMPLETED, CANCELLED are terminal.

Creation reserves a slot; the one transition into CANCELLED releases it.
Because CANCELLED is terminal, a slot can be released at most once per
request.
"""

from __future__ import annotations

import logging

from haven.core.errors import InvalidInputError, NotFoundError, UnauthorizedError
from haven.core.privacy.access import AccessAuthorizer
from haven.core.privacy.identity import short_hash
from haven.core.storage.models import (
    MAX_SPECIAL_REQUIREMENTS,
    ServiceRequest,
    Status,
)
from haven.core.storage.repository import HavenRepository
from haven.domains.coordination.clients import ClientDirectory
from haven.domains.coordination.registry import ProviderRegistry
from haven.domains.coordination.reservation import ReservationEngine
from haven.domains.coordination.validation import (
    parse_priority,
    parse_service_type,
    parse_status,
    parse_tags,
    require_int,
    require_text,
)

logger = logging.getLogger(__name__)

REQUEST_TRANSITIONS: dict[Status, frozenset[Status]] = {
    Status.PENDING: frozenset({Status.ACTIVE, Status.CANCELLED}),
    Status.ACTIVE: frozenset({Status.COMPLETED, Status.CANCELLED}),
    Status.COMPLETED: frozenset(),
    Status.CANCELLED: frozenset(),
}

TERMINAL_STATES = frozenset(s for s, targets in REQUEST_TRANSITIONS.items() if not targets)


def can_transition(current: Status, target: Status) -> bool:
    return target in REQUEST_TRANSITIONS.get(current, frozenset())


class RequestStateMachine:
    """Creates service requests and drives their status transitions."""

    def __init__(
        self,
        repository: HavenRepository,
        authorizer: AccessAuthorizer,
        clients: ClientDirectory,
        registry: ProviderRegistry,
        reservations: ReservationEngine,
    ) -> None:
        self._repo = repository
        self._authorizer = authorizer
        self._clients = clients
        self._registry = registry
        self._reservations = reservations

    def require_request(self, request_id: int) -> ServiceRequest:
        request_id = require_int(request_id, "Request id")
        request = self._repo.get_request(request_id)
        if request is None:
            raise NotFoundError(f"Service request not found: {request_id}")
        return request

    def create_request(
        self,
        client_hash: str,
        *,
        service_type: str,
        provider_id: int,
        resource_id: int,
        requested_time: int,
        priority: int,
        special_requirements: list[str] | None = None,
        caller: str,
        now: int,
    ) -> ServiceRequest:
        level = parse_priority(priority)
        kind = parse_service_type(service_type)
        require_int(requested_time, "Requested time")
        requirements = parse_tags(
            special_requirements, MAX_SPECIAL_REQUIREMENTS, "special requirements"
        )

        client = self._clients.require_client(client_hash)
        self._registry.require_provider(provider_id)
        resource = self._registry.require_resource(resource_id)
        if resource.provider_id != provider_id:
            raise InvalidInputError(
                f"Resource {resource_id} does not belong to provider {provider_id}"
            )

        if not self._authorizer.can_access(caller, client_hash, now):
            raise UnauthorizedError("Caller may not act for this client")

        self._reservations.reserve(resource)

        config = self._repo.load_config()
        request = ServiceRequest(
            request_id=self._repo.next_id("request"),
            client_hash=client_hash,
            service_type=kind,
            provider_id=provider_id,
            resource_id=resource_id,
            requested_time=requested_time,
            priority=level,
            status=Status.PENDING,
            created_at=now,
            updated_at=now,
            expires_at=now + config.max_reservation_time,
            special_requirements=requirements,
        )
        self._repo.insert_request(request)
        self._clients.record_request(client, request.request_id, now)
        logger.info(
            "Created request %d for client %s on resource %d (priority %d)",
            request.request_id,
            short_hash(client_hash),
            resource_id,
            int(level),
        )
        return request

    def _require_actor(self, request: ServiceRequest, caller: str, now: int) -> None:
        if self._registry.is_provider_owner(request.provider_id, caller):
            return
        if self._authorizer.can_access(caller, request.client_hash, now):
            return
        raise UnauthorizedError(f"Caller may not update request {request.request_id}")

    def update_status(
        self,
        request_id: int,
        new_status: str,
        *,
        caller: str,
        now: int,
        outcome: str | None = None,
    ) -> ServiceRequest:
        request = self.require_request(request_id)
        self._require_actor(request, caller, now)
        target = parse_status(new_status)
        require_text(outcome, "Outcome", optional=True)
        previous = request.status
        if not can_transition(previous, target):
            raise InvalidInputError(
                f"Illegal transition {previous.value} -> {target.value} for request {request_id}"
            )

        request.status = target
        request.updated_at = now
        if outcome is not None:
            request.outcome = outcome
        self._repo.update_request(request)

        if target == Status.CANCELLED:
            resource = self._registry.require_resource(request.resource_id)
            self._reservations.release(resource)

        logger.info("Request %d: %s -> %s", request_id, previous.value, target.value)
        return request

    def assign_case_worker(
        self,
        request_id: int,
        case_worker: str,
        *,
        caller: str,
        now: int,
    ) -> ServiceRequest:
        request = self.require_request(request_id)
        if not (
            self._authorizer.is_owner(caller)
            or self._registry.is_provider_owner(request.provider_id, caller)
        ):
            raise UnauthorizedError(f"Caller may not assign request {request_id}")
        if request.status in TERMINAL_STATES:
            raise InvalidInputError(f"Request {request_id} is {request.status.value}")
        if not require_text(case_worker, "Case worker identity"):
            raise InvalidInputError("Case worker identity must not be empty")
        request.assigned_case_worker = case_worker
        request.updated_at = now
        self._repo.update_request(request)
        return request

    def list_expired(self, now: int) -> list[ServiceRequest]:
        """Open requests past ``expires_at``. Nothing is transitioned here."""
        open_states = [s for s in REQUEST_TRANSITIONS if s not in TERMINAL_STATES]
        return self._repo.get_requests_expiring_by(now, open_states)

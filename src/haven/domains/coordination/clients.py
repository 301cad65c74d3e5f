"""Anonymous client directory — registration, access refresh, gated reads."""

from __future__ import annotations

import hashlib
import logging

from haven.core.errors import AlreadyExistsError, InvalidInputError, NotFoundError, UnauthorizedError
from haven.core.privacy.access import AccessAuthorizer
from haven.core.privacy.identity import IdentityHasher, short_hash
from haven.core.storage.models import (
    MAX_ACCESSIBILITY_NEEDS,
    MAX_PREFERRED_SERVICES,
    AnonymousClient,
)
from haven.core.storage.repository import HavenRepository
from haven.domains.coordination.validation import (
    check_range,
    parse_risk_level,
    parse_service_types,
    parse_tags,
    require_bytes,
    require_text,
)

logger = logging.getLogger(__name__)


def fold_service_history(previous: str, request_id: int) -> str:
    """Roll a request id into a client's service-history digest."""
    return hashlib.sha256(f"{previous}:{request_id}".encode("utf-8")).hexdigest()


class ClientDirectory:
    def __init__(
        self,
        repository: HavenRepository,
        hasher: IdentityHasher,
        authorizer: AccessAuthorizer,
    ) -> None:
        self._repo = repository
        self._hasher = hasher
        self._authorizer = authorizer

    def register_client(
        self,
        raw_identifying_data: bytes,
        *,
        risk_level: int,
        priority_score: int = 0,
        preferred_services: list[str] | None = None,
        accessibility_needs: list[str] | None = None,
        emergency_contact: str | None = None,
        now: int,
    ) -> AnonymousClient:
        """Derive the client's anonymous hash and create its record.

        Raises:
            InvalidInputError: Empty identifying data or out-of-range fields.
            AlreadyExistsError: A record with the same derived hash exists.
        """
        raw_identifying_data = require_bytes(raw_identifying_data, "Identifying data")
        if not raw_identifying_data:
            raise InvalidInputError("Identifying data must not be empty")
        risk = parse_risk_level(risk_level)
        check_range(priority_score, 0, 100, "Priority score")
        services = parse_service_types(
            [] if preferred_services is None else preferred_services, limit=MAX_PREFERRED_SERVICES
        )
        needs = parse_tags(accessibility_needs, MAX_ACCESSIBILITY_NEEDS, "accessibility needs")
        require_text(emergency_contact, "Emergency contact", optional=True)

        client_hash = self._hasher.derive_client_hash(raw_identifying_data)
        if self._repo.get_client(client_hash) is not None:
            raise AlreadyExistsError("Client already registered")

        client = AnonymousClient(
            client_hash=client_hash,
            created_at=now,
            last_access=now,
            risk_level=risk,
            priority_score=priority_score,
            preferred_services=services,
            accessibility_needs=needs,
            emergency_contact=emergency_contact,
        )
        self._repo.insert_client(client)
        logger.info("Registered client %s", short_hash(client_hash))
        return client

    def require_client(self, client_hash: str) -> AnonymousClient:
        require_text(client_hash, "Client hash")
        client = self._repo.get_client(client_hash)
        if client is None:
            raise NotFoundError(f"Client not found: {short_hash(client_hash)}")
        return client

    def refresh_access(self, client_hash: str, *, caller: str, now: int) -> AnonymousClient:
        """Bring a client's ``last_access`` up to ``now``.

        Freshness is not required here: this is how a stale record is
        reopened by an authorized actor.
        """
        client = self.require_client(client_hash)
        if not self._authorizer.can_access(caller, client_hash, now, require_fresh=False):
            raise UnauthorizedError("Caller may not access this client record")
        client.last_access = max(client.last_access, now)
        self._repo.update_client(client)
        return client

    def view_client(self, client_hash: str, *, caller: str, now: int) -> AnonymousClient:
        """Privacy-gated read of a client record."""
        client = self.require_client(client_hash)
        if not self._authorizer.can_access(caller, client_hash, now):
            raise UnauthorizedError("Caller may not access this client record")
        return client

    def record_request(self, client: AnonymousClient, request_id: int, now: int) -> None:
        """Touch the client after a request was created on its behalf."""
        client.last_access = max(client.last_access, now)
        client.service_history_hash = fold_service_history(client.service_history_hash, request_id)
        self._repo.update_client(client)

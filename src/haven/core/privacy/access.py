"""Access authorization for anonymous client records.

An actor may read or act on a client's record when it is the system owner,
holds a case-worker grant for that client, or the emergency override is on.
Privacy-gated operations additionally require the client's ``last_access``
to fall inside the retention window; a stale record is denied until an
authorized actor refreshes it.
"""

from __future__ import annotations

import logging

from haven.core.privacy.identity import short_hash
from haven.core.storage.repository import HavenRepository

logger = logging.getLogger(__name__)


class AccessAuthorizer:
    """Decides whether an actor may touch a given client's record.

    Usage::

        authorizer = AccessAuthorizer(repository, owner="admin")
        if not authorizer.can_access(actor, client_hash, now):
            raise UnauthorizedError(...)
    """

    def __init__(self, repository: HavenRepository, owner: str) -> None:
        self._repo = repository
        self._owner = owner

    @property
    def owner(self) -> str:
        return self._owner

    def is_owner(self, actor: str) -> bool:
        return bool(actor) and actor == self._owner

    def is_case_worker(self, actor: str, client_hash: str) -> bool:
        """True if the owner has granted ``actor`` access to this client."""
        return self._repo.has_grant(actor, client_hash)

    def is_authorized(self, actor: str, client_hash: str) -> bool:
        """Identity check only: owner, granted case worker, or emergency override."""
        if self.is_owner(actor):
            return True
        if self.is_case_worker(actor, client_hash):
            return True
        if self._repo.load_config().emergency_override_enabled:
            logger.warning(
                "Emergency override granted %s access to client %s",
                actor,
                short_hash(client_hash),
            )
            return True
        return False

    def is_fresh(self, client_hash: str, now: int) -> bool:
        """True if the client exists and was accessed within the retention window."""
        client = self._repo.get_client(client_hash)
        if client is None:
            return False
        retention = self._repo.load_config().privacy_retention_period
        return now - client.last_access <= retention

    def can_access(
        self,
        actor: str,
        client_hash: str,
        now: int,
        *,
        require_fresh: bool = True,
    ) -> bool:
        """Full privacy gate: authorization plus (by default) retention freshness."""
        if not self.is_authorized(actor, client_hash):
            return False
        if require_fresh and not self.is_fresh(client_hash, now):
            logger.info("Access to stale client record %s denied", short_hash(client_hash))
            return False
        return True

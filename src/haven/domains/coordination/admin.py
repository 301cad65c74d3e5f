"""System administration — config, privacy salt, override, case-worker grants.

Every operation here is reserved to the system owner fixed when the
coordination service was built.
"""

from __future__ import annotations

import dataclasses
import logging

from haven.core.errors import InvalidInputError, NotFoundError, UnauthorizedError
from haven.core.privacy.access import AccessAuthorizer
from haven.core.privacy.identity import generate_salt, short_hash
from haven.core.storage.models import SALT_LENGTH, SystemConfig
from haven.core.storage.repository import HavenRepository
from haven.domains.coordination.validation import require_bytes, require_text

logger = logging.getLogger(__name__)


class SystemAdministrator:
    def __init__(self, repository: HavenRepository, authorizer: AccessAuthorizer) -> None:
        self._repo = repository
        self._authorizer = authorizer

    def _require_owner(self, caller: str) -> None:
        if not self._authorizer.is_owner(caller):
            raise UnauthorizedError("Only the system owner may perform this action")

    def replace_config(self, config: SystemConfig, *, caller: str) -> SystemConfig:
        self._require_owner(caller)
        if not isinstance(config, SystemConfig):
            raise InvalidInputError(f"Expected a SystemConfig, got {type(config).__name__}")
        for f in dataclasses.fields(SystemConfig):
            value = getattr(config, f.name)
            if f.name == "emergency_override_enabled":
                if not isinstance(value, bool):
                    raise InvalidInputError("emergency_override_enabled must be a boolean")
            elif not isinstance(value, int) or isinstance(value, bool) or value < 0:
                raise InvalidInputError(f"{f.name} must be a non-negative integer")
        self._repo.save_config(config)
        logger.info("System config replaced: %s", dataclasses.asdict(config))
        return config

    def set_emergency_override(self, enabled: bool, *, caller: str) -> SystemConfig:
        self._require_owner(caller)
        if not isinstance(enabled, bool):
            raise InvalidInputError("Emergency override flag must be a boolean")
        config = self._repo.load_config()
        config.emergency_override_enabled = enabled
        self._repo.save_config(config)
        logger.warning("Emergency override %s", "ENABLED" if enabled else "disabled")
        return config

    def rotate_salt(self, new_salt: bytes | None = None, *, caller: str) -> None:
        """Replace the privacy salt; existing client hashes stop being derivable."""
        self._require_owner(caller)
        salt = require_bytes(new_salt, "Salt") if new_salt is not None else generate_salt()
        if len(salt) != SALT_LENGTH:
            raise InvalidInputError(f"Salt must be exactly {SALT_LENGTH} bytes")
        self._repo.save_salt(salt)
        logger.warning("Privacy salt rotated; previously derived client hashes are unlinkable")

    def grant_case_worker(self, principal: str, client_hash: str, *, caller: str) -> bool:
        self._require_owner(caller)
        if not require_text(principal, "Principal"):
            raise InvalidInputError("Principal must not be empty")
        require_text(client_hash, "Client hash")
        if self._repo.get_client(client_hash) is None:
            raise NotFoundError(f"Client not found: {short_hash(client_hash)}")
        added = self._repo.add_grant(principal, client_hash)
        if added:
            logger.info("Granted case-worker access on %s", short_hash(client_hash))
        return added

    def revoke_case_worker(self, principal: str, client_hash: str, *, caller: str) -> bool:
        self._require_owner(caller)
        removed = self._repo.remove_grant(principal, client_hash)
        if removed:
            logger.info("Revoked case-worker access on %s", short_hash(client_hash))
        return removed

    def list_grants(self, principal: str, *, caller: str) -> list[str]:
        """Client hashes a principal holds case-worker grants for."""
        self._require_owner(caller)
        return self._repo.get_grants(require_text(principal, "Principal"))

"""Anonymous identity derivation.

A client is only ever known by ``SHA-256(salt || raw_identifying_data)``.
The raw data never reaches storage or logs. Rotating the salt silently
severs every previously derived hash from its raw input: that is the
system's privacy-rotation mechanism, not a bug.
"""

from __future__ import annotations

import hashlib
import secrets

from haven.core.storage.models import SALT_LENGTH
from haven.core.storage.repository import HavenRepository


def generate_salt() -> bytes:
    """Return a fresh unpredictable salt."""
    return secrets.token_bytes(SALT_LENGTH)


def hash_identity_digest(salt: bytes, raw_identifying_data: bytes) -> bytes:
    """32-byte SHA-256 digest of ``salt || raw_identifying_data``."""
    return hashlib.sha256(salt + raw_identifying_data).digest()


def hash_identity(salt: bytes, raw_identifying_data: bytes) -> str:
    """Hex form of :func:`hash_identity_digest`; used as the client key."""
    return hash_identity_digest(salt, raw_identifying_data).hex()


def short_hash(client_hash: str) -> str:
    """Truncated hash for log lines."""
    return client_hash[:12]


class IdentityHasher:
    """Derives client hashes with the currently stored privacy salt."""

    def __init__(self, repository: HavenRepository) -> None:
        self._repo = repository

    def derive_client_digest(self, raw_identifying_data: bytes) -> bytes:
        return hash_identity_digest(self._repo.load_salt(), raw_identifying_data)

    def derive_client_hash(self, raw_identifying_data: bytes) -> str:
        return hash_identity(self._repo.load_salt(), raw_identifying_data)

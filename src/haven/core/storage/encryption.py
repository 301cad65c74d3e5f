"""Fernet-based encryption for opaque blobs and secrets at rest.

Client-supplied payloads (emergency contacts, service plans, goals, progress
notes, request outcomes) arrive already encrypted by the caller and are
treated as opaque. The data bank wraps them in a second Fernet layer before
they touch SQLite and unwraps them on read, so callers always get back
exactly what they stored. Counters, slot counts and outcome metrics stay in
clear columns so the reservation path never decrypts anything.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)


class EncryptionError(Exception):
    """Raised when encryption/decryption fails."""


class FieldEncryptor:
    """Encrypts and decrypts JSON-serializable values with Fernet.

    Usage::

        encryptor = FieldEncryptor(key=FieldEncryptor.generate_key())
        token = encryptor.encrypt(["goal-blob-1", "goal-blob-2"])
        encryptor.decrypt(token)  # ["goal-blob-1", "goal-blob-2"]
    """

    def __init__(self, key: str) -> None:
        """Initialize with a Fernet key.

        Raises:
            EncryptionError: If the key is empty or invalid.
        """
        if not key or not key.strip():
            raise EncryptionError("Encryption key must not be empty")
        try:
            self._fernet = Fernet(key.encode() if isinstance(key, str) else key)
        except (ValueError, TypeError) as exc:
            raise EncryptionError(f"Invalid encryption key: {exc}") from exc

    def encrypt(self, data: Any) -> str:
        """Encrypt a JSON-serializable value to a Fernet token string.

        ``None`` maps to the empty string so optional blobs round-trip.
        """
        if data is None:
            return ""
        try:
            plaintext = json.dumps(data, separators=(",", ":")).encode("utf-8")
            return self._fernet.encrypt(plaintext).decode("utf-8")
        except (TypeError, ValueError) as exc:
            raise EncryptionError(f"Encryption failed: {exc}") from exc

    def decrypt(self, token: str) -> Any:
        """Decrypt a Fernet token string back to a Python object."""
        if not token:
            return None
        try:
            plaintext = self._fernet.decrypt(token.encode("utf-8"))
            return json.loads(plaintext)
        except InvalidToken as exc:
            raise EncryptionError("Decryption failed: invalid token or wrong key") from exc
        except (TypeError, ValueError) as exc:
            raise EncryptionError(f"Decryption failed: {exc}") from exc

    def encrypt_secret(self, secret: bytes) -> str:
        """Encrypt raw secret bytes (the privacy salt)."""
        return self.encrypt(secret.hex())

    def decrypt_secret(self, token: str) -> bytes:
        """Inverse of :meth:`encrypt_secret`."""
        value = self.decrypt(token)
        if not isinstance(value, str):
            raise EncryptionError("Decryption failed: secret payload is not a hex string")
        try:
            return bytes.fromhex(value)
        except ValueError as exc:
            raise EncryptionError(f"Decryption failed: {exc}") from exc

    @staticmethod
    def generate_key() -> str:
        """Generate a new URL-safe base64 Fernet key."""
        return Fernet.generate_key().decode("utf-8")

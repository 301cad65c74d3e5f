"""Closed error taxonomy shared by every coordination operation.

Components raise a ``ServiceError`` subclass; the coordination service
catches it, rolls the transaction back and hands the caller an explicit
result value. ``SystemStateError`` is the one fatal condition: it means a
singleton (config or salt) is missing and the system was never initialized.
"""

from __future__ import annotations

import enum


class ErrorKind(str, enum.Enum):
    """Every failure kind an operation can report."""

    UNAUTHORIZED = "unauthorized"
    NOT_FOUND = "not_found"
    INVALID_INPUT = "invalid_input"
    RESOURCE_UNAVAILABLE = "resource_unavailable"
    ALREADY_EXISTS = "already_exists"
    EXPIRED = "expired"
    INSUFFICIENT_CAPACITY = "insufficient_capacity"
    PRIVACY_VIOLATION = "privacy_violation"


class ServiceError(Exception):
    """Base class for recoverable operation failures."""

    kind: ErrorKind = ErrorKind.INVALID_INPUT

    def __init__(self, message: str, details: dict | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class UnauthorizedError(ServiceError):
    """Caller lacks ownership or authorization for the target."""

    kind = ErrorKind.UNAUTHORIZED


class NotFoundError(ServiceError):
    """A referenced entity id does not exist."""

    kind = ErrorKind.NOT_FOUND


class InvalidInputError(ServiceError):
    """Out-of-range value, malformed window, or a full fixed-size list."""

    kind = ErrorKind.INVALID_INPUT


class ResourceUnavailableError(ServiceError):
    """Reservation attempted against a resource with no free slot."""

    kind = ErrorKind.RESOURCE_UNAVAILABLE


class AlreadyExistsError(ServiceError):
    """Duplicate anonymous client registration."""

    kind = ErrorKind.ALREADY_EXISTS


class SystemStateError(Exception):
    """Raised when a required singleton (config or salt) is missing or corrupt."""

"""Input coercion shared by the coordination components.

Every helper either returns a value of the type or closed enumeration it
checks, or raises ``InvalidInputError``. Malformed argument types are input
errors like any other, so nothing here lets a ``TypeError`` escape. Booleans
are never accepted where an integer is expected.
"""

from __future__ import annotations

from typing import Any

from haven.core.errors import InvalidInputError
from haven.core.storage.models import Priority, RiskLevel, ServiceType, Status


def require_int(value: Any, label: str) -> int:
    if not isinstance(value, int) or isinstance(value, bool):
        raise InvalidInputError(f"{label} must be an integer, got {type(value).__name__}")
    return value


def require_text(value: Any, label: str, *, optional: bool = False) -> str | None:
    if value is None and optional:
        return None
    if not isinstance(value, str):
        raise InvalidInputError(f"{label} must be a string, got {type(value).__name__}")
    return value


def require_bytes(value: Any, label: str) -> bytes:
    if not isinstance(value, (bytes, bytearray)):
        raise InvalidInputError(f"{label} must be bytes, got {type(value).__name__}")
    return bytes(value)


def parse_service_type(value: Any) -> ServiceType:
    try:
        return ServiceType(value)
    except (ValueError, TypeError):
        raise InvalidInputError(
            f"Unknown service type: {value!r}",
            {"valid": [s.value for s in ServiceType]},
        ) from None


def parse_service_types(values: Any, *, limit: int) -> list[ServiceType]:
    check_length(values, limit, "service types")
    return [parse_service_type(v) for v in values]


def parse_tags(values: Any, limit: int, label: str) -> list[str]:
    """An optional list of opaque strings (tags, goals, requirements)."""
    if values is None:
        return []
    check_length(values, limit, label)
    for value in values:
        require_text(value, f"Each of the {label}")
    return list(values)


def parse_status(value: Any) -> Status:
    try:
        return Status(value)
    except (ValueError, TypeError):
        raise InvalidInputError(f"Unknown status: {value!r}") from None


def parse_priority(value: Any) -> Priority:
    require_int(value, "Priority")
    try:
        return Priority(value)
    except ValueError:
        raise InvalidInputError(f"Priority must be 1-4, got {value!r}") from None


def parse_risk_level(value: Any) -> RiskLevel:
    require_int(value, "Risk level")
    try:
        return RiskLevel(value)
    except ValueError:
        raise InvalidInputError(f"Risk level must be 1-4, got {value!r}") from None


def check_length(values: Any, limit: int, label: str) -> None:
    if not isinstance(values, (list, tuple)):
        raise InvalidInputError(f"{label.capitalize()} must be a list, got {type(values).__name__}")
    if len(values) > limit:
        raise InvalidInputError(f"At most {limit} {label} allowed, got {len(values)}")


def check_range(value: Any, low: int, high: int, label: str) -> None:
    require_int(value, label)
    if not low <= value <= high:
        raise InvalidInputError(f"{label} must be between {low} and {high}, got {value}")

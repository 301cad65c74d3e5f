"""Data models for the coordination data bank.

Every entity is owned by the data bank and refers to others by id only.
Opaque blob fields (``emergency_contact``, ``service_plan``, ``goals``,
``progress_notes``, ``outcome``, ``contact_info``) are stored encrypted at
rest and handed back unchanged.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field


class ServiceType(str, enum.Enum):
    """Closed set of service types a provider may offer."""

    SHELTER = "shelter"
    FOOD = "food"
    MEDICAL = "medical"
    MENTAL_HEALTH = "mental_health"
    SUBSTANCE_USE = "substance_use"
    EMPLOYMENT = "employment"
    EDUCATION = "education"
    LEGAL = "legal"
    TRANSPORTATION = "transportation"
    CASE_MANAGEMENT = "case_management"


class Status(str, enum.Enum):
    """Shared status enumeration, scoped per entity."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Priority(int, enum.Enum):
    CRITICAL = 1
    HIGH = 2
    MEDIUM = 3
    LOW = 4


class RiskLevel(int, enum.Enum):
    LOW = 1
    MODERATE = 2
    HIGH = 3
    CRITICAL = 4


# ---------------------------------------------------------------------------
# Fixed list capacities
# ---------------------------------------------------------------------------

MAX_PREFERRED_SERVICES = 10
MAX_ACCESSIBILITY_NEEDS = 5
MAX_OFFERED_SERVICES = 10
MAX_RESOURCE_TAGS = 5
MAX_SPECIAL_REQUIREMENTS = 5
MAX_GOALS = 10
MAX_PROGRESS_NOTES = 20
MAX_SERVICE_HISTORY = 50

MIN_PRIVACY_LEVEL = 1
MAX_PRIVACY_LEVEL = 5

DEFAULT_REPUTATION = 50
SALT_LENGTH = 32


@dataclass
class AnonymousClient:
    """A service recipient known only by a salted digest."""

    client_hash: str  # hex of a 32-byte SHA-256 digest
    created_at: int
    last_access: int
    service_history_hash: str = ""
    risk_level: RiskLevel = RiskLevel.LOW
    priority_score: int = 0
    preferred_services: list[ServiceType] = field(default_factory=list)
    accessibility_needs: list[str] = field(default_factory=list)
    emergency_contact: str | None = None


@dataclass
class Capacity:
    total: int
    current_utilization: int = 0
    available: int = 0


@dataclass
class ServiceProvider:
    provider_id: int
    name: str
    provider_type: str
    owner: str
    capacity: Capacity
    offered_services: list[ServiceType] = field(default_factory=list)
    contact_info: str | None = None
    location_hash: str = ""
    reputation_score: int = DEFAULT_REPUTATION
    status: Status = Status.ACTIVE
    created_at: int = 0


@dataclass
class SlotAvailability:
    """Slot counters; ``available_slots + reserved_slots == total_slots``."""

    total_slots: int
    available_slots: int
    reserved_slots: int = 0
    waitlist_count: int = 0

    def is_conserved(self) -> bool:
        return self.available_slots + self.reserved_slots == self.total_slots


@dataclass
class ScheduleWindow:
    start_time: int
    end_time: int


@dataclass
class Resource:
    resource_id: int
    provider_id: int
    resource_type: ServiceType
    name: str
    availability: SlotAvailability
    schedule: ScheduleWindow
    description: str = ""
    location_hash: str = ""
    requirements: list[str] = field(default_factory=list)
    accessibility_features: list[str] = field(default_factory=list)
    cost: int = 0
    status: Status = Status.ACTIVE


@dataclass
class ServiceRequest:
    request_id: int
    client_hash: str
    service_type: ServiceType
    provider_id: int
    resource_id: int
    requested_time: int
    priority: Priority
    status: Status
    created_at: int
    updated_at: int
    expires_at: int
    special_requirements: list[str] = field(default_factory=list)
    assigned_case_worker: str | None = None
    outcome: str | None = None


@dataclass
class OutcomeMetrics:
    housing_stability: int = 0
    employment_status: int = 0
    health_improvements: int = 0
    service_satisfaction: int = 0


@dataclass
class CaseRecord:
    case_id: int
    client_hash: str
    case_worker: str
    privacy_level: int
    created_at: int
    last_updated: int
    service_plan: str | None = None
    goals: list[str] = field(default_factory=list)
    progress_notes: list[str] = field(default_factory=list)
    service_history: list[int] = field(default_factory=list)
    outcome_metrics: OutcomeMetrics = field(default_factory=OutcomeMetrics)


@dataclass
class SystemConfig:
    """Process-wide tunables, replaced wholesale by the system owner."""

    max_reservation_time: int = 144
    default_priority_decay: int = 10
    minimum_case_update_interval: int = 72
    privacy_retention_period: int = 52560
    emergency_override_enabled: bool = False

"""Provider & resource registry — CRUD and capacity bookkeeping.

Only the principal that registered a provider may change it or its
resources. Provider capacity and resource slots are tracked independently:
``update_capacity`` recomputes ``available`` from the recorded utilization
and never looks at in-flight reservations.
"""

from __future__ import annotations

import logging

from haven.core.errors import InvalidInputError, NotFoundError, UnauthorizedError
from haven.core.storage.models import (
    MAX_OFFERED_SERVICES,
    MAX_RESOURCE_TAGS,
    Capacity,
    Resource,
    ScheduleWindow,
    ServiceProvider,
    SlotAvailability,
    Status,
)
from haven.core.storage.repository import HavenRepository
from haven.domains.coordination.validation import (
    parse_service_type,
    parse_service_types,
    parse_status,
    parse_tags,
    require_int,
    require_text,
)

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Providers, their bookable resources, and the slot-count primitive."""

    def __init__(self, repository: HavenRepository) -> None:
        self._repo = repository

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def require_provider(self, provider_id: int) -> ServiceProvider:
        provider_id = require_int(provider_id, "Provider id")
        provider = self._repo.get_provider(provider_id)
        if provider is None:
            raise NotFoundError(f"Provider not found: {provider_id}")
        return provider

    def require_resource(self, resource_id: int) -> Resource:
        resource_id = require_int(resource_id, "Resource id")
        resource = self._repo.get_resource(resource_id)
        if resource is None:
            raise NotFoundError(f"Resource not found: {resource_id}")
        return resource

    def require_owned_provider(self, provider_id: int, caller: str) -> ServiceProvider:
        provider = self.require_provider(provider_id)
        if provider.owner != caller:
            raise UnauthorizedError(f"Caller does not own provider {provider_id}")
        return provider

    def is_provider_owner(self, provider_id: int, caller: str) -> bool:
        provider = self._repo.get_provider(provider_id)
        return provider is not None and provider.owner == caller

    # ------------------------------------------------------------------
    # Providers
    # ------------------------------------------------------------------

    def register_provider(
        self,
        *,
        name: str,
        provider_type: str,
        contact_info: str | None,
        offered_services: list[str],
        total_capacity: int,
        location_hash: str = "",
        caller: str,
        now: int,
    ) -> ServiceProvider:
        require_text(name, "Provider name")
        require_text(provider_type, "Provider type")
        require_text(contact_info, "Contact info", optional=True)
        require_text(location_hash, "Location hash")
        services = parse_service_types(offered_services, limit=MAX_OFFERED_SERVICES)
        if require_int(total_capacity, "Total capacity") <= 0:
            raise InvalidInputError("Total capacity must be positive")
        if not caller:
            raise UnauthorizedError("An authenticated caller is required")

        provider = ServiceProvider(
            provider_id=self._repo.next_id("provider"),
            name=name,
            provider_type=provider_type,
            owner=caller,
            capacity=Capacity(total=total_capacity, current_utilization=0, available=total_capacity),
            offered_services=services,
            contact_info=contact_info,
            location_hash=location_hash,
            status=Status.ACTIVE,
            created_at=now,
        )
        self._repo.insert_provider(provider)
        logger.info("Registered provider %d (%s, capacity=%d)", provider.provider_id, name, total_capacity)
        return provider

    def update_capacity(self, provider_id: int, new_capacity: int, *, caller: str) -> ServiceProvider:
        provider = self.require_owned_provider(provider_id, caller)
        if require_int(new_capacity, "Capacity") <= 0:
            raise InvalidInputError("Capacity must be positive")
        provider.capacity.total = new_capacity
        provider.capacity.available = max(new_capacity - provider.capacity.current_utilization, 0)
        self._repo.update_provider(provider)
        logger.info(
            "Provider %d capacity now %d (available=%d)",
            provider_id,
            new_capacity,
            provider.capacity.available,
        )
        return provider

    def set_provider_status(self, provider_id: int, status: str, *, caller: str) -> ServiceProvider:
        provider = self.require_owned_provider(provider_id, caller)
        provider.status = parse_status(status)
        self._repo.update_provider(provider)
        return provider

    # ------------------------------------------------------------------
    # Resources
    # ------------------------------------------------------------------

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
    ) -> Resource:
        self.require_owned_provider(provider_id, caller)
        kind = parse_service_type(resource_type)
        require_text(name, "Resource name")
        require_text(description, "Description")
        require_text(location_hash, "Location hash")
        if require_int(total_slots, "Total slots") <= 0:
            raise InvalidInputError("Total slots must be positive")
        if require_int(start_time, "Schedule start") >= require_int(end_time, "Schedule end"):
            raise InvalidInputError("Schedule start must precede its end")
        if require_int(cost, "Cost") < 0:
            raise InvalidInputError("Cost must not be negative")
        requirements = parse_tags(requirements, MAX_RESOURCE_TAGS, "requirements")
        accessibility_features = parse_tags(
            accessibility_features, MAX_RESOURCE_TAGS, "accessibility features"
        )

        resource = Resource(
            resource_id=self._repo.next_id("resource"),
            provider_id=provider_id,
            resource_type=kind,
            name=name,
            description=description,
            availability=SlotAvailability(
                total_slots=total_slots,
                available_slots=total_slots,
                reserved_slots=0,
            ),
            schedule=ScheduleWindow(start_time=start_time, end_time=end_time),
            location_hash=location_hash,
            requirements=requirements,
            accessibility_features=accessibility_features,
            cost=cost,
            status=Status.ACTIVE,
        )
        self._repo.insert_resource(resource)
        logger.info(
            "Added resource %d to provider %d (%s, %d slots)",
            resource.resource_id,
            provider_id,
            kind.value,
            total_slots,
        )
        return resource

    def set_available_slots(self, resource_id: int, available_slots: int, *, caller: str) -> Resource:
        """Owner correction path for a resource's free slot count."""
        resource = self.require_resource(resource_id)
        self.require_owned_provider(resource.provider_id, caller)
        return self.apply_slot_count(resource, available_slots)

    def apply_slot_count(self, resource: Resource, available_slots: int) -> Resource:
        """Write a new free slot count, keeping ``reserved = total - available``.

        Unguarded: callers are the owner path above and the reservation engine.
        """
        slots = resource.availability
        available_slots = require_int(available_slots, "Available slots")
        if not 0 <= available_slots <= slots.total_slots:
            raise InvalidInputError(
                f"Available slots must be between 0 and {slots.total_slots}, got {available_slots}"
            )
        slots.available_slots = available_slots
        slots.reserved_slots = slots.total_slots - available_slots
        self._repo.update_resource(resource)
        return resource

    def set_resource_status(self, resource_id: int, status: str, *, caller: str) -> Resource:
        resource = self.require_resource(resource_id)
        self.require_owned_provider(resource.provider_id, caller)
        resource.status = parse_status(status)
        self._repo.update_resource(resource)
        return resource

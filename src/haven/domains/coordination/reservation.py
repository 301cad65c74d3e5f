"""Reservation engine — the single point of slot-count mutation.

Both operations read-modify-write ``available_slots`` and must run inside
the caller's :meth:`HavenDatabase.transaction`, which serializes them
against every other operation. That is what makes the check-then-decrement
in :meth:`reserve` safe: when one slot is left, exactly one concurrent
reservation wins.
"""

from __future__ import annotations

import logging

from haven.core.errors import ResourceUnavailableError
from haven.core.storage.models import Resource, Status
from haven.domains.coordination.registry import ProviderRegistry

logger = logging.getLogger(__name__)


class ReservationEngine:
    def __init__(self, registry: ProviderRegistry) -> None:
        self._registry = registry

    def reserve(self, resource: Resource) -> Resource:
        """Take one slot.

        Raises:
            ResourceUnavailableError: No slot left, or the resource is not active.
        """
        if resource.status != Status.ACTIVE:
            raise ResourceUnavailableError(f"Resource {resource.resource_id} is not accepting bookings")
        available = resource.availability.available_slots
        if available == 0:
            raise ResourceUnavailableError(f"Resource {resource.resource_id} has no available slots")
        self._registry.apply_slot_count(resource, available - 1)
        logger.info("Reserved slot on resource %d (%d left)", resource.resource_id, available - 1)
        return resource

    def release(self, resource: Resource) -> Resource:
        """Return one slot. A resource already at full availability is left as is."""
        slots = resource.availability
        if slots.available_slots >= slots.total_slots:
            # An owner correction already restored the slot.
            logger.warning(
                "Release on resource %d skipped: already at %d/%d available",
                resource.resource_id,
                slots.available_slots,
                slots.total_slots,
            )
            return resource
        self._registry.apply_slot_count(resource, slots.available_slots + 1)
        logger.info("Released slot on resource %d (%d available)", resource.resource_id, slots.available_slots)
        return resource

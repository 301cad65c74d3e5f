"""Privacy-gated resource reservation and case lifecycle engine."""

from haven.domains.coordination.service import (
    CoordinationService,
    OperationResult,
    create_service,
)

__all__ = [
    "CoordinationService",
    "OperationResult",
    "create_service",
]

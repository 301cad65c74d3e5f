"""Case record manager — append-only progress and outcome tracking.

The actor that opens a case is its case worker for good; only that actor
can append to it. Goals are fixed at creation, progress notes are
append-only and capped, outcome metrics are overwritten wholesale.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping

from haven.core.errors import InvalidInputError, NotFoundError, UnauthorizedError
from haven.core.privacy.identity import short_hash
from haven.core.storage.models import (
    MAX_GOALS,
    MAX_PRIVACY_LEVEL,
    MAX_PROGRESS_NOTES,
    MAX_SERVICE_HISTORY,
    MIN_PRIVACY_LEVEL,
    CaseRecord,
    OutcomeMetrics,
)
from haven.core.storage.repository import HavenRepository
from haven.domains.coordination.validation import check_range, parse_tags, require_int, require_text

logger = logging.getLogger(__name__)

_METRIC_FIELDS = (
    "housing_stability",
    "employment_status",
    "health_improvements",
    "service_satisfaction",
)


def coerce_metrics(metrics: OutcomeMetrics | Mapping[str, Any]) -> OutcomeMetrics:
    """Accept an ``OutcomeMetrics`` or a mapping with exactly its four fields."""
    if isinstance(metrics, OutcomeMetrics):
        return metrics
    if not isinstance(metrics, Mapping):
        raise InvalidInputError(
            f"Outcome metrics must be a mapping, got {type(metrics).__name__}"
        )
    unknown = set(metrics) - set(_METRIC_FIELDS)
    if unknown:
        raise InvalidInputError(f"Unknown outcome metrics: {sorted(unknown)}")
    values: dict[str, int] = {}
    for name in _METRIC_FIELDS:
        value = metrics.get(name, 0)
        if not isinstance(value, int) or isinstance(value, bool):
            raise InvalidInputError(f"Outcome metric {name} must be an integer")
        values[name] = value
    return OutcomeMetrics(**values)


class CaseRecordManager:
    def __init__(self, repository: HavenRepository) -> None:
        self._repo = repository

    def require_case(self, case_id: int) -> CaseRecord:
        case_id = require_int(case_id, "Case id")
        case = self._repo.get_case(case_id)
        if case is None:
            raise NotFoundError(f"Case not found: {case_id}")
        return case

    def _require_worker(self, case: CaseRecord, caller: str) -> None:
        if caller != case.case_worker:
            raise UnauthorizedError(f"Only the case worker may update case {case.case_id}")

    def create_case(
        self,
        client_hash: str,
        *,
        service_plan: str | None,
        goals: list[str] | None,
        privacy_level: int,
        caller: str,
        now: int,
    ) -> CaseRecord:
        require_text(client_hash, "Client hash")
        if self._repo.get_client(client_hash) is None:
            raise NotFoundError(f"Client not found: {short_hash(client_hash)}")
        check_range(privacy_level, MIN_PRIVACY_LEVEL, MAX_PRIVACY_LEVEL, "Privacy level")
        require_text(service_plan, "Service plan", optional=True)
        goals = parse_tags(goals, MAX_GOALS, "goals")
        if not caller:
            raise UnauthorizedError("An authenticated caller is required")

        case = CaseRecord(
            case_id=self._repo.next_id("case"),
            client_hash=client_hash,
            case_worker=caller,
            privacy_level=privacy_level,
            created_at=now,
            last_updated=now,
            service_plan=service_plan,
            goals=goals,
        )
        self._repo.insert_case(case)
        logger.info("Opened case %d for client %s", case.case_id, short_hash(client_hash))
        return case

    def append_progress(
        self,
        case_id: int,
        note: str,
        outcome_metrics: OutcomeMetrics | Mapping[str, Any],
        *,
        caller: str,
        now: int,
    ) -> CaseRecord:
        case = self.require_case(case_id)
        self._require_worker(case, caller)
        if len(case.progress_notes) >= MAX_PROGRESS_NOTES:
            raise InvalidInputError(f"Case {case_id} already holds {MAX_PROGRESS_NOTES} progress notes")
        require_text(note, "Progress note")
        metrics = coerce_metrics(outcome_metrics)

        case.progress_notes.append(note)
        case.outcome_metrics = metrics
        case.last_updated = now
        self._repo.update_case(case)
        logger.info("Case %d progress note %d recorded", case_id, len(case.progress_notes))
        return case

    def record_service(self, case_id: int, request_id: int, *, caller: str, now: int) -> CaseRecord:
        """Link a service request to the case's history."""
        case = self.require_case(case_id)
        self._require_worker(case, caller)
        request_id = require_int(request_id, "Request id")
        request = self._repo.get_request(request_id)
        if request is None:
            raise NotFoundError(f"Service request not found: {request_id}")
        if request.client_hash != case.client_hash:
            raise InvalidInputError(f"Request {request_id} belongs to a different client")
        if request_id in case.service_history:
            raise InvalidInputError(f"Request {request_id} already recorded on case {case_id}")
        if len(case.service_history) >= MAX_SERVICE_HISTORY:
            raise InvalidInputError(f"Case {case_id} service history is full")

        case.service_history.append(request_id)
        case.last_updated = now
        self._repo.update_case(case)
        return case

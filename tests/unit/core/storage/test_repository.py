"""Tests for HavenRepository — CRUD with in-memory SQLite."""

from __future__ import annotations

import pytest

from haven.core.errors import SystemStateError
from haven.core.storage.database import HavenDatabase
from haven.core.storage.encryption import FieldEncryptor
from haven.core.storage.models import (
    AnonymousClient,
    Capacity,
    CaseRecord,
    OutcomeMetrics,
    Priority,
    Resource,
    RiskLevel,
    ScheduleWindow,
    ServiceProvider,
    ServiceRequest,
    ServiceType,
    SlotAvailability,
    Status,
    SystemConfig,
)
from haven.core.storage.repository import HavenRepository, RepositoryError


def _client(**overrides) -> AnonymousClient:
    defaults = dict(
        client_hash="ab" * 32,
        created_at=10,
        last_access=10,
        risk_level=RiskLevel.HIGH,
        priority_score=70,
        preferred_services=[ServiceType.SHELTER, ServiceType.MEDICAL],
        accessibility_needs=["wheelchair"],
        emergency_contact="enc:contact-blob",
    )
    defaults.update(overrides)
    return AnonymousClient(**defaults)


def _provider(provider_id: int = 1) -> ServiceProvider:
    return ServiceProvider(
        provider_id=provider_id,
        name="Harbor House",
        provider_type="nonprofit",
        owner="org-1",
        capacity=Capacity(total=5, current_utilization=0, available=5),
        offered_services=[ServiceType.SHELTER],
        contact_info="enc:contact",
        created_at=3,
    )


def _resource(resource_id: int = 1, provider_id: int = 1) -> Resource:
    return Resource(
        resource_id=resource_id,
        provider_id=provider_id,
        resource_type=ServiceType.SHELTER,
        name="Beds",
        availability=SlotAvailability(total_slots=3, available_slots=3),
        schedule=ScheduleWindow(start_time=18, end_time=30),
        requirements=["sober"],
    )


class TestCounters:
    def test_counters_start_at_one_and_increase(self, repository):
        assert repository.next_id("provider") == 1
        assert repository.next_id("provider") == 2
        assert repository.next_id("case") == 1
        assert repository.next_id("provider") == 3

    def test_unknown_counter_rejected(self, repository):
        with pytest.raises(RepositoryError, match="Unknown counter"):
            repository.next_id("widgets")


class TestSingletons:
    def test_missing_config_is_fatal(self, haven_db, field_encryptor):
        repo = HavenRepository(haven_db, field_encryptor)
        assert not repo.has_config()
        with pytest.raises(SystemStateError):
            repo.load_config()

    def test_missing_salt_is_fatal(self, haven_db, field_encryptor):
        repo = HavenRepository(haven_db, field_encryptor)
        with pytest.raises(SystemStateError):
            repo.load_salt()

    def test_config_upsert(self, repository):
        repository.save_config(SystemConfig(max_reservation_time=5, emergency_override_enabled=True))
        config = repository.load_config()
        assert config.max_reservation_time == 5
        assert config.emergency_override_enabled is True

    def test_salt_stored_encrypted(self, repository, haven_db):
        salt = bytes(range(32))
        repository.save_salt(salt)
        raw = haven_db.connection.execute("SELECT salt_enc FROM privacy_salt").fetchone()[0]
        assert salt.hex() not in raw
        assert repository.load_salt() == salt


class TestClients:
    def test_round_trip(self, repository):
        repository.insert_client(_client())
        loaded = repository.get_client("ab" * 32)
        assert loaded == _client()

    def test_emergency_contact_not_stored_in_clear(self, repository, haven_db):
        repository.insert_client(_client())
        row = haven_db.connection.execute("SELECT emergency_contact_enc FROM clients").fetchone()
        assert "contact-blob" not in row[0]

    def test_update(self, repository):
        repository.insert_client(_client())
        client = repository.get_client("ab" * 32)
        client.last_access = 99
        client.service_history_hash = "ff"
        client.emergency_contact = None
        repository.update_client(client)
        loaded = repository.get_client("ab" * 32)
        assert loaded.last_access == 99
        assert loaded.service_history_hash == "ff"
        assert loaded.emergency_contact is None

    def test_missing_returns_none(self, repository):
        assert repository.get_client("00" * 32) is None


class TestProvidersAndResources:
    def test_provider_round_trip(self, repository):
        repository.insert_provider(_provider())
        loaded = repository.get_provider(1)
        assert loaded == _provider()
        assert loaded.status == Status.ACTIVE
        assert loaded.reputation_score == 50

    def test_resource_round_trip_and_listing(self, repository):
        repository.insert_provider(_provider())
        repository.insert_resource(_resource(1))
        repository.insert_resource(_resource(2))
        assert repository.get_resource(1) == _resource(1)
        assert [r.resource_id for r in repository.get_resources_for_provider(1)] == [1, 2]
        assert repository.get_resources_for_provider(2) == []

    def test_resource_update_persists_slots(self, repository):
        repository.insert_provider(_provider())
        resource = _resource()
        repository.insert_resource(resource)
        resource.availability.available_slots = 1
        resource.availability.reserved_slots = 2
        repository.update_resource(resource)
        slots = repository.get_resource(1).availability
        assert (slots.available_slots, slots.reserved_slots) == (1, 2)

    def test_missing_returns_none(self, repository):
        assert repository.get_provider(42) is None
        assert repository.get_resource(42) is None


class TestRequestsAndCases:
    @pytest.fixture
    def seeded(self, repository):
        repository.insert_client(_client())
        repository.insert_provider(_provider())
        repository.insert_resource(_resource())
        return repository

    def _request(self, request_id: int, status: Status, expires_at: int) -> ServiceRequest:
        return ServiceRequest(
            request_id=request_id,
            client_hash="ab" * 32,
            service_type=ServiceType.SHELTER,
            provider_id=1,
            resource_id=1,
            requested_time=20,
            priority=Priority.HIGH,
            status=status,
            created_at=10,
            updated_at=10,
            expires_at=expires_at,
            special_requirements=["pet"],
        )

    def test_request_round_trip(self, seeded):
        seeded.insert_request(self._request(1, Status.PENDING, 154))
        assert seeded.get_request(1) == self._request(1, Status.PENDING, 154)

    def test_request_outcome_encrypted(self, seeded, haven_db):
        request = self._request(1, Status.ACTIVE, 154)
        seeded.insert_request(request)
        request.status = Status.COMPLETED
        request.outcome = "enc:outcome"
        seeded.update_request(request)
        row = haven_db.connection.execute("SELECT outcome_enc FROM service_requests").fetchone()
        assert "enc:outcome" not in row[0]
        assert seeded.get_request(1).outcome == "enc:outcome"

    def test_expiring_query_filters_status_and_time(self, seeded):
        seeded.insert_request(self._request(1, Status.PENDING, 100))
        seeded.insert_request(self._request(2, Status.CANCELLED, 100))
        seeded.insert_request(self._request(3, Status.ACTIVE, 300))
        seeded.insert_request(self._request(4, Status.ACTIVE, 50))
        expired = seeded.get_requests_expiring_by(150, [Status.PENDING, Status.ACTIVE])
        assert [r.request_id for r in expired] == [4, 1]
        assert seeded.get_requests_expiring_by(150, []) == []

    def test_case_round_trip_and_update(self, seeded):
        case = CaseRecord(
            case_id=1,
            client_hash="ab" * 32,
            case_worker="worker-1",
            privacy_level=3,
            created_at=10,
            last_updated=10,
            service_plan="enc:plan",
            goals=["enc:g1"],
        )
        seeded.insert_case(case)
        assert seeded.get_case(1) == case

        case.progress_notes.append("enc:n1")
        case.service_history.append(7)
        case.outcome_metrics = OutcomeMetrics(housing_stability=3)
        case.last_updated = 12
        seeded.update_case(case)
        loaded = seeded.get_case(1)
        assert loaded.progress_notes == ["enc:n1"]
        assert loaded.service_history == [7]
        assert loaded.outcome_metrics.housing_stability == 3
        assert loaded.goals == ["enc:g1"]


class TestGrants:
    def test_add_has_remove(self, repository):
        assert repository.add_grant("worker", "ab" * 32) is True
        assert repository.add_grant("worker", "ab" * 32) is False
        assert repository.has_grant("worker", "ab" * 32)
        assert repository.get_grants("worker") == ["ab" * 32]
        assert repository.remove_grant("worker", "ab" * 32) is True
        assert not repository.has_grant("worker", "ab" * 32)
        assert repository.remove_grant("worker", "ab" * 32) is False


def test_database_property(haven_db: HavenDatabase, field_encryptor: FieldEncryptor):
    assert HavenRepository(haven_db, field_encryptor).database is haven_db

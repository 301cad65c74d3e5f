"""End-to-end tests through the CoordinationService facade."""

from __future__ import annotations

import threading

import pytest

from conftest import CASE_WORKER, OWNER, PROVIDER_ORG, STRANGER, seed_world
from haven.core.errors import ErrorKind, SystemStateError
from haven.core.privacy.identity import hash_identity
from haven.core.storage.database import HavenDatabase
from haven.core.storage.encryption import FieldEncryptor
from haven.core.storage.models import Status, SystemConfig
from haven.domains.coordination import CoordinationService, OperationResult


def _request(service, world, *, caller=PROVIDER_ORG, now=10, **overrides) -> OperationResult:
    kwargs = dict(
        client_hash=world.client_hash,
        service_type="shelter",
        provider_id=world.provider_id,
        resource_id=world.resource_id,
        requested_time=20,
        priority=2,
    )
    kwargs.update(overrides)
    return service.create_service_request(caller=caller, now=now, **kwargs)


def _slots(service, world) -> tuple[int, int]:
    availability = service.get_resource(world.resource_id).availability
    return availability.available_slots, availability.reserved_slots


class TestConstruction:
    def test_owner_required(self, haven_db, field_encryptor):
        with pytest.raises(SystemStateError):
            CoordinationService(haven_db, field_encryptor, owner="")

    def test_bootstrap_creates_singletons(self, service):
        assert service.get_config() == SystemConfig()
        assert service.owner == OWNER

    def test_bootstrap_keeps_existing_singletons(self, haven_db, field_encryptor):
        first = CoordinationService(
            haven_db, field_encryptor, owner=OWNER, initial_config=SystemConfig(max_reservation_time=9)
        )
        digest = first.derive_client_hash(b"x")
        second = CoordinationService(haven_db, field_encryptor, owner=OWNER)
        assert second.get_config().max_reservation_time == 9
        assert second.derive_client_hash(b"x") == digest


class TestThreeSlotScenario:
    def test_reserve_exhaust_cancel_rebook(self, service, world):
        assert _slots(service, world) == (3, 0)

        ids = []
        for expected_left, now in ((2, 10), (1, 11), (0, 12)):
            result = _request(service, world, now=now)
            assert result.success, result
            assert result.data["status"] == "pending"
            assert result.data["expires_at"] == now + 144
            ids.append(result.data["request_id"])
            assert _slots(service, world)[0] == expected_left
        assert ids == [1, 2, 3]

        fourth = _request(service, world, now=13)
        assert not fourth.success
        assert fourth.error == ErrorKind.RESOURCE_UNAVAILABLE
        assert _slots(service, world) == (0, 3)

        cancelled = service.cancel_service_request(ids[0], caller=PROVIDER_ORG, now=14)
        assert cancelled.success
        assert cancelled.data["status"] == "cancelled"
        assert _slots(service, world) == (1, 2)

        rebooked = _request(service, world, now=15)
        assert rebooked.success
        assert rebooked.data["request_id"] == 4
        assert _slots(service, world) == (0, 3)

    def test_double_cancel_releases_once(self, service, world):
        request_id = _request(service, world).data["request_id"]
        assert service.cancel_service_request(request_id, caller=PROVIDER_ORG, now=11).success
        again = service.cancel_service_request(request_id, caller=PROVIDER_ORG, now=12)
        assert not again.success
        assert again.error == ErrorKind.INVALID_INPUT
        assert _slots(service, world) == (3, 0)

    def test_failed_request_changes_nothing(self, service, world):
        result = _request(service, world, priority=9)
        assert result.error == ErrorKind.INVALID_INPUT
        assert _slots(service, world) == (3, 0)
        assert service.get_request(1) is None


class TestReservationExclusivity:
    def test_one_winner_for_last_slot(self, service):
        world = seed_world(service, total_slots=1)
        barrier = threading.Barrier(8)
        results: list[OperationResult] = []
        results_lock = threading.Lock()

        def attempt(now: int) -> None:
            barrier.wait()
            result = _request(service, world, now=now)
            with results_lock:
                results.append(result)

        threads = [threading.Thread(target=attempt, args=(10 + i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        winners = [r for r in results if r.success]
        losers = [r for r in results if not r.success]
        assert len(winners) == 1
        assert len(losers) == 7
        assert all(r.error == ErrorKind.RESOURCE_UNAVAILABLE for r in losers)
        assert _slots(service, world) == (0, 1)


class TestIdentity:
    def test_hash_is_deterministic_until_rotation(self, service):
        raw = b"client:someone:1990"
        first = service.derive_client_hash(raw)
        assert service.derive_client_hash(raw) == first
        assert service.rotate_salt(caller=OWNER, now=2).success
        assert service.derive_client_hash(raw) != first

    def test_explicit_salt(self, service):
        salt = b"\x05" * 32
        assert service.rotate_salt(salt, caller=OWNER, now=2).success
        assert service.derive_client_hash(b"abc") == hash_identity(salt, b"abc")

    def test_duplicate_registration(self, service, world):
        again = service.register_client(b"client:jane-doe:1980-01-01", risk_level=1, now=3)
        assert again.error == ErrorKind.ALREADY_EXISTS

    def test_raw_identity_not_in_audit(self, service, haven_db):
        service.register_client(b"client:secret-name", risk_level=1, now=1)
        rows = haven_db.connection.execute("SELECT * FROM audit_log").fetchall()
        for row in rows:
            assert all("secret-name" not in str(value) for value in tuple(row))


class TestAuthorization:
    def test_stranger_cannot_request(self, service, world):
        result = _request(service, world, caller=STRANGER)
        assert result.error == ErrorKind.UNAUTHORIZED
        assert _slots(service, world) == (3, 0)

    def test_stranger_cannot_view_or_update(self, service, world):
        assert service.view_client(world.client_hash, caller=STRANGER, now=2).error == ErrorKind.UNAUTHORIZED
        request_id = _request(service, world).data["request_id"]
        result = service.update_service_request_status(request_id, "active", caller=STRANGER, now=11)
        assert result.error == ErrorKind.UNAUTHORIZED

    def test_granted_worker_and_owner_may_view(self, service, world):
        assert service.grant_case_worker(CASE_WORKER, world.client_hash, caller=OWNER, now=2).success
        assert service.can_access(CASE_WORKER, world.client_hash, 2)
        viewed = service.view_client(world.client_hash, caller=CASE_WORKER, now=2)
        assert viewed.data["client"]["client_hash"] == world.client_hash
        assert viewed.data["client"]["risk_level"] == 2
        assert service.can_access(OWNER, world.client_hash, 2)

    def test_revoked_worker_denied(self, service, world):
        assert service.revoke_case_worker(PROVIDER_ORG, world.client_hash, caller=OWNER, now=2).data == {
            "revoked": True
        }
        assert _request(service, world).error == ErrorKind.UNAUTHORIZED

    def test_stale_access_denied_until_refreshed(self, service, world):
        stale = 1 + 52560 + 1
        assert not service.can_access(PROVIDER_ORG, world.client_hash, stale)
        assert _request(service, world, now=stale).error == ErrorKind.UNAUTHORIZED
        assert service.refresh_client_access(world.client_hash, caller=OWNER, now=stale).success
        assert _request(service, world, now=stale).success

    def test_emergency_override_grants_access(self, service, world):
        assert not service.can_access(STRANGER, world.client_hash, 5)
        assert service.set_emergency_override(True, caller=OWNER, now=5).success
        assert service.can_access(STRANGER, world.client_hash, 5)
        assert _request(service, world, caller=STRANGER, now=6).success

    def test_admin_is_owner_only(self, service):
        assert service.set_emergency_override(True, caller=STRANGER, now=1).error == ErrorKind.UNAUTHORIZED
        assert service.replace_config(SystemConfig(), caller=PROVIDER_ORG, now=1).error == ErrorKind.UNAUTHORIZED
        assert service.rotate_salt(caller=STRANGER, now=1).error == ErrorKind.UNAUTHORIZED

    def test_replace_config_shortens_reservations(self, service, world):
        config = SystemConfig(max_reservation_time=5)
        assert service.replace_config(config, caller=OWNER, now=2).success
        assert _request(service, world, now=10).data["expires_at"] == 15


    def test_trusted_read_bypasses_actor_gate(self, service, world):
        assert service.view_client(world.client_hash, caller=STRANGER, now=2).error == ErrorKind.UNAUTHORIZED
        assert service.get_client(world.client_hash).client_hash == world.client_hash
        assert service.audit.count_events(operation="view_client", status="failure") == 1

class TestCapacityGuards:
    def test_update_capacity(self, service, world):
        ok = service.update_capacity(world.provider_id, 8, caller=PROVIDER_ORG, now=2)
        assert ok.success
        assert ok.data["capacity"] == {"total": 8, "current_utilization": 0, "available": 8}

    def test_capacity_guards(self, service, world):
        assert service.update_capacity(world.provider_id, 0, caller=PROVIDER_ORG, now=2).error == ErrorKind.INVALID_INPUT
        assert service.update_capacity(world.provider_id, 8, caller=STRANGER, now=2).error == ErrorKind.UNAUTHORIZED
        assert service.update_capacity(99, 8, caller=PROVIDER_ORG, now=2).error == ErrorKind.NOT_FOUND
        assert service.get_provider(world.provider_id).capacity.total == 5

    def test_registration_guards(self, service):
        bad = service.register_provider("x", "t", None, ["shelter"], 0, caller=PROVIDER_ORG, now=1)
        assert bad.error == ErrorKind.INVALID_INPUT

    def test_resource_guards(self, service, world):
        bad = service.add_resource(
            world.provider_id,
            resource_type="shelter",
            name="r",
            total_slots=2,
            start_time=10,
            end_time=5,
            caller=PROVIDER_ORG,
            now=2,
        )
        assert bad.error == ErrorKind.INVALID_INPUT
        other = service.add_resource(
            world.provider_id,
            resource_type="shelter",
            name="r",
            total_slots=2,
            start_time=0,
            end_time=5,
            caller=STRANGER,
            now=2,
        )
        assert other.error == ErrorKind.UNAUTHORIZED
        assert len(service.get_resources_for_provider(world.provider_id)) == 1

    def test_owner_slot_correction_then_cancel_clamps(self, service, world):
        request_id = _request(service, world).data["request_id"]
        assert service.set_available_slots(world.resource_id, 3, caller=PROVIDER_ORG, now=11).success
        assert service.cancel_service_request(request_id, caller=PROVIDER_ORG, now=12).success
        assert _slots(service, world) == (3, 0)

    def test_inactive_resource_unavailable(self, service, world):
        assert service.set_resource_status(world.resource_id, "inactive", caller=PROVIDER_ORG, now=2).success
        assert _request(service, world).error == ErrorKind.RESOURCE_UNAVAILABLE


class TestRequestLifecycle:
    def test_complete_with_outcome(self, service, world):
        request_id = _request(service, world).data["request_id"]
        assert service.update_service_request_status(request_id, "active", caller=PROVIDER_ORG, now=11).success
        done = service.update_service_request_status(
            request_id, "completed", caller=PROVIDER_ORG, now=12, outcome="enc:outcome"
        )
        assert done.data == {"request_id": request_id, "status": "completed"}
        stored = service.get_request(request_id)
        assert stored.status == Status.COMPLETED
        assert stored.outcome == "enc:outcome"

    def test_assign_case_worker(self, service, world):
        request_id = _request(service, world).data["request_id"]
        result = service.assign_request_case_worker(request_id, CASE_WORKER, caller=PROVIDER_ORG, now=11)
        assert result.data["assigned_case_worker"] == CASE_WORKER

    def test_list_expired(self, service, world):
        request_id = _request(service, world, now=10).data["request_id"]
        assert service.list_expired_requests(153) == []
        assert [r.request_id for r in service.list_expired_requests(154)] == [request_id]

    def test_missing_request(self, service, world):
        assert service.cancel_service_request(77, caller=OWNER, now=2).error == ErrorKind.NOT_FOUND


class TestCases:
    def _open(self, service, world, **overrides) -> OperationResult:
        kwargs = dict(service_plan="enc:plan", goals=["enc:goal"], privacy_level=3)
        kwargs.update(overrides)
        return service.create_case(world.client_hash, caller=CASE_WORKER, now=3, **kwargs)

    def test_privacy_level_six_rejected(self, service, world):
        result = self._open(service, world, privacy_level=6)
        assert not result.success
        assert result.error == ErrorKind.INVALID_INPUT
        assert service.get_case(1) is None

    def test_twenty_notes_then_rejected(self, service, world):
        case_id = self._open(service, world).data["case_id"]
        for i in range(20):
            result = service.append_progress(
                case_id, f"enc:note-{i}", {"housing_stability": i}, caller=CASE_WORKER, now=4 + i
            )
            assert result.success, result
            assert result.data["progress_notes"] == i + 1
        last = service.append_progress(case_id, "enc:note-20", {}, caller=CASE_WORKER, now=30)
        assert last.error == ErrorKind.INVALID_INPUT
        case = service.get_case(case_id)
        assert len(case.progress_notes) == 20
        assert case.outcome_metrics.housing_stability == 19

    def test_only_case_worker_appends(self, service, world):
        case_id = self._open(service, world).data["case_id"]
        result = service.append_progress(case_id, "enc:n", {}, caller=OWNER, now=4)
        assert result.error == ErrorKind.UNAUTHORIZED

    def test_unknown_client(self, service):
        result = service.create_case("00" * 32, None, [], 1, caller=CASE_WORKER, now=3)
        assert result.error == ErrorKind.NOT_FOUND

    def test_record_service(self, service, world):
        case_id = self._open(service, world).data["case_id"]
        request_id = _request(service, world).data["request_id"]
        result = service.record_case_service(case_id, request_id, caller=CASE_WORKER, now=12)
        assert result.data["service_history"] == [request_id]


class TestAuditTrail:
    def test_success_and_failure_recorded(self, service, world):
        _request(service, world)
        _request(service, world, caller=STRANGER)
        assert service.audit.count_events(operation="create_service_request", status="success") == 1
        [failure] = service.audit.get_events(operation="create_service_request", status="failure")
        assert failure["error_kind"] == "unauthorized"
        assert failure["sequence"] == 10

    def test_entity_id_recorded(self, service, world):
        result = _request(service, world)
        [event] = service.audit.get_events(operation="create_service_request")
        assert event["entity_id"] == str(result.data["request_id"])



class TestMalformedArguments:
    """Wrongly typed arguments come back as INVALID_INPUT, never as exceptions."""

    def _case_id(self, service, world) -> int:
        opened = service.create_case(world.client_hash, None, [], 3, caller=CASE_WORKER, now=2)
        assert opened.success, opened
        return opened.data["case_id"]

    def test_string_privacy_level(self, service, world):
        result = service.create_case(world.client_hash, None, [], "3", caller=CASE_WORKER, now=2)
        assert result.error == ErrorKind.INVALID_INPUT

    def test_non_list_goals(self, service, world):
        result = service.create_case(world.client_hash, None, "goal", 3, caller=CASE_WORKER, now=2)
        assert result.error == ErrorKind.INVALID_INPUT

    @pytest.mark.parametrize("metrics", [None, ["housing_stability"], 3])
    def test_non_mapping_metrics(self, service, world, metrics):
        case_id = self._case_id(service, world)
        result = service.append_progress(case_id, "enc:note", metrics, caller=CASE_WORKER, now=3)
        assert result.error == ErrorKind.INVALID_INPUT
        assert service.get_case(case_id).progress_notes == []

    def test_missing_offered_services(self, service):
        result = service.register_provider("x", "t", None, None, 5, caller=PROVIDER_ORG, now=1)
        assert result.error == ErrorKind.INVALID_INPUT

    def test_boolean_total_capacity(self, service):
        result = service.register_provider("x", "t", None, ["shelter"], True, caller=PROVIDER_ORG, now=1)
        assert result.error == ErrorKind.INVALID_INPUT

    @pytest.mark.parametrize("capacity", ["8", True, 8.0])
    def test_non_integer_capacity_update(self, service, world, capacity):
        result = service.update_capacity(world.provider_id, capacity, caller=PROVIDER_ORG, now=2)
        assert result.error == ErrorKind.INVALID_INPUT
        assert service.get_provider(world.provider_id).capacity.total == 5

    def test_boolean_total_slots(self, service, world):
        result = service.add_resource(
            world.provider_id,
            resource_type="shelter",
            name="r",
            total_slots=True,
            start_time=0,
            end_time=5,
            caller=PROVIDER_ORG,
            now=2,
        )
        assert result.error == ErrorKind.INVALID_INPUT

    def test_string_available_slots(self, service, world):
        result = service.set_available_slots(world.resource_id, "1", caller=PROVIDER_ORG, now=2)
        assert result.error == ErrorKind.INVALID_INPUT
        assert _slots(service, world) == (3, 0)

    def test_boolean_priority(self, service, world):
        result = _request(service, world, priority=True)
        assert result.error == ErrorKind.INVALID_INPUT
        assert _slots(service, world) == (3, 0)

    def test_string_special_requirements(self, service, world):
        result = _request(service, world, special_requirements="wheelchair")
        assert result.error == ErrorKind.INVALID_INPUT

    def test_boolean_risk_level(self, service):
        assert service.register_client(b"raw", risk_level=True, now=1).error == ErrorKind.INVALID_INPUT

    def test_text_identifying_data(self, service):
        result = service.register_client("jane-doe", risk_level=2, now=1)
        assert result.error == ErrorKind.INVALID_INPUT
        assert "jane-doe" not in result.message

    def test_non_integer_sequence_position(self, service, world):
        result = _request(service, world, now="10")
        assert result.error == ErrorKind.INVALID_INPUT
        assert _slots(service, world) == (3, 0)

    def test_non_string_caller(self, service, world):
        result = _request(service, world, caller=None)
        assert result.error == ErrorKind.INVALID_INPUT
        [event] = service.audit.get_events(operation="create_service_request")
        assert event["actor_hash"] is None

    def test_config_of_wrong_type(self, service):
        result = service.replace_config({"max_reservation_time": 10}, caller=OWNER, now=1)
        assert result.error == ErrorKind.INVALID_INPUT

    def test_non_boolean_override_flag(self, service):
        result = service.set_emergency_override("false", caller=OWNER, now=1)
        assert result.error == ErrorKind.INVALID_INPUT
        assert service.get_config().emergency_override_enabled is False

    def test_text_salt(self, service):
        result = service.rotate_salt("x" * 32, caller=OWNER, now=1)
        assert result.error == ErrorKind.INVALID_INPUT


class TestGrantListing:
    def test_owner_lists_grants(self, service, world):
        result = service.list_case_worker_grants(PROVIDER_ORG, caller=OWNER, now=2)
        assert result.success
        assert result.data["client_hashes"] == [world.client_hash]

    def test_revoked_grant_disappears(self, service, world):
        service.revoke_case_worker(PROVIDER_ORG, world.client_hash, caller=OWNER, now=2)
        result = service.list_case_worker_grants(PROVIDER_ORG, caller=OWNER, now=3)
        assert result.data["client_hashes"] == []

    def test_non_owner_rejected(self, service, world):
        result = service.list_case_worker_grants(PROVIDER_ORG, caller=PROVIDER_ORG, now=2)
        assert result.error == ErrorKind.UNAUTHORIZED


def test_file_backed_service_survives_restart(tmp_path):
    key = FieldEncryptor.generate_key()
    path = str(tmp_path / "haven.db")

    first = CoordinationService(HavenDatabase(path), FieldEncryptor(key), owner=OWNER)
    world = seed_world(first)
    assert _request(first, world).success
    first.close()

    second = CoordinationService(HavenDatabase(path), FieldEncryptor(key), owner=OWNER)
    try:
        assert _slots(second, world) == (2, 1)
        assert second.get_request(1).status == Status.PENDING
        assert _request(second, world, now=11).data["request_id"] == 2
    finally:
        second.close()

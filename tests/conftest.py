"""Shared test fixtures for Haven tests."""

from __future__ import annotations

import sys
from dataclasses import dataclass
from pathlib import Path

import pytest

# ---------------------------------------------------------------------------
# Test hermeticity
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _force_hermetic_test_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DB_PATH", ":memory:")
    monkeypatch.setenv("ENCRYPTION_KEY", "")
    monkeypatch.setenv("SYSTEM_OWNER", "")
    monkeypatch.setenv("EMERGENCY_OVERRIDE_ENABLED", "false")

# Allow running tests without `pip install -e .` by making `src/` importable.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
_SRC_DIR = _PROJECT_ROOT / "src"
if str(_SRC_DIR) not in sys.path:
    sys.path.insert(0, str(_SRC_DIR))

from haven.core.privacy.identity import generate_salt  # noqa: E402
from haven.core.storage.database import HavenDatabase  # noqa: E402
from haven.core.storage.encryption import FieldEncryptor  # noqa: E402
from haven.core.storage.models import SystemConfig  # noqa: E402
from haven.core.storage.repository import HavenRepository  # noqa: E402
from haven.domains.coordination.service import CoordinationService  # noqa: E402

OWNER = "system-owner"
PROVIDER_ORG = "provider-org"
CASE_WORKER = "case-worker"
STRANGER = "stranger"


# ---------------------------------------------------------------------------
# In-memory storage fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def haven_db():
    """Create an in-memory HavenDatabase for testing."""
    db = HavenDatabase(":memory:")
    db.initialize()
    yield db
    db.close()


@pytest.fixture
def field_encryptor() -> FieldEncryptor:
    """Create a FieldEncryptor with a fresh test key."""
    return FieldEncryptor(FieldEncryptor.generate_key())


@pytest.fixture
def repository(haven_db, field_encryptor) -> HavenRepository:
    """A repository with the config and salt singletons already in place."""
    repo = HavenRepository(haven_db, field_encryptor)
    repo.save_config(SystemConfig())
    repo.save_salt(generate_salt())
    return repo


@pytest.fixture
def service(haven_db, field_encryptor) -> CoordinationService:
    """A coordination service over in-memory SQLite, owned by OWNER."""
    return CoordinationService(haven_db, field_encryptor, owner=OWNER)


# ---------------------------------------------------------------------------
# Seeded world: one client, one provider (capacity 5), one 3-slot resource
# ---------------------------------------------------------------------------

@dataclass
class World:
    client_hash: str
    provider_id: int
    resource_id: int


def seed_world(
    service: CoordinationService,
    *,
    total_slots: int = 3,
    raw_identity: bytes = b"client:jane-doe:1980-01-01",
    now: int = 1,
) -> World:
    client = service.register_client(raw_identity, risk_level=2, now=now)
    assert client.success, client
    client_hash = client.data["client_hash"]

    provider = service.register_provider(
        "Harbor House",
        "nonprofit",
        "enc:contact",
        ["shelter", "food"],
        5,
        "loc:abc",
        caller=PROVIDER_ORG,
        now=now,
    )
    assert provider.success, provider
    provider_id = provider.data["provider_id"]

    resource = service.add_resource(
        provider_id,
        resource_type="shelter",
        name="Night beds",
        total_slots=total_slots,
        start_time=18,
        end_time=30,
        caller=PROVIDER_ORG,
        now=now,
    )
    assert resource.success, resource

    granted = service.grant_case_worker(PROVIDER_ORG, client_hash, caller=OWNER, now=now)
    assert granted.success, granted
    return World(client_hash, provider_id, resource.data["resource_id"])


@pytest.fixture
def world(service) -> World:
    return seed_world(service)

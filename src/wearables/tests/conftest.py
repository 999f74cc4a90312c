"""Shared fixtures and provider payloads for ingestion pipeline tests."""

from __future__ import annotations

import json
from datetime import date
from pathlib import Path
from uuid import UUID

import pytest

from src.wearables.adapters import TerraAdapter, WhoopAdapter
from src.wearables.config_loader import SourcePolicyConfig, load_source_policy
from src.wearables.normalizer import Normalizer
from src.wearables.priority import SourcePolicy
from src.wearables.tests.fakes import FakeClock, FakeIngestStore

# Fixtures directory
FIXTURES_DIR = Path(__file__).parent / "fixtures"

# Canonical test user ID
TEST_USER_ID = UUID("12345678-1234-5678-1234-567812345678")
TEST_DATE = date(2026, 2, 23)


def load_fixture(name: str) -> dict:
    return json.loads((FIXTURES_DIR / name).read_text())


# ---------------------------------------------------------------------------
# Config / pipeline fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def policy_config() -> SourcePolicyConfig:
    """Load the bundled source policy."""
    return load_source_policy()


@pytest.fixture
def normalizer(policy_config: SourcePolicyConfig) -> Normalizer:
    return Normalizer(SourcePolicy(policy_config))


@pytest.fixture
def whoop_adapter(normalizer: Normalizer) -> WhoopAdapter:
    return WhoopAdapter(normalizer)


@pytest.fixture
def terra_adapter(normalizer: Normalizer) -> TerraAdapter:
    return TerraAdapter(normalizer)


@pytest.fixture
def store() -> FakeIngestStore:
    return FakeIngestStore()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ---------------------------------------------------------------------------
# JSON fixture loaders
# ---------------------------------------------------------------------------


@pytest.fixture
def whoop_cycle_raw() -> dict:
    return load_fixture("whoop_cycle.json")


@pytest.fixture
def whoop_recovery_raw() -> dict:
    return load_fixture("whoop_recovery.json")


@pytest.fixture
def whoop_sleep_raw() -> dict:
    return load_fixture("whoop_sleep.json")


@pytest.fixture
def whoop_workout_raw() -> dict:
    return load_fixture("whoop_workout.json")


@pytest.fixture
def terra_sleep_webhook() -> dict:
    return load_fixture("terra_sleep.json")


@pytest.fixture
def terra_daily_webhook() -> dict:
    return load_fixture("terra_daily.json")


@pytest.fixture
def terra_activity_webhook() -> dict:
    return load_fixture("terra_activity.json")


@pytest.fixture
def terra_body_webhook() -> dict:
    return load_fixture("terra_body.json")

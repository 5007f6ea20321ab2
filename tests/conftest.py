"""Shared test fixtures for rbac-engine."""

from datetime import datetime, timedelta, timezone

import pytest

from rbac_engine.ability.engine import AbilityEngine
from rbac_engine.common.config import RBACSettings
from rbac_engine.store.persistence import MemoryPersistence
from rbac_engine.store.seed import default_seed
from rbac_engine.store.service import EntityStore

AUDIT_KEY = "test-audit-key-for-unit-tests"


def make_settings(**overrides) -> RBACSettings:
    defaults = {"audit_hmac_key": AUDIT_KEY, "persistence": "memory"}
    defaults.update(overrides)
    return RBACSettings(**defaults)


class FakeClock:
    """Deterministic clock advancing one second per reading."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2025, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=1)
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def persistence():
    return MemoryPersistence(default_seed())


@pytest.fixture
def store(settings, persistence, clock):
    """Store loaded with the default seed data."""
    return EntityStore(settings, persistence, clock=clock)


@pytest.fixture
def empty_store(settings, clock):
    return EntityStore(settings, MemoryPersistence(), clock=clock)


@pytest.fixture
def abilities(store):
    return AbilityEngine(store)

"""Dependency injection singletons for rbac-engine."""

from rbac_engine.ability.engine import AbilityEngine
from rbac_engine.audit.service import AuditRecorder
from rbac_engine.common.config import RBACSettings, get_settings
from rbac_engine.store.persistence import PersistenceAdapter, build_persistence
from rbac_engine.store.service import EntityStore

_persistence: PersistenceAdapter | None = None
_store: EntityStore | None = None
_abilities: AbilityEngine | None = None


def get_persistence() -> PersistenceAdapter:
    global _persistence
    if _persistence is None:
        _persistence = build_persistence(get_settings())
    return _persistence


def get_store() -> EntityStore:
    global _store
    if _store is None:
        _store = EntityStore(get_settings(), get_persistence())
    return _store


def get_audit_recorder() -> AuditRecorder:
    return get_store().audit


def get_ability_engine() -> AbilityEngine:
    global _abilities
    if _abilities is None:
        _abilities = AbilityEngine(get_store())
    return _abilities


def configure(settings: RBACSettings, persistence: PersistenceAdapter | None = None) -> EntityStore:
    """Build the singletons from explicit settings instead of the environment."""
    global _persistence, _store, _abilities
    _persistence = persistence or build_persistence(settings)
    _store = EntityStore(settings, _persistence)
    _abilities = AbilityEngine(_store)
    return _store


def reset_singletons() -> None:
    """Reset all singletons (for testing)."""
    global _persistence, _store, _abilities
    _persistence = None
    _store = None
    _abilities = None

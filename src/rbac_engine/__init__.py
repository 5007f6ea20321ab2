"""rbac-engine: Dynamic role-based access control core."""

from rbac_engine.ability.engine import Ability, AbilityEngine, Principal
from rbac_engine.ability.guards import Guard, PermissionDescriptor, require_all, require_any
from rbac_engine.audit.service import AuditRecorder
from rbac_engine.integrity.enforcer import IntegrityEnforcer, Rule
from rbac_engine.store.persistence import JsonFilePersistence, MemoryPersistence, SqlPersistence
from rbac_engine.store.service import EntityStore, StoreState

__all__ = [
    "Ability",
    "AbilityEngine",
    "Principal",
    "Guard",
    "PermissionDescriptor",
    "require_all",
    "require_any",
    "AuditRecorder",
    "IntegrityEnforcer",
    "Rule",
    "EntityStore",
    "StoreState",
    "MemoryPersistence",
    "JsonFilePersistence",
    "SqlPersistence",
]
__version__ = "0.1.0"

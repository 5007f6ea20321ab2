"""Ability engine — compiles a role's permission keys into a capability set.

Wildcards: subject ``all`` matches every subject and action ``all`` (alias
``manage``) matches every action, so ``all.read`` grants read on every
subject, ``users.all`` grants every action on users and ``all.all`` grants
everything. A role with ``is_admin`` bypasses the check entirely.
"""

import logging
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterable, Optional, Union

from rbac_engine.audit.models import Actor
from rbac_engine.store.models import WILDCARD, Role, permission_key

if TYPE_CHECKING:
    from rbac_engine.store.service import EntityStore

logger = logging.getLogger(__name__)

ACTION_WILDCARDS = (WILDCARD, "manage")


def split_key(key: str) -> tuple[str, str] | None:
    """Split ``"<subject>.<action>"``; None when the key is malformed."""
    if not isinstance(key, str):
        return None
    subject, sep, action = key.rpartition(".")
    if not sep or not subject or not action:
        return None
    return subject, action


@dataclass(frozen=True)
class Ability:
    role_id: Optional[str] = None
    is_admin: bool = False
    keys: frozenset[str] = frozenset()

    @classmethod
    def empty(cls, role_id: Optional[str] = None) -> "Ability":
        return cls(role_id=role_id)

    @classmethod
    def from_role(cls, role: Role) -> "Ability":
        return cls(role_id=role.id, is_admin=role.is_admin, keys=frozenset(role.permissions))

    def can(self, action: str, subject: str) -> bool:
        if self.is_admin:
            return True
        if not action or not subject:
            return False
        keys = self.keys
        if permission_key(subject, action) in keys or permission_key(WILDCARD, action) in keys:
            return True
        return any(
            permission_key(subject, wildcard) in keys or permission_key(WILDCARD, wildcard) in keys
            for wildcard in ACTION_WILDCARDS
        )

    def cannot(self, action: str, subject: str) -> bool:
        return not self.can(action, subject)

    def has(self, key: str) -> bool:
        """Check a ``"<subject>.<action>"`` key. Malformed keys are denied."""
        parts = split_key(key)
        if parts is None:
            return False
        subject, action = parts
        return self.can(action, subject)

    def can_any(self, keys: Iterable[str]) -> bool:
        return any(self.has(k) for k in keys)

    def can_all(self, keys: Iterable[str]) -> bool:
        return all(self.has(k) for k in keys)

    def missing(self, keys: Iterable[str]) -> list[str]:
        return [k for k in keys if not self.has(k)]


@dataclass(frozen=True)
class Principal:
    """The authenticated caller, as supplied by the host application."""

    user_id: str
    username: str
    role: Optional[Role] = None

    @property
    def actor(self) -> Actor:
        return Actor(user_id=self.user_id, username=self.username)


class AbilityEngine:
    """Serves abilities from the store's current snapshot.

    One compiled Ability is cached per role, tagged with the Role record it
    was built from. The store publishes a new Role record whenever the
    role's permission set or admin flag changes, so an identity mismatch
    means the cached entry is stale.
    """

    def __init__(self, store: "EntityStore"):
        self.store = store
        self._cache: dict[str, tuple[Role, Ability]] = {}
        self._lock = threading.Lock()

    def for_role(self, role: Union[Role, str, None]) -> Ability:
        if role is None:
            return Ability.empty()
        if isinstance(role, str):
            state = self.store.state
            resolved = self.store.enforcer.resolve_role_id(state, role)
            if resolved is None:
                return Ability.empty(role)
            role = state.roles[resolved]

        with self._lock:
            cached = self._cache.get(role.id)
        if cached is not None and cached[0] is role:
            return cached[1]

        ability = Ability.from_role(role)
        with self._lock:
            self._cache[role.id] = (role, ability)
        logger.debug("Compiled ability for role %s (%d keys)", role.id, len(ability.keys))
        return ability

    def for_user(self, user_id: str) -> Ability:
        """Ability of a user as currently stored. Inactive users or roles get nothing."""
        state = self.store.state
        user = state.users.get(user_id)
        if user is None:
            return Ability.empty()
        role_id = self.store.enforcer.resolve_role_id(state, user.role_id)
        if role_id is None:
            return Ability.empty()
        role = state.roles[role_id]
        if user.status != "active" or not role.is_active:
            return Ability.empty(role_id)
        return self.for_role(role)

    def for_principal(self, principal: Principal) -> Ability:
        return self.for_user(principal.user_id)

    def principal(self, user_id: str) -> Optional[Principal]:
        """Build a Principal for a stored user, or None when the id is unknown."""
        state = self.store.state
        user = state.users.get(user_id)
        if user is None:
            return None
        role_id = self.store.enforcer.resolve_role_id(state, user.role_id)
        return Principal(
            user_id=user.id,
            username=user.username,
            role=state.roles.get(role_id) if role_id else None,
        )

    def can(self, principal: Union[Principal, str], action: str, subject: str) -> bool:
        user_id = principal if isinstance(principal, str) else principal.user_id
        return self.for_user(user_id).can(action, subject)

    def invalidate(self) -> None:
        with self._lock:
            self._cache.clear()

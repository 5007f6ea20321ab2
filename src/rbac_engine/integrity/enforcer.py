"""Referential-integrity rules consulted before every store commit.

The enforcer keeps no mutable state: each check reads the state it is
handed. Operation checks raise typed errors naming the failed rule and the
offending ids; ``verify`` reports every violation found in a whole state.
"""

from collections import Counter
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Iterable, Mapping

from rbac_engine.common.exceptions import (
    DuplicateError,
    ImmutableFieldError,
    IntegrityError,
    NotFoundError,
    ValidationError,
)
from rbac_engine.store.models import Permission, Role, User

if TYPE_CHECKING:
    from rbac_engine.store.service import StoreState


class Rule(str, Enum):
    USER_ROLE_EXISTS = "user_role_exists"
    LINK_ROLE_EXISTS = "link_role_exists"
    LINK_PERMISSION_EXISTS = "link_permission_exists"
    UNIQUE_LINK = "unique_link"
    ROLE_IN_USE = "role_in_use"
    PERMISSION_ASSIGNED = "permission_assigned"
    SYSTEM_ROLE_IMMUTABLE = "system_role_immutable"
    UNIQUE_USERNAME = "unique_username"
    UNIQUE_EMAIL = "unique_email"
    UNIQUE_ROLE_KEY = "unique_role_key"
    UNIQUE_PERMISSION = "unique_permission"


# Migration shim: pre-uuid role ids still referenced by older user records.
DEFAULT_LEGACY_ROLE_ALIASES: dict[str, str] = {
    "role_001": "role-001",
    "role_002": "role-002",
    "role_003": "role-003",
    "role_004": "role-004",
    "role_005": "role-002",
    "role_006": "role-002",
}

SYSTEM_ROLE_PROTECTED_FIELDS = ("key", "is_system")


@dataclass(frozen=True)
class Violation:
    rule: Rule
    message: str
    entity_ids: tuple[str, ...]


class IntegrityEnforcer:
    """Validates mutations against the referential rules."""

    def __init__(self, legacy_role_aliases: Mapping[str, str] | None = None):
        if legacy_role_aliases is None:
            legacy_role_aliases = DEFAULT_LEGACY_ROLE_ALIASES
        self.legacy_role_aliases = dict(legacy_role_aliases)

    # ── Role resolution ──

    def resolve_role_id(self, state: "StoreState", role_id: str) -> str | None:
        """Return the current id for ``role_id`` (following a legacy alias), or None."""
        if role_id in state.roles:
            return role_id
        alias = self.legacy_role_aliases.get(role_id)
        if alias is not None and alias in state.roles:
            return alias
        return None

    def users_of_role(self, state: "StoreState", role_id: str) -> list[User]:
        """Users referencing a role directly or through a legacy alias."""
        old_ids = {old for old, new in self.legacy_role_aliases.items() if new == role_id}
        return [
            u for u in state.users.values()
            if u.role_id == role_id or u.role_id in old_ids
        ]

    # ── Users ──

    def check_user(self, state: "StoreState", user: User) -> None:
        """Role reference plus username/e-mail uniqueness for a user about to be stored."""
        if self.resolve_role_id(state, user.role_id) is None:
            raise ValidationError(
                f"Role '{user.role_id}' does not exist",
                rule=Rule.USER_ROLE_EXISTS, entity_ids=(user.id, user.role_id),
            )
        for other in state.users.values():
            if other.id == user.id:
                continue
            if other.username.lower() == user.username.lower():
                raise DuplicateError(
                    f"Username '{user.username}' already exists",
                    rule=Rule.UNIQUE_USERNAME, entity_ids=(other.id,),
                )
            if other.email.lower() == user.email.lower():
                raise DuplicateError(
                    f"Email '{user.email}' already exists",
                    rule=Rule.UNIQUE_EMAIL, entity_ids=(other.id,),
                )

    def check_role_assignable(self, state: "StoreState", role_id: str) -> None:
        """A user may only be assigned to an existing, active role."""
        resolved = self.resolve_role_id(state, role_id)
        if resolved is None:
            raise ValidationError(
                f"Role '{role_id}' does not exist",
                rule=Rule.USER_ROLE_EXISTS, entity_ids=(role_id,),
            )
        if not state.roles[resolved].is_active:
            raise ValidationError(
                f"Cannot assign inactive role '{resolved}' to a user",
                entity_ids=(resolved,),
            )

    # ── Roles ──

    def check_role_key_unique(self, state: "StoreState", role: Role) -> None:
        for other in state.roles.values():
            if other.id != role.id and other.key == role.key:
                raise DuplicateError(
                    f"Role key '{role.key}' already exists",
                    rule=Rule.UNIQUE_ROLE_KEY, entity_ids=(other.id,),
                )

    def check_role_update(self, role: Role, changes: Mapping[str, object]) -> None:
        """A system role's key and is_system flag cannot change."""
        if not role.is_system:
            return
        for field in SYSTEM_ROLE_PROTECTED_FIELDS:
            if field in changes and changes[field] != getattr(role, field):
                raise ImmutableFieldError(
                    f"Field '{field}' of system role '{role.key}' is immutable",
                    rule=Rule.SYSTEM_ROLE_IMMUTABLE, entity_ids=(role.id,),
                )

    def check_role_deletable(self, state: "StoreState", role_id: str) -> None:
        """Neither an in-use role nor a system role can be deleted.

        Being in use is reported first, even for a system role.
        """
        role = state.roles.get(role_id)
        if role is None:
            raise NotFoundError(f"Role '{role_id}' not found", entity_ids=(role_id,))
        users = self.users_of_role(state, role_id)
        if users:
            raise IntegrityError(
                f"role in use: {len(users)} user(s) are assigned to role '{role.key}'",
                rule=Rule.ROLE_IN_USE, entity_ids=(role_id, *(u.id for u in users)),
            )
        if role.is_system:
            raise ImmutableFieldError(
                f"System role '{role.key}' cannot be deleted",
                rule=Rule.SYSTEM_ROLE_IMMUTABLE, entity_ids=(role_id,),
            )

    # ── Permissions ──

    def check_permission_unique(self, state: "StoreState", permission: Permission) -> None:
        for other in state.permissions.values():
            if other.id != permission.id and other.key == permission.key:
                raise DuplicateError(
                    f"Permission '{permission.key}' already exists",
                    rule=Rule.UNIQUE_PERMISSION, entity_ids=(other.id,),
                )

    def check_permissions_deletable(
        self, state: "StoreState", permission_ids: Iterable[str],
    ) -> None:
        """An assigned permission cannot be deleted."""
        ids = set(permission_ids)
        links = [rp for rp in state.role_permissions.values() if rp.permission_id in ids]
        if links:
            assigned = sorted({rp.permission_id for rp in links})
            roles = sorted({rp.role_id for rp in links})
            raise IntegrityError(
                f"permission assigned: {', '.join(assigned)} still assigned to {len(roles)} role(s)",
                rule=Rule.PERMISSION_ASSIGNED, entity_ids=(*assigned, *roles),
            )

    # ── Role-permission links ──

    def check_role_permissions(
        self, state: "StoreState", role_id: str, permission_ids: Iterable[str],
    ) -> None:
        """Both ends must resolve for a permission set about to replace a role's links."""
        if role_id not in state.roles:
            raise NotFoundError(
                f"Role '{role_id}' not found",
                rule=Rule.LINK_ROLE_EXISTS, entity_ids=(role_id,),
            )
        unknown = [pid for pid in permission_ids if pid not in state.permissions]
        if unknown:
            raise ValidationError(
                f"Unknown permission id(s): {', '.join(unknown)}",
                rule=Rule.LINK_PERMISSION_EXISTS, entity_ids=tuple(unknown),
            )

    # ── Whole-state verification ──

    def verify(self, state: "StoreState") -> list[Violation]:
        """Return every rule violation present in ``state``."""
        violations: list[Violation] = []

        for user in state.users.values():
            if self.resolve_role_id(state, user.role_id) is None:
                violations.append(Violation(
                    Rule.USER_ROLE_EXISTS,
                    f"User '{user.username}' references missing role '{user.role_id}'",
                    (user.id, user.role_id),
                ))

        pairs: Counter = Counter()
        for link in state.role_permissions.values():
            if link.role_id not in state.roles:
                violations.append(Violation(
                    Rule.LINK_ROLE_EXISTS,
                    f"Link '{link.id}' references missing role '{link.role_id}'",
                    (link.id, link.role_id),
                ))
            if link.permission_id not in state.permissions:
                violations.append(Violation(
                    Rule.LINK_PERMISSION_EXISTS,
                    f"Link '{link.id}' references missing permission '{link.permission_id}'",
                    (link.id, link.permission_id),
                ))
            pairs[(link.role_id, link.permission_id)] += 1
        for (role_id, permission_id), count in pairs.items():
            if count > 1:
                violations.append(Violation(
                    Rule.UNIQUE_LINK,
                    f"Permission '{permission_id}' linked {count} times to role '{role_id}'",
                    (role_id, permission_id),
                ))

        for rule, values in (
            (Rule.UNIQUE_USERNAME, [(u.id, u.username.lower()) for u in state.users.values()]),
            (Rule.UNIQUE_EMAIL, [(u.id, u.email.lower()) for u in state.users.values()]),
            (Rule.UNIQUE_ROLE_KEY, [(r.id, r.key) for r in state.roles.values()]),
            (Rule.UNIQUE_PERMISSION, [(p.id, p.key) for p in state.permissions.values()]),
        ):
            seen: dict[str, list[str]] = {}
            for entity_id, value in values:
                seen.setdefault(value, []).append(entity_id)
            for value, ids in seen.items():
                if len(ids) > 1:
                    violations.append(Violation(rule, f"Duplicate value '{value}'", tuple(ids)))

        return violations

    def ensure_valid(self, state: "StoreState") -> None:
        """Raise the first violation in ``state`` as an IntegrityError."""
        violations = self.verify(state)
        if violations:
            first = violations[0]
            raise IntegrityError(first.message, rule=first.rule, entity_ids=first.entity_ids)

"""Entity store — authoritative users, roles, permissions and their links.

State lives in an immutable :class:`StoreState` snapshot. A mutation builds
the next snapshot, validates it, persists the changed collections together
with its audit entry, and only then publishes both. Writers are serialized
by one re-entrant lock; readers use whatever snapshot is current and never
see a half-applied change.
"""

import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, Iterable, Mapping, Optional, Type, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as SchemaValidationError

from rbac_engine.audit.models import SYSTEM_ACTOR, AuditEvent, AuditLogEntry, FieldChange
from rbac_engine.audit.service import AuditRecorder
from rbac_engine.common.config import RBACSettings
from rbac_engine.common.exceptions import (
    AuditWriteError,
    DuplicateError,
    ImmutableFieldError,
    IntegrityError,
    NotFoundError,
    PersistenceError,
    RBACError,
    ValidationError,
)
from rbac_engine.common.models import generate_id, utcnow
from rbac_engine.integrity.enforcer import IntegrityEnforcer, Rule
from rbac_engine.store.models import (
    CRUD_ACTIONS,
    WILDCARD,
    DeletionCheck,
    Permission,
    Role,
    RolePermission,
    User,
    UserWithRole,
    permission_key,
)
from rbac_engine.store.persistence import (
    AUDIT_LOG,
    COLLECTIONS,
    PERMISSIONS,
    ROLE_PERMISSIONS,
    ROLES,
    USERS,
    PersistenceAdapter,
    Records,
)
from rbac_engine.store.schemas import (
    ModuleCreate,
    PermissionCreate,
    PermissionUpdate,
    RoleCreate,
    RoleUpdate,
    UserCreate,
    UserUpdate,
)

logger = logging.getLogger(__name__)

SchemaT = TypeVar("SchemaT", bound=BaseModel)

HIGH_RISK_LEVELS = ("high", "critical")


@dataclass(frozen=True)
class StoreState:
    users: dict[str, User] = field(default_factory=dict)
    roles: dict[str, Role] = field(default_factory=dict)
    permissions: dict[str, Permission] = field(default_factory=dict)
    role_permissions: dict[str, RolePermission] = field(default_factory=dict)


def _parse(schema: Type[SchemaT], data: Any) -> SchemaT:
    if isinstance(data, schema):
        return data
    try:
        return schema.model_validate(data)
    except SchemaValidationError as exc:
        raise ValidationError(f"Invalid {schema.__name__}: {exc}") from exc


def _provided(payload: BaseModel) -> dict[str, Any]:
    """Fields the caller actually supplied with a non-null value."""
    return {k: v for k, v in payload.model_dump(exclude_unset=True).items() if v is not None}


def _diff(old: BaseModel, changes: Mapping[str, Any]) -> tuple[FieldChange, ...]:
    return tuple(
        FieldChange(field=name, old_value=getattr(old, name), new_value=value)
        for name, value in changes.items()
        if getattr(old, name) != value
    )


def _materialize(
    roles: Mapping[str, Role],
    permissions: Mapping[str, Permission],
    links: Mapping[str, RolePermission],
    role_ids: Iterable[str],
) -> dict[str, Role]:
    """Rebuild the permission-key list of the given roles from the link table.

    A role record is replaced only when its key list actually changes.
    """
    keys_by_role: dict[str, set[str]] = {rid: set() for rid in role_ids}
    for link in links.values():
        if link.role_id in keys_by_role and link.permission_id in permissions:
            keys_by_role[link.role_id].add(permissions[link.permission_id].key)
    result = dict(roles)
    for role_id, keys in keys_by_role.items():
        role = result.get(role_id)
        if role is None:
            continue
        materialized = tuple(sorted(keys))
        if role.permissions != materialized:
            result[role_id] = role.model_copy(update={"permissions": materialized})
    return result


def compare_permissions(old: Iterable[str], new: Iterable[str]) -> dict[str, list[str]]:
    """Split two key lists into added, removed and unchanged keys."""
    old_list, new_list = list(old), list(new)
    old_set, new_set = set(old_list), set(new_list)
    return {
        "added": [k for k in new_list if k not in old_set],
        "removed": [k for k in old_list if k not in new_set],
        "unchanged": [k for k in old_list if k in new_set],
    }


class EntityStore:
    """Query and mutation API over users, roles, permissions and links."""

    def __init__(
        self,
        settings: RBACSettings,
        persistence: PersistenceAdapter,
        enforcer: IntegrityEnforcer | None = None,
        recorder: AuditRecorder | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings
        self.persistence = persistence
        self.clock = clock
        self._lock = threading.RLock()
        self.enforcer = enforcer or IntegrityEnforcer(settings.role_aliases)
        if recorder is None:
            recorder = AuditRecorder(settings, persistence, lock=self._lock, clock=clock)
        else:
            recorder.lock = self._lock
        self.audit = recorder
        self._state = StoreState()
        self.reload()

    # ── Loading ──

    def reload(self) -> None:
        """Re-read every collection from persistence and verify integrity."""
        try:
            users = {r.id: r for r in (User.model_validate(x) for x in self.persistence.load(USERS))}
            roles = {
                r.id: r for r in (
                    Role.model_validate({k: v for k, v in x.items() if k != "permissions"})
                    for x in self.persistence.load(ROLES)
                )
            }
            permissions = {
                p.id: p for p in (Permission.model_validate(x) for x in self.persistence.load(PERMISSIONS))
            }
            links = {
                rp.id: rp for rp in (
                    RolePermission.model_validate(x) for x in self.persistence.load(ROLE_PERMISSIONS)
                )
            }
        except SchemaValidationError as exc:
            raise ValidationError(f"Persisted data is malformed: {exc}") from exc

        state = StoreState(
            users=users,
            roles=_materialize(roles, permissions, links, roles),
            permissions=permissions,
            role_permissions=links,
        )
        self.enforcer.ensure_valid(state)
        with self._lock:
            self.audit.load()
            self._state = state
        logger.info(
            "Loaded %d users, %d roles, %d permissions, %d links",
            len(users), len(roles), len(permissions), len(links),
        )

    def reset(self, seed: Mapping[str, Records]) -> None:
        """Replace every entity collection with ``seed``. The audit log is kept."""
        with self._lock:
            state = self._state
            payload = {name: list(seed.get(name, [])) for name in COLLECTIONS if name != AUDIT_LOG}
            self.persistence.save_many(payload)
            try:
                self.reload()
            except RBACError:
                logger.warning("Seed data rejected, restoring previous collections")
                self.persistence.save_many({name: self._dump(state, name) for name in payload})
                raise

    def is_empty(self) -> bool:
        state = self._state
        return not (state.users or state.roles or state.permissions)

    # ── Snapshots ──

    @property
    def state(self) -> StoreState:
        return self._state

    def snapshot(self) -> tuple[StoreState, tuple[AuditLogEntry, ...]]:
        """Entity state and audit log as of the same commit."""
        with self._lock:
            return self._state, self.audit.entries

    def export_collections(self) -> dict[str, Records]:
        state, entries = self.snapshot()
        data = {name: self._dump(state, name) for name in COLLECTIONS if name != AUDIT_LOG}
        data[AUDIT_LOG] = self.audit.dump(entries)
        return data

    # ── Users: read ──

    def get_users(self) -> list[User]:
        return list(self._state.users.values())

    def get_user(self, user_id: str) -> User | None:
        return self._state.users.get(user_id)

    def get_user_by_username(self, username: str) -> User | None:
        wanted = username.lower()
        return next((u for u in self._state.users.values() if u.username.lower() == wanted), None)

    def get_users_by_role(self, role_id: str) -> list[User]:
        return self.enforcer.users_of_role(self._state, role_id)

    def count_users_with_role(self, role_id: str) -> int:
        return len(self.get_users_by_role(role_id))

    def get_active_users(self) -> list[User]:
        return [u for u in self._state.users.values() if u.status == "active"]

    def search_users(self, query: str) -> list[User]:
        needle = query.strip().lower()
        if not needle:
            return self.get_users()
        return [
            u for u in self._state.users.values()
            if needle in u.username.lower()
            or needle in u.email.lower()
            or needle in u.full_name.lower()
        ]

    def get_users_with_roles(self) -> list[UserWithRole]:
        state = self._state
        result = []
        for user in state.users.values():
            role_id = self.enforcer.resolve_role_id(state, user.role_id)
            role = state.roles.get(role_id) if role_id else None
            result.append(UserWithRole(
                user=user,
                role_name=role.name if role else "",
                role_key=role.key if role else "",
            ))
        return result

    # ── Users: write ──

    def create_user(self, data: UserCreate | Mapping[str, Any], actor=None, reason: str | None = None) -> User:
        payload = _parse(UserCreate, data)
        with self._lock:
            state = self._state
            self.enforcer.check_role_assignable(state, payload.role_id)
            role = state.roles[self.enforcer.resolve_role_id(state, payload.role_id)]
            now = self.clock()
            user = User(
                id=generate_id("user_"),
                username=payload.username,
                email=payload.email,
                full_name=payload.full_name,
                role_id=role.id,
                status=payload.status,
                created_at=now,
                last_login=now,
            )
            self.enforcer.check_user(state, user)
            self._commit(
                replace(state, users={**state.users, user.id: user}),
                (USERS,),
                self._event(
                    actor, "create", "user", user.id, user.username, reason,
                    changes=(FieldChange(field="role", new_value=role.name),),
                ),
            )
            return user

    def update_user(
        self, user_id: str, patch: UserUpdate | Mapping[str, Any], actor=None, reason: str | None = None,
    ) -> User:
        payload = _parse(UserUpdate, patch)
        changes = _provided(payload)
        with self._lock:
            state = self._state
            user = state.users.get(user_id)
            if user is None:
                raise NotFoundError(f"User '{user_id}' not found", entity_ids=(user_id,))
            if "username" in changes:
                if changes.pop("username") != user.username:
                    raise ImmutableFieldError(
                        "Username cannot be changed after creation", entity_ids=(user_id,),
                    )

            audit_changes: list[FieldChange] = []
            action = "update"
            if "role_id" in changes:
                old_role_id = self.enforcer.resolve_role_id(state, user.role_id)
                self.enforcer.check_role_assignable(state, changes["role_id"])
                new_role_id = self.enforcer.resolve_role_id(state, changes["role_id"])
                changes["role_id"] = new_role_id
                if new_role_id != old_role_id:
                    self._forbid_self(actor, user_id, "change your own role")
                    action = "role_change"
                    old_role = state.roles.get(old_role_id) if old_role_id else None
                    audit_changes.append(FieldChange(
                        field="role",
                        old_value=old_role.name if old_role else user.role_id,
                        new_value=state.roles[new_role_id].name,
                    ))
            if "status" in changes and changes["status"] != user.status:
                self._forbid_self(actor, user_id, "change your own status")

            updated = user.model_copy(update=changes)
            self.enforcer.check_user(state, updated)
            audit_changes.extend(c for c in _diff(user, changes) if c.field != "role_id")
            self._commit(
                replace(state, users={**state.users, user_id: updated}),
                (USERS,),
                self._event(actor, action, "user", user_id, user.username, reason, tuple(audit_changes)),
            )
            return updated

    def change_user_role(self, user_id: str, role_id: str, actor=None, reason: str | None = None) -> User:
        return self.update_user(user_id, {"role_id": role_id}, actor=actor, reason=reason)

    def update_user_status(self, user_id: str, status: str, actor=None, reason: str | None = None) -> User:
        return self.update_user(user_id, {"status": status}, actor=actor, reason=reason)

    def delete_user(self, user_id: str, actor=None, reason: str | None = None) -> None:
        with self._lock:
            state = self._state
            user = state.users.get(user_id)
            if user is None:
                raise NotFoundError(f"User '{user_id}' not found", entity_ids=(user_id,))
            self._forbid_self(actor, user_id, "delete your own account")
            users = dict(state.users)
            del users[user_id]
            self._commit(
                replace(state, users=users),
                (USERS,),
                self._event(actor, "delete", "user", user_id, user.username, reason),
            )

    def record_login(
        self, user_id: str, ip_address: str | None = None, user_agent: str | None = None,
    ) -> User:
        with self._lock:
            state = self._state
            user = state.users.get(user_id)
            if user is None:
                raise NotFoundError(f"User '{user_id}' not found", entity_ids=(user_id,))
            updated = user.model_copy(update={"last_login": self.clock()})
            event = AuditEvent(
                actor_id=user.id, actor_name=user.username,
                action="login", entity_type="session",
                entity_id=user.id, entity_name=user.username,
                ip_address=ip_address, user_agent=user_agent,
            )
            self._commit(replace(state, users={**state.users, user_id: updated}), (USERS,), event)
            return updated

    def record_logout(self, user_id: str) -> None:
        with self._lock:
            user = self._state.users.get(user_id)
            if user is None:
                raise NotFoundError(f"User '{user_id}' not found", entity_ids=(user_id,))
            event = AuditEvent(
                actor_id=user.id, actor_name=user.username,
                action="logout", entity_type="session",
                entity_id=user.id, entity_name=user.username,
            )
            self._commit(self._state, (), event)

    # ── Roles: read ──

    def get_roles(self) -> list[Role]:
        return list(self._state.roles.values())

    def get_role(self, role_id: str) -> Role | None:
        return self._state.roles.get(role_id)

    def get_role_by_key(self, key: str) -> Role | None:
        return next((r for r in self._state.roles.values() if r.key == key), None)

    def get_active_roles(self) -> list[Role]:
        return [r for r in self._state.roles.values() if r.is_active]

    def get_system_roles(self) -> list[Role]:
        return [r for r in self._state.roles.values() if r.is_system]

    def get_custom_roles(self) -> list[Role]:
        return [r for r in self._state.roles.values() if not r.is_system]

    def search_roles(self, query: str) -> list[Role]:
        needle = query.strip().lower()
        if not needle:
            return self.get_roles()
        return [
            r for r in self._state.roles.values()
            if needle in r.name.lower()
            or needle in r.key.lower()
            or needle in r.description.lower()
        ]

    def get_role_permissions(self, role_id: str) -> list[Permission]:
        state = self._state
        return [
            state.permissions[link.permission_id]
            for link in state.role_permissions.values()
            if link.role_id == role_id and link.permission_id in state.permissions
        ]

    def can_delete_role(self, role_id: str) -> DeletionCheck:
        """Report whether ``role_id`` could be deleted right now, without deleting it."""
        try:
            self.enforcer.check_role_deletable(self._state, role_id)
        except (IntegrityError, ImmutableFieldError) as exc:
            return DeletionCheck(allowed=False, reason=exc.message)
        return DeletionCheck(allowed=True)

    # ── Roles: write ──

    def create_role(
        self,
        data: RoleCreate | Mapping[str, Any],
        permission_ids: Iterable[str] = (),
        actor=None,
        reason: str | None = None,
    ) -> Role:
        payload = _parse(RoleCreate, data)
        permission_ids = list(dict.fromkeys(permission_ids))
        actor_id = (actor or SYSTEM_ACTOR).user_id
        with self._lock:
            state = self._state
            now = self.clock()
            role = Role(
                id=generate_id("role-"),
                created_at=now,
                updated_at=now,
                created_by=actor_id,
                updated_by=actor_id,
                **payload.model_dump(),
            )
            self.enforcer.check_role_key_unique(state, role)
            roles = {**state.roles, role.id: role}
            links = dict(state.role_permissions)
            if permission_ids:
                self.enforcer.check_role_permissions(replace(state, roles=roles), role.id, permission_ids)
                for pid in permission_ids:
                    link = RolePermission(id=generate_id("rp-"), role_id=role.id, permission_id=pid)
                    links[link.id] = link
            roles = _materialize(roles, state.permissions, links, (role.id,))
            role = roles[role.id]
            self._commit(
                replace(state, roles=roles, role_permissions=links),
                (ROLES, ROLE_PERMISSIONS),
                self._event(
                    actor, "create", "role", role.id, role.name, reason,
                    changes=(FieldChange(field="permissions", new_value=list(role.permissions)),),
                ),
            )
            return role

    def duplicate_role(self, role_id: str, actor=None, reason: str | None = None) -> Role:
        """Copy a role and its permission set into a new custom role.

        The copy is named "<name> (Copy)" with key "<key>_copy", numbered
        ("_copy_2", ...) when that key is taken. It never inherits the
        system or superadmin flags.
        """
        with self._lock:
            state = self._state
            role = state.roles.get(role_id)
            if role is None:
                raise NotFoundError(f"Role '{role_id}' not found", entity_ids=(role_id,))
            taken = {r.key for r in state.roles.values()}
            n = 1
            while True:
                suffix = "_copy" if n == 1 else f"_copy_{n}"
                key = role.key[:50 - len(suffix)] + suffix
                if key not in taken:
                    break
                n += 1
            permission_ids = [
                link.permission_id
                for link in state.role_permissions.values() if link.role_id == role_id
            ]
            return self.create_role(
                RoleCreate(
                    name=f"{role.name[:93]} (Copy)",
                    key=key,
                    description=role.description,
                    is_active=role.is_active,
                ),
                permission_ids=permission_ids,
                actor=actor,
                reason=reason,
            )

    def update_role(
        self, role_id: str, patch: RoleUpdate | Mapping[str, Any], actor=None, reason: str | None = None,
    ) -> Role:
        payload = _parse(RoleUpdate, patch)
        changes = _provided(payload)
        with self._lock:
            state = self._state
            role = state.roles.get(role_id)
            if role is None:
                raise NotFoundError(f"Role '{role_id}' not found", entity_ids=(role_id,))
            self.enforcer.check_role_update(role, changes)
            updated = role.model_copy(update={
                **changes,
                "updated_at": self.clock(),
                "updated_by": (actor or SYSTEM_ACTOR).user_id,
            })
            self.enforcer.check_role_key_unique(state, updated)
            self._commit(
                replace(state, roles={**state.roles, role_id: updated}),
                (ROLES,),
                self._event(actor, "update", "role", role_id, updated.name, reason, _diff(role, changes)),
            )
            return updated

    def delete_role(self, role_id: str, actor=None, reason: str | None = None) -> None:
        with self._lock:
            state = self._state
            self.enforcer.check_role_deletable(state, role_id)
            role = state.roles[role_id]
            roles = dict(state.roles)
            del roles[role_id]
            links = {k: v for k, v in state.role_permissions.items() if v.role_id != role_id}
            self._commit(
                replace(state, roles=roles, role_permissions=links),
                (ROLES, ROLE_PERMISSIONS),
                self._event(actor, "delete", "role", role_id, role.name, reason),
            )

    def set_role_permissions(
        self, role_id: str, permission_ids: Iterable[str], actor=None, reason: str | None = None,
    ) -> Role:
        """Replace a role's whole permission set in one step."""
        permission_ids = list(dict.fromkeys(permission_ids))
        with self._lock:
            state = self._state
            self.enforcer.check_role_permissions(state, role_id, permission_ids)
            role = state.roles[role_id]

            existing = {
                link.permission_id: link
                for link in state.role_permissions.values() if link.role_id == role_id
            }
            links = {k: v for k, v in state.role_permissions.items() if v.role_id != role_id}
            for pid in permission_ids:
                link = existing.get(pid) or RolePermission(
                    id=generate_id("rp-"), role_id=role_id, permission_id=pid,
                )
                links[link.id] = link

            roles = _materialize(state.roles, state.permissions, links, (role_id,))
            updated = roles[role_id].model_copy(update={
                "updated_at": self.clock(),
                "updated_by": (actor or SYSTEM_ACTOR).user_id,
            })
            roles[role_id] = updated

            diff = compare_permissions(role.permissions, updated.permissions)
            changes = [FieldChange(
                field="permissions",
                old_value=list(role.permissions),
                new_value=list(updated.permissions),
            )]
            if diff["added"]:
                changes.append(FieldChange(field="permissions_added", new_value=diff["added"]))
            if diff["removed"]:
                changes.append(FieldChange(field="permissions_removed", old_value=diff["removed"]))
            self._commit(
                replace(state, roles=roles, role_permissions=links),
                (ROLES, ROLE_PERMISSIONS),
                self._event(actor, "update", "role", role_id, role.name, reason, tuple(changes)),
            )
            return updated

    # ── Permissions: read ──

    def get_permissions(self) -> list[Permission]:
        return list(self._state.permissions.values())

    def get_permission(self, permission_id: str) -> Permission | None:
        return self._state.permissions.get(permission_id)

    def get_permissions_by_subject(self, subject: str) -> list[Permission]:
        return [p for p in self._state.permissions.values() if p.subject == subject]

    def group_permissions_by_subject(self) -> dict[str, list[Permission]]:
        grouped: dict[str, list[Permission]] = {}
        for perm in self._state.permissions.values():
            grouped.setdefault(perm.subject, []).append(perm)
        return grouped

    def get_high_risk_permissions(self) -> list[Permission]:
        return [p for p in self._state.permissions.values() if p.risk_level in HIGH_RISK_LEVELS]

    def validate_permission_keys(self, keys: Iterable[str]) -> list[str]:
        """Return the keys that name no existing permission."""
        known = {p.key for p in self._state.permissions.values()}
        return [k for k in keys if k not in known]

    # ── Permissions: write ──

    def create_permission(
        self, data: PermissionCreate | Mapping[str, Any], actor=None, reason: str | None = None,
    ) -> Permission:
        payload = _parse(PermissionCreate, data)
        with self._lock:
            state = self._state
            perm = Permission(id=generate_id("perm-"), **payload.model_dump())
            self.enforcer.check_permission_unique(state, perm)
            self._commit(
                replace(state, permissions={**state.permissions, perm.id: perm}),
                (PERMISSIONS,),
                self._event(actor, "create", "permission", perm.id, perm.key, reason),
            )
            return perm

    def update_permission(
        self, permission_id: str, patch: PermissionUpdate | Mapping[str, Any], actor=None,
        reason: str | None = None,
    ) -> Permission:
        payload = _parse(PermissionUpdate, patch)
        changes = _provided(payload)
        with self._lock:
            state = self._state
            perm = state.permissions.get(permission_id)
            if perm is None:
                raise NotFoundError(f"Permission '{permission_id}' not found", entity_ids=(permission_id,))
            updated = perm.model_copy(update=changes)
            self.enforcer.check_permission_unique(state, updated)
            permissions = {**state.permissions, permission_id: updated}
            changed = [PERMISSIONS]
            roles = state.roles
            if updated.key != perm.key:
                affected = {
                    link.role_id for link in state.role_permissions.values()
                    if link.permission_id == permission_id
                }
                roles = _materialize(state.roles, permissions, state.role_permissions, affected)
                changed.append(ROLES)
            self._commit(
                replace(state, roles=roles, permissions=permissions),
                tuple(changed),
                self._event(actor, "update", "permission", permission_id, updated.key, reason,
                            _diff(perm, changes)),
            )
            return updated

    def delete_permission(self, permission_id: str, actor=None, reason: str | None = None) -> None:
        with self._lock:
            state = self._state
            perm = state.permissions.get(permission_id)
            if perm is None:
                raise NotFoundError(f"Permission '{permission_id}' not found", entity_ids=(permission_id,))
            self.enforcer.check_permissions_deletable(state, (permission_id,))
            permissions = dict(state.permissions)
            del permissions[permission_id]
            self._commit(
                replace(state, permissions=permissions),
                (PERMISSIONS,),
                self._event(actor, "delete", "permission", permission_id, perm.key, reason),
            )

    def create_module_permissions(self, subject: str, actor=None, reason: str | None = None) -> list[Permission]:
        """Create the four CRUD permissions of a new subject at once."""
        subject = _parse(ModuleCreate, {"subject": subject}).subject
        if subject == WILDCARD:
            raise ValidationError(f"'{WILDCARD}' is reserved and cannot be used as a module name")
        with self._lock:
            state = self._state
            wanted = {permission_key(subject, action) for action in CRUD_ACTIONS}
            clashes = [p.id for p in state.permissions.values() if p.key in wanted]
            if clashes:
                raise DuplicateError(
                    f"Permissions for module '{subject}' already exist",
                    rule=Rule.UNIQUE_PERMISSION, entity_ids=tuple(clashes),
                )
            created = [
                Permission(id=generate_id("perm-"), subject=subject, action=action, category="module")
                for action in CRUD_ACTIONS
            ]
            permissions = {**state.permissions, **{p.id: p for p in created}}
            self._commit(
                replace(state, permissions=permissions),
                (PERMISSIONS,),
                self._event(
                    actor, "create", "permission_module", subject, subject, reason,
                    changes=(FieldChange(field="permissions", new_value=[p.key for p in created]),),
                ),
            )
            return created

    def delete_module_permissions(self, subject: str, actor=None, reason: str | None = None) -> None:
        """Delete every permission of a subject, provided none is assigned."""
        with self._lock:
            state = self._state
            doomed = [p for p in state.permissions.values() if p.subject == subject]
            if not doomed:
                raise NotFoundError(f"No permissions exist for module '{subject}'", entity_ids=(subject,))
            self.enforcer.check_permissions_deletable(state, (p.id for p in doomed))
            ids = {p.id for p in doomed}
            permissions = {k: v for k, v in state.permissions.items() if k not in ids}
            self._commit(
                replace(state, permissions=permissions),
                (PERMISSIONS,),
                self._event(
                    actor, "delete", "permission_module", subject, subject, reason,
                    changes=(FieldChange(field="permissions", old_value=[p.key for p in doomed]),),
                ),
            )

    # ── Internal helpers ──

    @staticmethod
    def _dump(state: StoreState, collection: str) -> Records:
        return [r.model_dump(mode="json") for r in getattr(state, collection).values()]

    @staticmethod
    def _forbid_self(actor, user_id: str, what: str) -> None:
        if actor is not None and actor.user_id == user_id:
            raise ValidationError(
                f"Cannot {what}. Ask another administrator for assistance.",
                entity_ids=(user_id,),
            )

    @staticmethod
    def _event(
        actor,
        action: str,
        entity_type: str,
        entity_id: str,
        entity_name: str,
        reason: Optional[str],
        changes: tuple[FieldChange, ...] = (),
    ) -> AuditEvent:
        actor = actor or SYSTEM_ACTOR
        return AuditEvent(
            actor_id=actor.user_id,
            actor_name=actor.username,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            entity_name=entity_name,
            changes=changes,
            reason=reason,
        )

    def _commit(self, state: StoreState, changed: Iterable[str], event: AuditEvent) -> AuditLogEntry:
        """Validate, persist and publish ``state`` with its audit entry. Caller holds the lock."""
        self.enforcer.ensure_valid(state)
        entry, entries = self.audit.stage(event)
        payload = {name: self._dump(state, name) for name in changed}
        payload[AUDIT_LOG] = self.audit.dump(entries)
        try:
            self.persistence.save_many(payload)
        except PersistenceError as exc:
            logger.warning(
                "Rolled back %s %s %s: %s", event.action, event.entity_type, event.entity_id, exc,
            )
            if exc.collection == AUDIT_LOG:
                raise AuditWriteError(str(exc)) from exc
            raise
        except Exception as exc:
            logger.exception("Persistence failed for %s %s", event.action, event.entity_type)
            raise PersistenceError(f"Failed to persist {', '.join(payload)}: {exc}") from exc
        self._state = state
        self.audit.commit(entries)
        logger.info(
            "%s %s %s by %s", event.action, event.entity_type, event.entity_id, event.actor_id,
        )
        return entry

"""Tests for the entity store: reads, mutations, atomicity and audit coupling."""

import threading

import pytest

from rbac_engine.audit.models import Actor
from rbac_engine.common.exceptions import (
    AuditWriteError,
    DuplicateError,
    ImmutableFieldError,
    IntegrityError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from rbac_engine.integrity.enforcer import Rule
from rbac_engine.store.persistence import (
    AUDIT_LOG,
    COLLECTIONS,
    ROLE_PERMISSIONS,
    USERS,
    JsonFilePersistence,
    MemoryPersistence,
)
from rbac_engine.store.seed import default_seed
from rbac_engine.store.service import EntityStore, compare_permissions


def _new_user(**overrides):
    data = {
        "username": "new.user",
        "email": "new.user@example.com",
        "full_name": "New User",
        "role_id": "role-002",
    }
    data.update(overrides)
    return data


def _new_role(**overrides):
    data = {"name": "Regional Manager", "key": "regional_manager"}
    data.update(overrides)
    return data


class FailingPersistence(MemoryPersistence):
    """Memory back-end whose save fails for one chosen collection."""

    def __init__(self, initial=None):
        super().__init__(initial)
        self.fail_on: str | None = None

    def save(self, collection, records):
        if collection == self.fail_on:
            raise OSError(f"disk full while writing {collection}")
        super().save(collection, records)


class TestReads:
    def test_users_and_lookup(self, store):
        assert len(store.get_users()) == 5
        assert store.get_user("user_001").username == "super.admin"
        assert store.get_user("nope") is None
        assert store.get_user_by_username("SUPER.ADMIN").id == "user_001"

    def test_users_by_role_follows_legacy_alias(self, store):
        ids = {u.id for u in store.get_users_by_role("role-002")}
        assert ids == {"user_002", "user_005"}
        assert store.count_users_with_role("role-002") == 2

    def test_search_users(self, store):
        assert [u.id for u in store.search_users("jane")] == ["user_005"]
        assert len(store.search_users("EXAMPLE.COM")) == 5
        assert len(store.search_users("  ")) == 5

    def test_users_with_roles(self, store):
        rows = {row.user.id: row for row in store.get_users_with_roles()}
        assert rows["user_005"].role_key == "business_user"
        assert rows["user_001"].role_name == "Super Admin"

    def test_active_users(self, store):
        store.update_user_status("user_004", "suspended")
        assert "user_004" not in {u.id for u in store.get_active_users()}

    def test_roles(self, store):
        assert {r.id for r in store.get_roles()} == {"role-001", "role-002", "role-003", "role-004"}
        assert store.get_role_by_key("auditor").id == "role-004"
        assert store.get_role("role-004").permissions == ("all.read",)

    def test_role_permissions_are_sorted_keys(self, store):
        keys = store.get_role("role-002").permissions
        assert list(keys) == sorted(keys)
        assert "dashboard.read" in keys
        assert {p.key for p in store.get_role_permissions("role-002")} == set(keys)

    def test_permission_reads(self, store):
        assert len(store.get_permissions_by_subject("users")) == 4
        assert [p.key for p in store.group_permissions_by_subject()["all"]] == ["all.read"]
        assert "perm-all-read" in {p.id for p in store.get_high_risk_permissions()}
        assert store.validate_permission_keys(["users.read", "nope.read"]) == ["nope.read"]
        assert store.get_permission("perm-users-read").risk_level == "low"

    def test_snapshot_is_consistent(self, store):
        store.create_user(_new_user())
        state, entries = store.snapshot()
        assert len(state.users) == 6
        assert entries[-1].entity_type == "user"


class TestCreateUser:
    def test_create(self, store):
        user = store.create_user(_new_user())
        assert user.id.startswith("user_")
        assert user.created_at == user.last_login
        assert store.get_user(user.id) == user
        entry = store.audit.get_chain_head()
        assert (entry.action, entry.entity_type, entry.entity_id) == ("create", "user", user.id)

    def test_unknown_role_rejected(self, store):
        with pytest.raises(ValidationError) as exc_info:
            store.create_user(_new_user(role_id="role-999"))
        assert exc_info.value.rule == Rule.USER_ROLE_EXISTS
        assert len(store.get_users()) == 5
        assert store.audit.entries == ()

    def test_inactive_role_rejected(self, store):
        role = store.create_role(_new_role(is_active=False))
        with pytest.raises(ValidationError, match="inactive"):
            store.create_user(_new_user(role_id=role.id))

    def test_duplicate_username_case_insensitive(self, store):
        with pytest.raises(DuplicateError) as exc_info:
            store.create_user(_new_user(username="Super.Admin"))
        assert exc_info.value.rule == Rule.UNIQUE_USERNAME

    def test_duplicate_email(self, store):
        with pytest.raises(DuplicateError) as exc_info:
            store.create_user(_new_user(email="AUDITOR@example.com"))
        assert exc_info.value.rule == Rule.UNIQUE_EMAIL

    def test_malformed_input(self, store):
        with pytest.raises(ValidationError):
            store.create_user(_new_user(email="not-an-email"))
        with pytest.raises(ValidationError):
            store.create_user(_new_user(username="x"))

    def test_legacy_role_id_is_normalized(self, store):
        user = store.create_user(_new_user(role_id="role_004"))
        assert user.role_id == "role-004"


class TestUpdateUser:
    def test_partial_update(self, store):
        user = store.update_user("user_002", {"full_name": "Renamed"})
        assert user.full_name == "Renamed"
        assert user.email == "business.user@example.com"
        entry = store.audit.get_chain_head()
        assert entry.action == "update"
        assert [(c.field, c.old_value, c.new_value) for c in entry.changes] == [
            ("full_name", "Business User", "Renamed"),
        ]

    def test_username_is_immutable(self, store):
        with pytest.raises(ImmutableFieldError):
            store.update_user("user_002", {"username": "someone.else"})
        # Passing the current username is not a change
        store.update_user("user_002", {"username": "business.user", "full_name": "B"})

    def test_unknown_user(self, store):
        with pytest.raises(NotFoundError):
            store.update_user("user_999", {"full_name": "X"})

    def test_role_change_is_audited(self, store):
        user = store.change_user_role("user_002", "role-004", reason="audit season")
        assert user.role_id == "role-004"
        entry = store.audit.get_chain_head()
        assert entry.action == "role_change"
        assert entry.reason == "audit season"
        change = entry.changes[0]
        assert (change.field, change.old_value, change.new_value) == ("role", "Business User", "Auditor")

    def test_role_change_validates_role(self, store):
        with pytest.raises(ValidationError):
            store.change_user_role("user_002", "role-999")
        assert store.get_user("user_002").role_id == "role-002"

    def test_cannot_change_own_role_or_status(self, store):
        me = Actor(user_id="user_003", username="security.admin")
        with pytest.raises(ValidationError):
            store.change_user_role("user_003", "role-004", actor=me)
        with pytest.raises(ValidationError):
            store.update_user_status("user_003", "inactive", actor=me)
        store.update_user("user_003", {"full_name": "Sec Admin"}, actor=me)

    def test_duplicate_email(self, store):
        with pytest.raises(DuplicateError):
            store.update_user("user_002", {"email": "auditor@example.com"})

    def test_actor_recorded(self, store):
        admin = Actor(user_id="user_001", username="super.admin")
        store.update_user_status("user_004", "inactive", actor=admin)
        entry = store.audit.get_chain_head()
        assert (entry.actor_id, entry.actor_name) == ("user_001", "super.admin")


class TestDeleteUser:
    def test_delete(self, store):
        store.delete_user("user_004")
        assert store.get_user("user_004") is None
        entry = store.audit.get_chain_head()
        assert (entry.action, entry.entity_id, entry.entity_name) == ("delete", "user_004", "auditor")

    def test_unknown_user(self, store):
        with pytest.raises(NotFoundError):
            store.delete_user("user_999")

    def test_cannot_delete_self(self, store):
        with pytest.raises(ValidationError):
            store.delete_user("user_001", actor=Actor(user_id="user_001", username="super.admin"))
        assert store.get_user("user_001") is not None


class TestSessions:
    def test_login_sets_last_login(self, store):
        before = store.get_user("user_004").last_login
        user = store.record_login("user_004", ip_address="10.0.0.1")
        assert user.last_login is not None
        assert user.last_login != before
        entry = store.audit.get_chain_head()
        assert (entry.action, entry.entity_type, entry.ip_address) == ("login", "session", "10.0.0.1")
        assert entry.actor_id == "user_004"

    def test_logout(self, store):
        store.record_logout("user_004")
        assert store.audit.get_chain_head().action == "logout"

    def test_unknown_user(self, store):
        with pytest.raises(NotFoundError):
            store.record_login("ghost")


class TestRoles:
    def test_create_with_permissions(self, store):
        role = store.create_role(
            _new_role(), permission_ids=["perm-security-group-update", "perm-security-group-read"],
        )
        assert role.id.startswith("role-")
        assert role.permissions == ("security-group.read", "security-group.update")
        assert store.get_role(role.id) == role

    def test_create_records_actor(self, store):
        role = store.create_role(_new_role(), actor=Actor(user_id="user_001", username="super.admin"))
        assert role.created_by == "user_001"

    def test_duplicate_key(self, store):
        with pytest.raises(DuplicateError):
            store.create_role(_new_role(key="auditor"))

    def test_create_with_unknown_permission_adds_nothing(self, store):
        with pytest.raises(ValidationError):
            store.create_role(_new_role(), permission_ids=["perm-users-read", "perm-bogus"])
        assert store.get_role_by_key("regional_manager") is None
        assert store.audit.entries == ()

    def test_system_role_key_immutable(self, store):
        with pytest.raises(ImmutableFieldError) as exc_info:
            store.update_role("role-003", {"key": "sec_admin"})
        assert exc_info.value.rule == Rule.SYSTEM_ROLE_IMMUTABLE
        with pytest.raises(ImmutableFieldError):
            store.update_role("role-003", {"is_system": False})
        role = store.update_role("role-003", {"description": "Security team"})
        assert role.description == "Security team"

    def test_update_key_duplicate(self, store):
        with pytest.raises(DuplicateError):
            store.update_role("role-004", {"key": "business_user"})

    def test_update_unknown(self, store):
        with pytest.raises(NotFoundError):
            store.update_role("role-999", {"name": "Whatever"})

    def test_delete_role_in_use(self, store):
        with pytest.raises(IntegrityError) as exc_info:
            store.delete_role("role-002")
        assert exc_info.value.rule == Rule.ROLE_IN_USE
        assert "role in use" in exc_info.value.message
        assert store.get_role("role-002") is not None
        assert store.get_role_permissions("role-002")

    def test_delete_role_in_use_through_alias(self, store):
        store.delete_user("user_002")
        # user_005 still references the role through "role_005"
        with pytest.raises(IntegrityError):
            store.delete_role("role-002")

    def test_delete_unused_role_removes_links(self, store):
        role = store.create_role(_new_role(), permission_ids=["perm-users-read"])
        store.delete_role(role.id)
        assert store.get_role(role.id) is None
        assert all(link.role_id != role.id for link in store.state.role_permissions.values())

    def test_delete_system_role(self, store):
        store.delete_user("user_001")
        with pytest.raises(ImmutableFieldError):
            store.delete_role("role-001")

    def test_delete_unknown(self, store):
        with pytest.raises(NotFoundError):
            store.delete_role("role-999")

    def test_unknown_field_rejected(self, store):
        with pytest.raises(ValidationError):
            store.update_role("role-002", {"permissions": ["perm-users-read"]})
        with pytest.raises(ValidationError):
            store.create_role(_new_role(permissions=["perm-users-read"]))
        assert "users.read" not in store.get_role("role-002").permissions
        assert store.audit.entries == ()

    def test_role_filters(self, store):
        assert {r.id for r in store.get_system_roles()} == {"role-001", "role-003"}
        assert {r.id for r in store.get_custom_roles()} == {"role-002", "role-004"}
        assert len(store.get_active_roles()) == 4
        store.update_role("role-004", {"is_active": False})
        assert "role-004" not in {r.id for r in store.get_active_roles()}

    def test_search_roles(self, store):
        assert {r.id for r in store.search_roles("ADMIN")} == {"role-001", "role-003"}
        assert [r.id for r in store.search_roles("compliance")] == ["role-004"]
        assert len(store.search_roles("  ")) == 4
        assert store.search_roles("nothing-matches") == []

    def test_duplicate_role(self, store):
        copy = store.duplicate_role("role-003", actor=Actor(user_id="user_001", username="super.admin"))
        original = store.get_role("role-003")
        assert copy.id != original.id
        assert (copy.name, copy.key) == ("Security Admin (Copy)", "security_admin_copy")
        assert copy.description == original.description
        assert not copy.is_system
        assert copy.permissions == original.permissions
        entry = store.audit.get_chain_head()
        assert (entry.action, entry.entity_id, entry.actor_id) == ("create", copy.id, "user_001")
        assert len(store.audit.entries) == 1

        again = store.duplicate_role("role-003")
        assert again.key == "security_admin_copy_2"

    def test_duplicate_superadmin_is_plain_role(self, store):
        copy = store.duplicate_role("role-001")
        assert not copy.is_admin
        assert not copy.is_system
        assert copy.permissions == ()

    def test_duplicate_unknown(self, store):
        with pytest.raises(NotFoundError):
            store.duplicate_role("role-999")
        assert store.audit.entries == ()

    def test_can_delete_role(self, store):
        check = store.can_delete_role("role-002")
        assert not check.allowed
        assert check.reason.startswith("role in use")
        unused = store.create_role(_new_role())
        assert store.can_delete_role(unused.id).allowed


class TestSetRolePermissions:
    def test_replace(self, store):
        role = store.set_role_permissions("role-004", ["perm-users-read", "perm-roles-read"])
        assert role.permissions == ("roles.read", "users.read")
        entry = store.audit.get_chain_head()
        fields = {c.field: c for c in entry.changes}
        assert fields["permissions"].old_value == ["all.read"]
        assert fields["permissions"].new_value == ["roles.read", "users.read"]
        assert fields["permissions_added"].new_value == ["roles.read", "users.read"]
        assert fields["permissions_removed"].old_value == ["all.read"]

    def test_invalid_id_changes_nothing(self, store):
        before_role = store.get_role("role-004")
        before_links = dict(store.state.role_permissions)
        with pytest.raises(ValidationError) as exc_info:
            store.set_role_permissions("role-004", ["perm-users-read", "perm-bogus"])
        assert exc_info.value.entity_ids == ("perm-bogus",)
        assert store.get_role("role-004") is before_role
        assert store.state.role_permissions == before_links
        assert store.audit.entries == ()

    def test_repeated_ids_collapse(self, store):
        store.set_role_permissions("role-004", ["perm-users-read", "perm-users-read"])
        links = [l for l in store.state.role_permissions.values() if l.role_id == "role-004"]
        assert len(links) == 1

    def test_kept_links_keep_their_id(self, store):
        link_id = next(
            l.id for l in store.state.role_permissions.values() if l.role_id == "role-004"
        )
        store.set_role_permissions("role-004", ["perm-all-read", "perm-users-read"])
        assert link_id in store.state.role_permissions

    def test_unknown_role(self, store):
        with pytest.raises(NotFoundError):
            store.set_role_permissions("role-999", ["perm-users-read"])

    def test_empty_set(self, store):
        role = store.set_role_permissions("role-004", [])
        assert role.permissions == ()

    def test_compare_permissions(self):
        diff = compare_permissions(["a.read", "b.read"], ["b.read", "c.read"])
        assert diff == {"added": ["c.read"], "removed": ["a.read"], "unchanged": ["b.read"]}


class TestPermissions:
    def test_create(self, store):
        perm = store.create_permission({"subject": "reports", "action": "export", "risk_level": "medium"})
        assert perm.key == "reports.export"
        assert perm.requires_approval is False
        assert store.audit.get_chain_head().entity_name == "reports.export"

    def test_create_duplicate(self, store):
        with pytest.raises(DuplicateError):
            store.create_permission({"subject": "users", "action": "read"})

    def test_create_rejects_dotted_subject(self, store):
        with pytest.raises(ValidationError):
            store.create_permission({"subject": "a.b", "action": "read"})

    def test_delete_assigned(self, store):
        with pytest.raises(IntegrityError) as exc_info:
            store.delete_permission("perm-users-read")
        assert exc_info.value.rule == Rule.PERMISSION_ASSIGNED
        assert store.get_permission("perm-users-read") is not None

    def test_delete_unassigned(self, store):
        store.delete_permission("perm-settings-delete")
        assert store.get_permission("perm-settings-delete") is None

    def test_delete_unknown(self, store):
        with pytest.raises(NotFoundError):
            store.delete_permission("perm-bogus")

    def test_update_rematerializes_linked_roles(self, store):
        role_before = store.get_role("role-002")
        store.update_permission("perm-dashboard-read", {"subject": "home"})
        role_after = store.get_role("role-002")
        assert role_after is not role_before
        assert "home.read" in role_after.permissions
        assert "dashboard.read" not in role_after.permissions
        assert "home.read" in store.get_role("role-003").permissions

    def test_update_to_existing_key(self, store):
        with pytest.raises(DuplicateError):
            store.update_permission("perm-users-read", {"action": "update"})


class TestModules:
    def test_create_then_delete(self, store):
        created = store.create_module_permissions("widgets")
        assert sorted(p.key for p in created) == [
            "widgets.create", "widgets.delete", "widgets.read", "widgets.update",
        ]
        store.delete_module_permissions("widgets")
        assert store.get_permissions_by_subject("widgets") == []
        assert [e.entity_type for e in store.audit.entries] == ["permission_module", "permission_module"]
        assert [e.action for e in store.audit.entries] == ["create", "delete"]

    def test_create_existing(self, store):
        store.create_permission({"subject": "widgets", "action": "read"})
        with pytest.raises(DuplicateError):
            store.create_module_permissions("widgets")
        assert len(store.get_permissions_by_subject("widgets")) == 1

    def test_wildcard_subject_reserved(self, store):
        with pytest.raises(ValidationError):
            store.create_module_permissions("all")

    def test_delete_missing(self, store):
        with pytest.raises(NotFoundError):
            store.delete_module_permissions("widgets")

    def test_delete_assigned(self, store):
        with pytest.raises(IntegrityError):
            store.delete_module_permissions("users")
        assert len(store.get_permissions_by_subject("users")) == 4


class TestAtomicity:
    @pytest.fixture
    def failing(self):
        return FailingPersistence(default_seed())

    @pytest.fixture
    def fragile_store(self, settings, failing, clock):
        return EntityStore(settings, failing, clock=clock)

    def test_entity_write_failure_rolls_back(self, fragile_store, failing):
        failing.fail_on = USERS
        with pytest.raises(PersistenceError) as exc_info:
            fragile_store.create_user(_new_user())
        assert exc_info.value.collection == USERS
        assert len(fragile_store.get_users()) == 5
        assert fragile_store.audit.entries == ()
        assert failing.load(AUDIT_LOG) == []

    def test_audit_write_failure_rolls_back(self, fragile_store, failing):
        failing.fail_on = AUDIT_LOG
        with pytest.raises(AuditWriteError):
            fragile_store.set_role_permissions("role-004", ["perm-users-read"])
        assert fragile_store.get_role("role-004").permissions == ("all.read",)
        assert fragile_store.audit.entries == ()
        # Links already written were restored
        stored = [l for l in failing.load(ROLE_PERMISSIONS) if l["role_id"] == "role-004"]
        assert [l["permission_id"] for l in stored] == ["perm-all-read"]

    def test_store_keeps_working_after_failure(self, fragile_store, failing):
        failing.fail_on = USERS
        with pytest.raises(PersistenceError):
            fragile_store.create_user(_new_user())
        failing.fail_on = None
        fragile_store.create_user(_new_user())
        assert len(fragile_store.audit.entries) == 1
        assert fragile_store.audit.verify_chain().valid


class TestAuditCompleteness:
    def test_one_entry_per_mutation(self, store):
        role = store.create_role(_new_role())
        steps = [
            (lambda: store.create_user(_new_user()), "create", "user"),
            (lambda: store.update_user("user_004", {"full_name": "A"}), "update", "user"),
            (lambda: store.change_user_role("user_004", role.id), "role_change", "user"),
            (lambda: store.update_role(role.id, {"description": "d"}), "update", "role"),
            (lambda: store.set_role_permissions(role.id, ["perm-users-read"]), "update", "role"),
            (lambda: store.create_permission({"subject": "reports", "action": "export"}), "create", "permission"),
            (lambda: store.create_module_permissions("widgets"), "create", "permission_module"),
            (lambda: store.delete_module_permissions("widgets"), "delete", "permission_module"),
            (lambda: store.delete_user("user_002"), "delete", "user"),
        ]
        for run, action, entity_type in steps:
            count = len(store.audit.entries)
            run()
            assert len(store.audit.entries) == count + 1
            entry = store.audit.get_chain_head()
            assert (entry.action, entry.entity_type) == (action, entity_type)
        assert store.audit.verify_chain().valid

    def test_failed_mutation_appends_nothing(self, store):
        for attempt in (
            lambda: store.delete_role("role-002"),
            lambda: store.delete_permission("perm-users-read"),
            lambda: store.create_user(_new_user(role_id="role-999")),
        ):
            with pytest.raises(Exception):
                attempt()
        assert store.audit.entries == ()


class TestConcurrency:
    def test_parallel_writers_serialize(self, store):
        errors = []

        def worker(n):
            try:
                store.create_user(_new_user(username=f"worker.{n}", email=f"w{n}@example.com"))
            except Exception as exc:  # pragma: no cover - surfaced by the assertion below
                errors.append(exc)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        state, entries = store.snapshot()
        assert len(state.users) == 25
        assert len(entries) == 20
        assert store.audit.verify_chain().valid


class TestLoadAndReset:
    def test_export_collections(self, store):
        store.create_user(_new_user())
        data = store.export_collections()
        assert set(data) == set(COLLECTIONS)
        assert len(data[USERS]) == 6
        assert len(data[AUDIT_LOG]) == 1

    def test_json_round_trip(self, settings, tmp_path, clock):
        first = EntityStore(settings, JsonFilePersistence(tmp_path), clock=clock)
        assert first.is_empty()
        first.reset(default_seed())
        user = first.create_user(_new_user())

        second = EntityStore(settings, JsonFilePersistence(tmp_path), clock=clock)
        assert second.get_user(user.id) == user
        assert second.get_role("role-002").permissions == first.get_role("role-002").permissions
        assert len(second.audit.entries) == 1
        assert second.audit.verify_chain().valid

    def test_reset_rejects_broken_seed(self, store):
        seed = default_seed()
        seed[USERS].append({
            "id": "user_900", "username": "orphan", "email": "orphan@example.com",
            "role_id": "role-900", "created_at": "2024-01-01T00:00:00Z",
        })
        with pytest.raises(IntegrityError):
            store.reset(seed)
        assert store.get_user("user_900") is None
        assert len(store.persistence.load(USERS)) == 5

    def test_legacy_spellings_load(self, settings):
        persistence = MemoryPersistence({
            "roles": [{
                "uuid": "role-001", "name": "Admin", "key": "admin", "isAdmin": True,
                "createdAt": "2024-01-01T00:00:00Z", "updatedAt": "2024-01-01T00:00:00Z",
                "permissions": ["stale.key"],
            }],
            "permissions": [{"uuid": "perm-1", "subject": "users", "action": "read", "riskLevel": "high"}],
            "role_permissions": [{"uuid": "rp-1", "roleId": "role-001", "permissionId": "perm-1"}],
            "users": [{
                "id": "user_001", "username": "admin", "email": "admin@example.com",
                "fullName": "Admin", "roleId": "role_001", "createdAt": "2024-01-01T00:00:00Z",
            }],
        })
        store = EntityStore(settings, persistence)
        role = store.get_role("role-001")
        assert role.is_admin
        assert role.permissions == ("users.read",)
        assert store.get_permission("perm-1").risk_level == "high"
        assert store.get_permission("perm-1").requires_approval is False
        assert store.get_user("user_001").full_name == "Admin"

    def test_reload_rejects_violations(self, settings):
        seed = default_seed()
        seed[ROLE_PERMISSIONS].append(
            {"id": "rp-dup", "role_id": "role-004", "permission_id": "perm-all-read"}
        )
        with pytest.raises(IntegrityError) as exc_info:
            EntityStore(settings, MemoryPersistence(seed))
        assert exc_info.value.rule == Rule.UNIQUE_LINK

"""Default roles, permissions and users for a fresh installation."""

from typing import Any

from rbac_engine.store.models import CRUD_ACTIONS, WILDCARD, permission_key
from rbac_engine.store.persistence import PERMISSIONS, ROLE_PERMISSIONS, ROLES, USERS, Records

SEED_TIMESTAMP = "2024-01-01T00:00:00Z"

MODULE_SUBJECTS = [
    "dashboard",
    "raas",
    "integration",
    "access-audit",
    "security",
    "security-group",
    "business-process",
    "domain-process",
    "segregation-duties",
    "settings",
]

ADMIN_SUBJECTS = ["users", "roles", "permissions"]

SENSITIVE_SUBJECTS = {"security", "security-group", "segregation-duties", *ADMIN_SUBJECTS}


def _risk(subject: str, action: str) -> str:
    if action == "read":
        return "low"
    if subject in SENSITIVE_SUBJECTS:
        return "critical" if action == "delete" else "high"
    return "high" if action == "delete" else "medium"


def _permission(subject: str, action: str, category: str, **extra: Any) -> dict[str, Any]:
    risk = extra.pop("risk_level", _risk(subject, action))
    return {
        "id": f"perm-{subject}-{action}",
        "subject": subject,
        "action": action,
        "description": f"{action.capitalize()} {subject.replace('-', ' ')}",
        "risk_level": risk,
        "requires_approval": risk == "critical",
        "category": category,
        **extra,
    }


def _role(num: int, name: str, key: str, description: str, **flags: bool) -> dict[str, Any]:
    return {
        "id": f"role-{num:03d}",
        "name": name,
        "key": key,
        "description": description,
        "is_admin": flags.get("is_admin", False),
        "is_active": True,
        "is_system": flags.get("is_system", False),
        "created_at": SEED_TIMESTAMP,
        "updated_at": SEED_TIMESTAMP,
        "created_by": "system",
        "updated_by": "system",
    }


def _user(num: int, username: str, full_name: str, role_id: str) -> dict[str, Any]:
    return {
        "id": f"user_{num:03d}",
        "username": username,
        "email": f"{username}@example.com",
        "full_name": full_name,
        "role_id": role_id,
        "status": "active",
        "created_at": SEED_TIMESTAMP,
        "last_login": None,
    }


def default_seed() -> dict[str, Records]:
    """Build the default data set as plain records, ready for ``EntityStore.reset``."""
    permissions = [
        _permission(subject, action, "module")
        for subject in MODULE_SUBJECTS
        for action in CRUD_ACTIONS
    ]
    permissions += [
        _permission(subject, action, "admin")
        for subject in ADMIN_SUBJECTS
        for action in CRUD_ACTIONS
    ]
    # Read-only access to every subject
    permissions.append(_permission(
        WILDCARD, "read", "admin",
        description="Read every resource", risk_level="high",
    ))

    roles = [
        _role(1, "Super Admin", "super_admin", "Unrestricted access to the platform",
              is_admin=True, is_system=True),
        _role(2, "Business User", "business_user", "Day-to-day access to business modules"),
        _role(3, "Security Admin", "security_admin", "Manages users, roles and security settings",
              is_system=True),
        _role(4, "Auditor", "auditor", "Read-only access for compliance reviews"),
    ]

    grants = {
        "role-002": [
            permission_key(subject, action)
            for subject in ("dashboard", "raas", "business-process", "domain-process")
            for action in ("read", "update")
        ],
        "role-003": [
            permission_key(subject, action)
            for subject in ("security", "security-group", "segregation-duties", *ADMIN_SUBJECTS)
            for action in CRUD_ACTIONS
        ] + [permission_key("dashboard", "read"), permission_key("access-audit", "read")],
        "role-004": [permission_key(WILDCARD, "read")],
    }
    by_key = {permission_key(p["subject"], p["action"]): p["id"] for p in permissions}
    links = []
    for role_id, keys in grants.items():
        for key in keys:
            links.append({
                "id": f"rp-{len(links) + 1:03d}",
                "role_id": role_id,
                "permission_id": by_key[key],
            })

    users = [
        _user(1, "super.admin", "Super Admin", "role-001"),
        _user(2, "business.user", "Business User", "role-002"),
        _user(3, "security.admin", "Security Admin", "role-003"),
        _user(4, "auditor", "Compliance Auditor", "role-004"),
        # Still carries a pre-uuid role id, resolved through the alias table
        _user(5, "jane.doe", "Jane Doe", "role_005"),
    ]

    return {USERS: users, ROLES: roles, PERMISSIONS: permissions, ROLE_PERMISSIONS: links}

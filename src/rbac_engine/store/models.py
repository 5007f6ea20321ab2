"""Entity records held by the store.

Records are immutable; every mutation produces a new record. Loading is
lenient about field spelling so collections exported by older tooling
(``uuid``, ``roleId``, ``permission_id``, ``riskLevel`` ...) parse into the
same types.
"""

from datetime import datetime
from typing import Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

UserStatus = Literal["active", "inactive", "suspended"]
RiskLevel = Literal["low", "medium", "high", "critical"]

CRUD_ACTIONS = ("create", "read", "update", "delete")
WILDCARD = "all"


def permission_key(subject: str, action: str) -> str:
    return f"{subject}.{action}"


class _Record(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")


class User(_Record):
    id: str
    username: str
    email: str
    full_name: str = Field("", validation_alias=AliasChoices("full_name", "fullName", "name"))
    role_id: str = Field(validation_alias=AliasChoices("role_id", "roleId"))
    status: UserStatus = "active"
    created_at: datetime = Field(validation_alias=AliasChoices("created_at", "createdAt"))
    last_login: Optional[datetime] = Field(
        None, validation_alias=AliasChoices("last_login", "lastLogin")
    )


class Role(_Record):
    id: str = Field(validation_alias=AliasChoices("id", "uuid"))
    name: str
    key: str
    description: str = ""
    is_admin: bool = Field(False, validation_alias=AliasChoices("is_admin", "isAdmin"))
    is_active: bool = Field(True, validation_alias=AliasChoices("is_active", "isActive"))
    is_system: bool = Field(False, validation_alias=AliasChoices("is_system", "isSystem"))
    created_at: datetime = Field(validation_alias=AliasChoices("created_at", "createdAt"))
    updated_at: datetime = Field(validation_alias=AliasChoices("updated_at", "updatedAt"))
    created_by: str = Field("system", validation_alias=AliasChoices("created_by", "createdBy"))
    updated_by: str = Field("system", validation_alias=AliasChoices("updated_by", "updatedBy"))
    # Materialized "<subject>.<action>" keys, rebuilt from the link table
    permissions: tuple[str, ...] = ()


class Permission(_Record):
    id: str = Field(validation_alias=AliasChoices("id", "uuid"))
    action: str
    subject: str
    description: str = ""
    risk_level: RiskLevel = Field("low", validation_alias=AliasChoices("risk_level", "riskLevel"))
    requires_approval: bool = Field(
        False, validation_alias=AliasChoices("requires_approval", "requiresApproval")
    )
    category: Optional[Literal["module", "admin"]] = None

    @property
    def key(self) -> str:
        return permission_key(self.subject, self.action)


class RolePermission(_Record):
    id: str = Field(validation_alias=AliasChoices("id", "uuid"))
    role_id: str = Field(validation_alias=AliasChoices("role_id", "roleId"))
    permission_id: str = Field(
        validation_alias=AliasChoices("permission_id", "permissionId")
    )


class UserWithRole(_Record):
    """A user joined with the name and key of its role."""

    user: User
    role_name: str
    role_key: str


class DeletionCheck(_Record):
    allowed: bool
    reason: Optional[str] = None

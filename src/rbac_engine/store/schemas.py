"""Pydantic input schemas for store mutations."""

import re
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from rbac_engine.store.models import RiskLevel, UserStatus

USERNAME_PATTERN = r"^[a-zA-Z0-9._-]+$"
ROLE_KEY_PATTERN = r"^[a-z0-9_]+$"
# Subjects and actions end up in "<subject>.<action>" keys, so no dots.
TOKEN_PATTERN = r"^[A-Za-z0-9_-]+$"


class UserCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    username: str = Field(..., min_length=3, max_length=50, pattern=USERNAME_PATTERN)
    email: EmailStr
    full_name: str = Field(..., min_length=1, max_length=255)
    role_id: str = Field(..., min_length=1)
    status: UserStatus = "active"


class UserUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    # username is accepted only so that an attempted change can be rejected
    username: Optional[str] = None
    email: Optional[EmailStr] = None
    full_name: Optional[str] = Field(None, min_length=1, max_length=255)
    role_id: Optional[str] = Field(None, min_length=1)
    status: Optional[UserStatus] = None


class RoleCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=3, max_length=100)
    key: str = Field(..., min_length=3, max_length=50, pattern=ROLE_KEY_PATTERN)
    description: str = ""
    is_admin: bool = False
    is_active: bool = True
    is_system: bool = False


class RoleUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(None, min_length=3, max_length=100)
    key: Optional[str] = Field(None, min_length=3, max_length=50, pattern=ROLE_KEY_PATTERN)
    description: Optional[str] = None
    is_admin: Optional[bool] = None
    is_active: Optional[bool] = None
    is_system: Optional[bool] = None


class PermissionCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    action: str = Field(..., min_length=1, max_length=50, pattern=TOKEN_PATTERN)
    subject: str = Field(..., min_length=1, max_length=50, pattern=TOKEN_PATTERN)
    description: str = ""
    risk_level: RiskLevel = "low"
    requires_approval: bool = False
    category: Optional[Literal["module", "admin"]] = None


class PermissionUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    action: Optional[str] = Field(None, min_length=1, max_length=50, pattern=TOKEN_PATTERN)
    subject: Optional[str] = Field(None, min_length=1, max_length=50, pattern=TOKEN_PATTERN)
    description: Optional[str] = None
    risk_level: Optional[RiskLevel] = None
    requires_approval: Optional[bool] = None
    category: Optional[Literal["module", "admin"]] = None


class ModuleCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    subject: str = Field(..., min_length=1, max_length=50, pattern=TOKEN_PATTERN)


def generate_role_key(name: str) -> str:
    """Derive a role key from a display name ("Regional Manager" -> "regional_manager")."""
    key = re.sub(r"[^a-z0-9\s]", "", name.lower())
    key = re.sub(r"\s+", "_", key.strip())
    key = re.sub(r"_+", "_", key)
    return key[:50]

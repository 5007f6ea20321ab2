"""Audit trail records."""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

AuditAction = Literal["create", "update", "delete", "login", "logout", "role_change"]
EntityType = Literal["user", "role", "permission", "permission_module", "session"]


@dataclass(frozen=True)
class Actor:
    """Who performed a mutation."""
    user_id: str
    username: str


SYSTEM_ACTOR = Actor(user_id="system", username="system")


class FieldChange(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    field: str
    old_value: Any = Field(None, validation_alias=AliasChoices("old_value", "oldValue"))
    new_value: Any = Field(None, validation_alias=AliasChoices("new_value", "newValue"))


class AuditEvent(BaseModel):
    """A mutation about to be recorded; id, timestamp and hashes are assigned on append."""

    model_config = ConfigDict(frozen=True)

    actor_id: str = SYSTEM_ACTOR.user_id
    actor_name: str = SYSTEM_ACTOR.username
    action: AuditAction
    entity_type: EntityType
    entity_id: str
    entity_name: str = ""
    changes: tuple[FieldChange, ...] = ()
    reason: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


class AuditLogEntry(AuditEvent):
    """An appended, immutable audit record."""

    id: str
    timestamp: datetime
    prev_hash: Optional[str] = None
    event_hash: str
    signature: str

    @property
    def summary(self) -> str:
        """Human-readable description of the change."""
        head = f"{self.actor_name} {self.action.replace('_', ' ')} {self.entity_type} '{self.entity_name or self.entity_id}'"
        parts = []
        for change in self.changes:
            if change.old_value is None:
                parts.append(f"{change.field} set to {_fmt(change.new_value)}")
            elif change.new_value is None:
                parts.append(f"{change.field} cleared (was {_fmt(change.old_value)})")
            else:
                parts.append(f"{change.field}: {_fmt(change.old_value)} -> {_fmt(change.new_value)}")
        if parts:
            head = f"{head}: {'; '.join(parts)}"
        if self.reason:
            head = f"{head} (reason: {self.reason})"
        return head


def _fmt(value: Any) -> str:
    if isinstance(value, (list, tuple)):
        return "[" + ", ".join(str(v) for v in value) + "]"
    return str(value)

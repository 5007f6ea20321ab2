"""Pydantic schemas for audit queries and chain verification."""

from datetime import datetime, timedelta, timezone
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator


class AuditFilter(BaseModel):
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    # Convenience windows relative to "now"; combined with start if both given
    last_hours: Optional[float] = Field(None, gt=0)
    last_days: Optional[float] = Field(None, gt=0)
    actions: Optional[list[str]] = None
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    actor_id: Optional[str] = None
    newest_first: bool = False
    limit: Optional[int] = Field(None, ge=1)
    offset: int = Field(0, ge=0)

    @field_validator("start", "end")
    @classmethod
    def _assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        # Log timestamps are UTC-aware; naive bounds are read as UTC.
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @model_validator(mode="after")
    def _check_window(self) -> "AuditFilter":
        if self.start and self.end and self.start > self.end:
            raise ValueError("start must not be after end")
        return self

    def window_start(self, now: datetime) -> Optional[datetime]:
        """Earliest timestamp admitted by the filter."""
        candidates = [c for c in (
            self.start,
            now - timedelta(hours=self.last_hours) if self.last_hours else None,
            now - timedelta(days=self.last_days) if self.last_days else None,
        ) if c is not None]
        return max(candidates) if candidates else None


class AuditChainVerification(BaseModel):
    valid: bool
    events_checked: int
    break_at: Optional[str] = None

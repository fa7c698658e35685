"""Audit events emitted by the membership engine."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field


class AuditEventType(str, Enum):
    """Audit event categories emitted by the engine services."""

    CREDITS_ADJUSTED = "credits_adjusted"
    MEMBERSHIP_CREATED = "membership_created"
    MEMBERSHIP_ACTIVATED = "membership_activated"
    MEMBERSHIP_CANCELLED = "membership_cancelled"
    MEMBERSHIP_RENEWED = "membership_renewed"
    CANCELLATION_REQUESTED = "cancellation_requested"
    PLAN_CHANGE_STARTED = "plan_change_started"
    PLAN_CHANGE_CONFIRMED = "plan_change_confirmed"
    PLAN_PRICING_SYNCED = "plan_pricing_synced"
    PLAN_DELETED = "plan_deleted"
    MEMBER_DELETED = "member_deleted"
    PAYMENT_FAILED = "payment_failed"


class AuditEvent(BaseModel):
    """Structured audit event for analytics and support tooling."""

    event_type: AuditEventType
    membership_id: Optional[str] = None
    user_id: Optional[str] = None
    plan_id: Optional[str] = None
    actor_id: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class AuditEventLogger(Protocol):
    """Captures structured audit events."""

    def log(self, event: AuditEvent) -> None:
        ...


class PlanCacheInvalidator(Protocol):
    """Invalidates cached plan lookups after plan edits."""

    def invalidate_plan(self, plan_id: str) -> None:
        ...

    def invalidate_all(self) -> None:
        ...


def stringify(metadata: Dict[str, object]) -> Dict[str, str]:
    """Drop empty values and stringify the rest for audit metadata."""

    return {key: str(value) for key, value in metadata.items() if value is not None}


__all__ = [
    "AuditEvent",
    "AuditEventLogger",
    "AuditEventType",
    "PlanCacheInvalidator",
    "stringify",
]

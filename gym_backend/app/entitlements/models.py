"""Booking decisions returned by the entitlement façade."""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from ..booking_rules import BookingRuleFamily, DecisionReason, ResourceKind


class BookingDecision(BaseModel):
    """Answer to "may this user consume this resource on this date"."""

    allowed: bool
    reason: DecisionReason
    resource: ResourceKind = ResourceKind.COURSE
    remaining: Optional[int] = Field(default=None, ge=0)
    family: Optional[BookingRuleFamily] = None
    used_in_period: Optional[int] = Field(default=None, ge=0)
    period_limit: Optional[int] = Field(default=None, ge=0)
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    membership_id: Optional[str] = None
    plan_id: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class CheckInResult(BaseModel):
    decision: BookingDecision
    debited: bool = False
    visit_recorded: bool = False
    credits_remaining: Optional[int] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def admitted(self) -> bool:
        return self.decision.allowed


__all__ = ["BookingDecision", "CheckInResult"]

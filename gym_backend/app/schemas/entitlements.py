"""API schemas for entitlement endpoints."""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from ..booking_rules import BookingRuleFamily, DecisionReason, ResourceKind
from ..entitlements import BookingDecision, CheckInResult


class BookingDecisionResponse(BaseModel):
    allowed: bool
    reason: DecisionReason
    resource: ResourceKind
    remaining: Optional[int] = None
    family: Optional[BookingRuleFamily] = None
    used_in_period: Optional[int] = Field(alias="usedInPeriod", default=None)
    period_limit: Optional[int] = Field(alias="periodLimit", default=None)
    period_start: Optional[datetime] = Field(alias="periodStart", default=None)
    period_end: Optional[datetime] = Field(alias="periodEnd", default=None)
    membership_id: Optional[str] = Field(alias="membershipId", default=None)
    plan_id: Optional[str] = Field(alias="planId", default=None)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_decision(cls, decision: BookingDecision) -> "BookingDecisionResponse":
        return cls(**decision.model_dump())


class OpenGymCheckInRequest(BaseModel):
    user_id: str = Field(alias="userId")
    at: Optional[datetime] = None

    model_config = ConfigDict(populate_by_name=True)


class OpenGymCheckInResponse(BaseModel):
    admitted: bool
    debited: bool
    visit_recorded: bool = Field(alias="visitRecorded", default=False)
    credits_remaining: Optional[int] = Field(alias="creditsRemaining", default=None)
    decision: BookingDecisionResponse

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_result(cls, result: CheckInResult) -> "OpenGymCheckInResponse":
        return cls(
            admitted=result.admitted,
            debited=result.debited,
            visit_recorded=result.visit_recorded,
            credits_remaining=result.credits_remaining,
            decision=BookingDecisionResponse.from_decision(result.decision),
        )

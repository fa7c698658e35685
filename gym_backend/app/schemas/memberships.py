"""API schemas for membership endpoints."""
from __future__ import annotations

from datetime import date, datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..ledger import AdjustmentMode, AdjustmentResult
from ..lifecycle import PlanChangeKind, PlanChangeResult, TransitionResult
from ..memberships import Membership, MembershipStatus


class CreditAdjustmentRequest(BaseModel):
    amount: int
    mode: AdjustmentMode
    require_sufficient: bool = Field(alias="requireSufficient", default=False)
    reason: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


class CreditAdjustmentResponse(BaseModel):
    membership_id: str = Field(alias="membershipId")
    previous_balance: int = Field(alias="previousBalance")
    new_balance: int = Field(alias="newBalance")
    clamped: bool
    adjustment_id: str = Field(alias="adjustmentId")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_result(cls, result: AdjustmentResult) -> "CreditAdjustmentResponse":
        return cls(
            membership_id=result.membership_id,
            previous_balance=result.previous_balance,
            new_balance=result.new_balance,
            clamped=result.clamped,
            adjustment_id=result.adjustment.adjustment_id,
        )


class MembershipResponse(BaseModel):
    id: str
    user_id: str = Field(alias="userId")
    plan_id: str = Field(alias="planId")
    status: MembershipStatus
    start_date: date = Field(alias="startDate")
    end_date: Optional[date] = Field(alias="endDate", default=None)
    remaining_credits: int = Field(alias="remainingCredits", default=0)
    cancellation_requested_at: Optional[datetime] = Field(alias="cancellationRequestedAt", default=None)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_membership(cls, membership: Membership) -> "MembershipResponse":
        return cls(
            id=membership.id,
            user_id=membership.user_id,
            plan_id=membership.plan_id,
            status=membership.status,
            start_date=membership.start_date,
            end_date=membership.end_date,
            remaining_credits=membership.remaining_credits,
            cancellation_requested_at=membership.membership_data.cancellation_requested_at,
        )


class CancellationResponse(BaseModel):
    membership: MembershipResponse
    changed: bool

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_transition(cls, result: TransitionResult) -> "CancellationResponse":
        return cls(membership=MembershipResponse.from_membership(result.membership), changed=result.changed)


class PlanChangeRequest(BaseModel):
    user_id: str = Field(alias="userId")
    target_plan_id: str = Field(alias="targetPlanId")
    kind: PlanChangeKind

    model_config = ConfigDict(populate_by_name=True)


class PlanChangeResponse(BaseModel):
    membership: MembershipResponse
    replaces_membership_id: str = Field(alias="replacesMembershipId")
    superseded_ids: List[str] = Field(alias="supersededIds", default_factory=list)
    checkout_url: Optional[str] = Field(alias="checkoutUrl", default=None)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_result(cls, result: PlanChangeResult) -> "PlanChangeResponse":
        return cls(
            membership=MembershipResponse.from_membership(result.membership),
            replaces_membership_id=result.replaces_membership_id,
            superseded_ids=list(result.superseded_ids),
            checkout_url=result.checkout.url if result.checkout is not None else None,
        )

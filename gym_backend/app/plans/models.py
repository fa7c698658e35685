"""Admin-facing plan drafts and the result of a plan write."""
from __future__ import annotations

from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..booking_rules import BookingRules
from ..memberships.models import DEFAULT_PLAN_COLOR, MembershipPlan, PaymentFrequency
from ..provider_sync.models import PricingSyncResult


class PlanDraft(BaseModel):
    """Fields an administrator supplies when creating a plan."""

    name: str = Field(min_length=1)
    description: Optional[str] = None
    booking_rules: BookingRules
    price: Decimal = Field(default=Decimal("0"), ge=0)
    payment_frequency: PaymentFrequency = PaymentFrequency.MONTHLY
    duration_months: int = Field(default=1, ge=1)
    cancellation_allowed: bool = True
    is_active: bool = True
    color: str = DEFAULT_PLAN_COLOR

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class PlanUpdate(BaseModel):
    """Partial update; only fields explicitly set are applied."""

    name: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    booking_rules: Optional[BookingRules] = None
    price: Optional[Decimal] = Field(default=None, ge=0)
    payment_frequency: Optional[PaymentFrequency] = None
    duration_months: Optional[int] = Field(default=None, ge=1)
    cancellation_allowed: Optional[bool] = None
    is_active: Optional[bool] = None
    color: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class PlanWriteResult(BaseModel):
    plan: MembershipPlan
    pricing: Optional[PricingSyncResult] = None
    warnings: List[str] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


__all__ = ["PlanDraft", "PlanUpdate", "PlanWriteResult"]

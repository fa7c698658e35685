"""API schemas for plan and member administration endpoints."""
from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..booking_rules import dump_booking_rules
from ..cascade import CascadeOutcome, CascadeResult
from ..plans import PlanWriteResult
from ..provider_sync import PricingSyncResult


class CascadeErrorResponse(BaseModel):
    step: str
    item_id: str = Field(alias="itemId")
    message: str
    reference: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


class CascadeResponse(BaseModel):
    target_id: str = Field(alias="targetId")
    outcome: CascadeOutcome
    affected_count: int = Field(alias="affectedCount")
    cancelled_count: int = Field(alias="cancelledCount")
    errors: List[CascadeErrorResponse] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_result(cls, result: CascadeResult) -> "CascadeResponse":
        return cls(
            target_id=result.target_id,
            outcome=result.outcome,
            affected_count=result.affected_count,
            cancelled_count=result.cancelled_count,
            errors=[
                CascadeErrorResponse(
                    step=error.step,
                    item_id=error.item_id,
                    message=error.message,
                    reference=error.reference,
                )
                for error in result.errors
            ],
        )


class SyncPricingRequest(BaseModel):
    previous_price: Optional[Decimal] = Field(alias="previousPrice", default=None, ge=0)

    model_config = ConfigDict(populate_by_name=True)


class SyncPricingResponse(BaseModel):
    plan_id: str = Field(alias="planId")
    product_id: str = Field(alias="productId")
    price_id: Optional[str] = Field(alias="priceId", default=None)
    previous_price_id: Optional[str] = Field(alias="previousPriceId", default=None)
    price_changed: bool = Field(alias="priceChanged")
    warnings: List[str] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_result(cls, result: PricingSyncResult) -> "SyncPricingResponse":
        return cls(
            plan_id=result.plan_id,
            product_id=result.product_id,
            price_id=result.price_id,
            previous_price_id=result.previous_price_id,
            price_changed=result.price_changed,
            warnings=list(result.warnings),
        )


class PlanResponse(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    price: Decimal
    payment_frequency: str = Field(alias="paymentFrequency")
    duration_months: int = Field(alias="durationMonths")
    family: Optional[str] = None
    booking_rules: Optional[Dict[str, Any]] = Field(alias="bookingRules", default=None)
    cancellation_allowed: bool = Field(alias="cancellationAllowed")
    is_active: bool = Field(alias="isActive")
    stripe_product_id: Optional[str] = Field(alias="stripeProductId", default=None)
    stripe_price_id: Optional[str] = Field(alias="stripePriceId", default=None)
    warnings: List[str] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_result(cls, result: PlanWriteResult) -> "PlanResponse":
        plan = result.plan
        rules = plan.resolved_rules()
        return cls(
            id=plan.id,
            name=plan.name,
            description=plan.description,
            price=plan.price,
            payment_frequency=plan.payment_frequency.value,
            duration_months=plan.duration_months,
            family=rules.family.value if rules is not None else None,
            booking_rules=dump_booking_rules(rules) if rules is not None else None,
            cancellation_allowed=plan.cancellation_allowed,
            is_active=plan.is_active,
            stripe_product_id=plan.stripe_product_id,
            stripe_price_id=plan.stripe_price_id,
            warnings=list(result.warnings),
        )

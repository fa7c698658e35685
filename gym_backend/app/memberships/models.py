"""Domain models for membership plans and user memberships."""
from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..booking_rules import (
    BookingRuleFamily,
    BookingRules,
    parse_booking_rules,
    resolve_booking_rules,
)
from .data import CreditMembershipData, MembershipData, StandardMembershipData

DEFAULT_PLAN_COLOR = "#52a7b4"


class PaymentFrequency(str, Enum):
    """How often a plan is billed."""

    ONE_TIME = "one_time"
    MONTHLY = "monthly"
    YEARLY = "yearly"

    @property
    def recurring_interval(self) -> Optional[str]:
        """Provider billing interval, ``None`` for one-time purchases."""

        if self == PaymentFrequency.MONTHLY:
            return "month"
        if self == PaymentFrequency.YEARLY:
            return "year"
        return None


class MembershipStatus(str, Enum):
    """Lifecycle state of a membership."""

    PENDING_ACTIVATION = "pending_activation"
    ACTIVE = "active"
    CANCELLED = "cancelled"


LIVE_STATUSES = (MembershipStatus.ACTIVE, MembershipStatus.PENDING_ACTIVATION)


class CancellationReason(str, Enum):
    """Reason codes written to ``membership_data.cancelled_reason``."""

    PLAN_DELETED = "plan_deleted"
    PLAN_CHANGED = "plan_changed"
    REPLACED_BY_NEW_PLAN_CHANGE = "replaced_by_new_plan_change"
    SUPERSEDED = "superseded"
    PERIOD_ENDED = "period_ended"
    PROVIDER_CANCELLED = "provider_cancelled"
    ADMIN = "admin"


class MembershipPlan(BaseModel):
    """Sellable plan with its booking-rule policy and provider references."""

    id: str
    name: str
    description: Optional[str] = None
    booking_rules: Optional[BookingRules] = None
    price: Decimal = Field(default=Decimal("0"), ge=0)
    payment_frequency: PaymentFrequency = PaymentFrequency.MONTHLY
    duration_months: int = Field(default=1, ge=1)
    cancellation_allowed: bool = True
    stripe_product_id: Optional[str] = None
    stripe_price_id: Optional[str] = None
    synced_price: Optional[Decimal] = Field(
        default=None,
        description="Price the current stripe_price_id was created for.",
    )
    is_active: bool = True
    color: str = DEFAULT_PLAN_COLOR
    legacy_booking_type: Optional[str] = None
    legacy_booking_limit: Optional[int] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("booking_rules", mode="before")
    @classmethod
    def _parse_rules(cls, value: object) -> object:
        if value is None:
            return None
        return parse_booking_rules(value)

    def resolved_rules(self) -> Optional[BookingRules]:
        """Structured rules, falling back to the legacy booking type."""

        return resolve_booking_rules(
            self.booking_rules,
            self.legacy_booking_type,
            self.legacy_booking_limit,
        )

    @property
    def family(self) -> Optional[BookingRuleFamily]:
        rules = self.resolved_rules()
        return rules.family if rules is not None else None

    @property
    def unit_amount(self) -> int:
        """Price in minor currency units."""

        return int((self.price * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))

    @property
    def is_recurring(self) -> bool:
        return self.payment_frequency.recurring_interval is not None

    def price_changed(self, previous_price: Optional[Decimal] = None) -> bool:
        """Whether the current price differs from the last synced price."""

        reference = previous_price if previous_price is not None else self.synced_price
        if reference is None:
            return False
        return abs(self.price - Decimal(reference)) >= Decimal("0.01")


class Membership(BaseModel):
    """A user's subscription to exactly one plan."""

    id: str
    user_id: str
    plan_id: str
    status: MembershipStatus
    start_date: date
    end_date: Optional[date] = None
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    stripe_checkout_session_id: Optional[str] = None
    replaces_membership_id: Optional[str] = None
    membership_data: Union[CreditMembershipData, StandardMembershipData] = Field(
        default_factory=StandardMembershipData
    )
    version: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def is_active(self) -> bool:
        return self.status == MembershipStatus.ACTIVE

    @property
    def is_cancelled(self) -> bool:
        return self.status == MembershipStatus.CANCELLED

    @property
    def remaining_credits(self) -> int:
        data: MembershipData = self.membership_data
        if isinstance(data, CreditMembershipData):
            return data.remaining_credits
        return 0

    @property
    def cancellation_requested(self) -> bool:
        return self.membership_data.cancellation_requested_at is not None

    @property
    def awaiting_payment(self) -> bool:
        return self.membership_data.awaiting_payment

    def covers(self, day: date) -> bool:
        """Whether ``day`` lies inside the membership's date range."""

        if day < self.start_date and self.status != MembershipStatus.ACTIVE:
            return False
        return self.end_date is None or day <= self.end_date

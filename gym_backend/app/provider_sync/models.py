"""Value objects exchanged with the payment provider."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ProviderEventType(str, Enum):
    """Inbound provider events the engine reconciles."""

    CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"


class PurchaseType(str, Enum):
    """``metadata.purchase_type`` values attached to checkout sessions."""

    MEMBERSHIP = "membership"
    CREDIT_TOPUP = "credit_topup"
    PLAN_CHANGE = "plan_change"
    MEMBERSHIP_UPGRADE = "membership_upgrade"
    CREDITS_TO_SUBSCRIPTION = "credits_to_subscription"

    @property
    def is_plan_change(self) -> bool:
        return self in (
            PurchaseType.PLAN_CHANGE,
            PurchaseType.MEMBERSHIP_UPGRADE,
            PurchaseType.CREDITS_TO_SUBSCRIPTION,
        )


class ProviderEvent(BaseModel):
    """A verified provider webhook event.

    ``data`` holds the provider object the event is about (the checkout
    session, subscription or invoice).
    """

    event_id: str
    event_type: str
    data: Dict[str, Any] = Field(default_factory=dict)
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def known_type(self) -> Optional[ProviderEventType]:
        try:
            return ProviderEventType(self.event_type)
        except ValueError:
            return None

    @property
    def metadata(self) -> Dict[str, str]:
        raw = self.data.get("metadata") or {}
        return {str(key): str(value) for key, value in raw.items() if value is not None}


@dataclass(frozen=True)
class ItemError:
    item_id: str
    message: str
    reference: Optional[str] = None


@dataclass
class BatchResult:
    """Accumulator for best-effort loops over provider objects."""

    succeeded: List[str] = field(default_factory=list)
    errors: List[ItemError] = field(default_factory=list)

    def record_success(self, item_id: str) -> None:
        self.succeeded.append(item_id)

    def record_failure(self, item_id: str, message: str, reference: Optional[str] = None) -> None:
        self.errors.append(ItemError(item_id=item_id, message=message, reference=reference))

    @property
    def attempted(self) -> int:
        return len(self.succeeded) + len(self.errors)

    @property
    def ok(self) -> bool:
        return not self.errors


class PricingSyncResult(BaseModel):
    plan_id: str
    product_id: str
    price_id: Optional[str] = None
    previous_price_id: Optional[str] = None
    synced_price: Optional[Decimal] = None
    product_created: bool = False
    price_changed: bool = False
    warnings: List[str] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True)


class CheckoutLink(BaseModel):
    session_id: str
    url: Optional[str] = None
    customer_id: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class EventOutcome(BaseModel):
    """What the reconciler did with an inbound event."""

    event_id: str
    event_type: str
    duplicate: bool = False
    handled: bool = True
    action: str = "ignored"
    membership_ids: List[str] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True)


__all__ = [
    "BatchResult",
    "CheckoutLink",
    "EventOutcome",
    "ItemError",
    "PricingSyncResult",
    "ProviderEvent",
    "ProviderEventType",
    "PurchaseType",
]

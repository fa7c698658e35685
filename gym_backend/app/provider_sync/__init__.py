"""Synchronization between local memberships and the payment provider."""

from .commands import ProviderCommands, plan_metadata
from .models import (
    BatchResult,
    CheckoutLink,
    EventOutcome,
    ItemError,
    PricingSyncResult,
    ProviderEvent,
    ProviderEventType,
    PurchaseType,
)
from .provider import PaymentProvider
from .service import PROVIDER_ACTOR, ProcessedEventRepository, ProviderSyncAdapter

__all__ = [
    "PROVIDER_ACTOR",
    "BatchResult",
    "CheckoutLink",
    "EventOutcome",
    "ItemError",
    "PaymentProvider",
    "PricingSyncResult",
    "ProcessedEventRepository",
    "ProviderCommands",
    "ProviderEvent",
    "ProviderEventType",
    "ProviderSyncAdapter",
    "PurchaseType",
    "plan_metadata",
]

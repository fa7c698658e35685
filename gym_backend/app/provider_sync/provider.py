"""Payment provider contract used by the sync adapter."""
from __future__ import annotations

from typing import Dict, Optional, Protocol

from .models import CheckoutLink, ProviderEvent


class PaymentProvider(Protocol):
    """External payment processor integration.

    Every method raises :class:`~gym_backend.app.errors.ProviderError` when
    the provider rejects the call or cannot be reached.
    """

    def create_product(self, *, name: str, description: Optional[str], metadata: Dict[str, str]) -> str:
        """Create a product and return its id."""

    def update_product(
        self,
        product_id: str,
        *,
        name: str,
        description: Optional[str],
        metadata: Dict[str, str],
    ) -> None:
        ...

    def archive_product(self, product_id: str) -> None:
        ...

    def create_price(
        self,
        *,
        product_id: str,
        unit_amount: int,
        currency: str,
        interval: Optional[str],
        metadata: Dict[str, str],
    ) -> str:
        """Create an immutable price and return its id."""

    def deactivate_price(self, price_id: str) -> None:
        ...

    def cancel_subscription(self, subscription_id: str, *, at_period_end: bool = False) -> None:
        ...

    def create_customer(self, *, user_id: str, email: Optional[str] = None) -> str:
        ...

    def create_checkout_session(
        self,
        *,
        customer_id: str,
        price_id: str,
        recurring: bool,
        success_url: str,
        cancel_url: str,
        metadata: Dict[str, str],
    ) -> CheckoutLink:
        ...

    def parse_webhook(self, payload: bytes, signature: Optional[str]) -> ProviderEvent:
        """Verify the signature and decode the event."""


__all__ = ["PaymentProvider"]

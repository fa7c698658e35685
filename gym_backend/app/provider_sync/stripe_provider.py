"""Stripe implementation of the payment provider contract."""
from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

import stripe

from ..errors import ProviderError, ValidationError
from .models import CheckoutLink, ProviderEvent

logger = logging.getLogger("memberships.stripe")


@contextmanager
def _stripe_call(action: str, reference: Optional[str] = None) -> Iterator[None]:
    """Translate Stripe exceptions (including timeouts) into ``ProviderError``."""

    try:
        yield
    except stripe.StripeError as exc:
        logger.error("Stripe %s failed for %s: %s", action, reference or "-", exc)
        raise ProviderError(
            f"Payment provider call failed: {action}",
            reference=reference,
            detail={"provider_code": exc.code} if exc.code else None,
        ) from exc


class StripePaymentProvider:
    """Talks to Stripe through the ``stripe`` library resources."""

    def __init__(self, *, api_key: str, webhook_secret: Optional[str] = None) -> None:
        self._api_key = api_key
        self._webhook_secret = webhook_secret

    def create_product(self, *, name: str, description: Optional[str], metadata: Dict[str, str]) -> str:
        params: Dict[str, Any] = {"name": name, "metadata": metadata}
        if description:
            params["description"] = description
        with _stripe_call("create_product", metadata.get("plan_id")):
            product = stripe.Product.create(api_key=self._api_key, **params)
        logger.info("Created Stripe product %s", product.id)
        return product.id

    def update_product(
        self,
        product_id: str,
        *,
        name: str,
        description: Optional[str],
        metadata: Dict[str, str],
    ) -> None:
        params: Dict[str, Any] = {"name": name, "metadata": metadata}
        if description:
            params["description"] = description
        with _stripe_call("update_product", product_id):
            stripe.Product.modify(product_id, api_key=self._api_key, **params)

    def archive_product(self, product_id: str) -> None:
        with _stripe_call("archive_product", product_id):
            stripe.Product.modify(product_id, api_key=self._api_key, active=False)
        logger.info("Archived Stripe product %s", product_id)

    def create_price(
        self,
        *,
        product_id: str,
        unit_amount: int,
        currency: str,
        interval: Optional[str],
        metadata: Dict[str, str],
    ) -> str:
        params: Dict[str, Any] = {
            "product": product_id,
            "unit_amount": unit_amount,
            "currency": currency,
            "metadata": metadata,
        }
        if interval:
            params["recurring"] = {"interval": interval}
        with _stripe_call("create_price", product_id):
            price = stripe.Price.create(api_key=self._api_key, **params)
        logger.info("Created Stripe price %s for product %s", price.id, product_id)
        return price.id

    def deactivate_price(self, price_id: str) -> None:
        with _stripe_call("deactivate_price", price_id):
            stripe.Price.modify(price_id, api_key=self._api_key, active=False)

    def cancel_subscription(self, subscription_id: str, *, at_period_end: bool = False) -> None:
        with _stripe_call("cancel_subscription", subscription_id):
            if at_period_end:
                stripe.Subscription.modify(
                    subscription_id,
                    api_key=self._api_key,
                    cancel_at_period_end=True,
                )
            else:
                stripe.Subscription.cancel(subscription_id, api_key=self._api_key)
        logger.info(
            "Cancelled Stripe subscription %s (at_period_end=%s)",
            subscription_id,
            at_period_end,
        )

    def create_customer(self, *, user_id: str, email: Optional[str] = None) -> str:
        params: Dict[str, Any] = {"metadata": {"user_id": user_id}}
        if email:
            params["email"] = email
        with _stripe_call("create_customer", user_id):
            customer = stripe.Customer.create(api_key=self._api_key, **params)
        return customer.id

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
        params: Dict[str, Any] = {
            "mode": "subscription" if recurring else "payment",
            "customer": customer_id,
            "line_items": [{"price": price_id, "quantity": 1}],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata,
        }
        if recurring:
            params["subscription_data"] = {"metadata": metadata}
        with _stripe_call("create_checkout_session", price_id):
            session = stripe.checkout.Session.create(api_key=self._api_key, **params)
        return CheckoutLink(session_id=session.id, url=session.url, customer_id=customer_id)

    def parse_webhook(self, payload: bytes, signature: Optional[str]) -> ProviderEvent:
        body = decode_payload(payload)
        if self._webhook_secret:
            if not signature:
                raise ValidationError("Missing webhook signature")
            try:
                stripe.WebhookSignature.verify_header(body, signature, self._webhook_secret)
            except stripe.SignatureVerificationError as exc:
                logger.warning("Rejected webhook with invalid signature")
                raise ValidationError("Invalid webhook signature") from exc
        else:
            logger.warning("STRIPE_WEBHOOK_SECRET is not set, accepting unsigned webhook")
        return decode_event(body)


def decode_payload(payload: Any) -> str:
    if not isinstance(payload, (bytes, bytearray)):
        return str(payload)
    try:
        return payload.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise ValidationError("Webhook payload is not valid UTF-8") from exc


def decode_event(body: str) -> ProviderEvent:
    """Decode a Stripe event envelope into a :class:`ProviderEvent`."""

    try:
        raw = json.loads(body)
    except json.JSONDecodeError as exc:
        raise ValidationError("Webhook payload is not valid JSON") from exc
    if not isinstance(raw, dict) or not raw.get("id") or not raw.get("type"):
        raise ValidationError("Webhook payload is missing id or type")
    data = raw.get("data") or {}
    obj = data.get("object") if isinstance(data, dict) else None
    return ProviderEvent(
        event_id=str(raw["id"]),
        event_type=str(raw["type"]),
        data=obj if isinstance(obj, dict) else {},
    )


def configure_stripe(*, timeout_seconds: float, max_network_retries: int) -> None:
    """Apply process-wide HTTP settings of the ``stripe`` library."""

    stripe.max_network_retries = max_network_retries
    stripe.default_http_client = stripe.RequestsClient(timeout=timeout_seconds)


def create_stripe_provider(config) -> StripePaymentProvider:
    """Build a provider from an :class:`~gym_backend.config.EngineConfig`."""

    if not config.stripe_secret_key:
        raise RuntimeError("STRIPE_SECRET_KEY is required for the Stripe provider")
    configure_stripe(
        timeout_seconds=config.stripe_timeout_seconds,
        max_network_retries=config.stripe_max_network_retries,
    )
    return StripePaymentProvider(
        api_key=config.stripe_secret_key,
        webhook_secret=config.stripe_webhook_secret,
    )


__all__ = ["StripePaymentProvider", "configure_stripe", "create_stripe_provider", "decode_event", "decode_payload"]

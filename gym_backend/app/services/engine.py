"""Application wiring for the membership engine services."""
from __future__ import annotations

import logging
import os
from functools import lru_cache
from typing import Dict, Optional
from uuid import uuid4

from ...config import EngineConfig, load_engine_config
from ..audit import AuditEvent, AuditEventLogger
from ..cascade import CascadeService
from ..cascade.repository import PostgresIdentityProvider, PostgresMemberDirectory
from ..entitlements import CachedPlanRepository, EntitlementService, InMemoryPlanCache
from ..ledger import CreditLedger
from ..lifecycle import MembershipLifecycleManager
from ..memberships.repository import (
    PostgresBookingUsageRepository,
    PostgresMembershipRepository,
    PostgresPlanRepository,
)
from ..plans import PlanService
from ..provider_sync import CheckoutLink, PaymentProvider, ProviderCommands, ProviderEvent, ProviderSyncAdapter
from ..provider_sync.repository import PostgresProcessedEventRepository
from ..provider_sync.stripe_provider import create_stripe_provider, decode_event, decode_payload

logger = logging.getLogger("memberships")


class LoggingAuditEventLogger(AuditEventLogger):
    """Event logger forwarding membership audit events to logging."""

    def log(self, event: AuditEvent) -> None:
        logger.info(
            "Membership event %s membership=%s user=%s plan=%s actor=%s metadata=%s",
            event.event_type.value,
            event.membership_id,
            event.user_id,
            event.plan_id,
            event.actor_id,
            event.metadata,
        )


class LocalSandboxPaymentProvider(PaymentProvider):
    """Provider implementation for local development without a Stripe account."""

    def create_product(self, *, name: str, description: Optional[str], metadata: Dict[str, str]) -> str:
        product_id = f"prod_{uuid4().hex}"
        logger.debug("Sandbox product %s created for %s", product_id, name)
        return product_id

    def update_product(
        self,
        product_id: str,
        *,
        name: str,
        description: Optional[str],
        metadata: Dict[str, str],
    ) -> None:
        logger.debug("Sandbox product %s updated", product_id)

    def archive_product(self, product_id: str) -> None:
        logger.debug("Sandbox product %s archived", product_id)

    def create_price(
        self,
        *,
        product_id: str,
        unit_amount: int,
        currency: str,
        interval: Optional[str],
        metadata: Dict[str, str],
    ) -> str:
        price_id = f"price_{uuid4().hex}"
        logger.debug("Sandbox price %s: %s %s per %s", price_id, unit_amount, currency, interval or "purchase")
        return price_id

    def deactivate_price(self, price_id: str) -> None:
        logger.debug("Sandbox price %s deactivated", price_id)

    def cancel_subscription(self, subscription_id: str, *, at_period_end: bool = False) -> None:
        logger.debug("Sandbox subscription %s cancelled at_period_end=%s", subscription_id, at_period_end)

    def create_customer(self, *, user_id: str, email: Optional[str] = None) -> str:
        return f"cus_{uuid4().hex}"

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
        session_id = f"cs_{uuid4().hex}"
        return CheckoutLink(
            session_id=session_id,
            url=f"https://billing.local/checkout/{session_id}",
            customer_id=customer_id,
        )

    def parse_webhook(self, payload: bytes, signature: Optional[str]) -> ProviderEvent:
        return decode_event(decode_payload(payload))


@lru_cache(maxsize=1)
def get_engine_config() -> EngineConfig:
    return load_engine_config(os.environ)


@lru_cache(maxsize=1)
def get_plan_repository() -> CachedPlanRepository:
    config = get_engine_config()
    return CachedPlanRepository(
        PostgresPlanRepository(),
        InMemoryPlanCache(),
        ttl_seconds=config.plan_cache_ttl_seconds,
    )


@lru_cache(maxsize=1)
def get_membership_repository() -> PostgresMembershipRepository:
    return PostgresMembershipRepository()


@lru_cache(maxsize=1)
def get_event_logger() -> LoggingAuditEventLogger:
    return LoggingAuditEventLogger()


@lru_cache(maxsize=1)
def get_payment_provider() -> PaymentProvider:
    config = get_engine_config()
    if config.sandbox_provider:
        logger.warning("Using the local sandbox payment provider")
        return LocalSandboxPaymentProvider()
    return create_stripe_provider(config)


@lru_cache(maxsize=1)
def get_provider_commands() -> ProviderCommands:
    config = get_engine_config()
    plans = get_plan_repository()
    return ProviderCommands(
        provider=get_payment_provider(),
        plans=plans,
        currency=config.billing_currency,
        event_logger=get_event_logger(),
        invalidator=plans,
    )


@lru_cache(maxsize=1)
def get_credit_ledger() -> CreditLedger:
    return CreditLedger(
        memberships=get_membership_repository(),
        plans=get_plan_repository(),
        event_logger=get_event_logger(),
        max_retries=get_engine_config().ledger_max_retries,
    )


@lru_cache(maxsize=1)
def get_lifecycle_manager() -> MembershipLifecycleManager:
    return MembershipLifecycleManager(
        memberships=get_membership_repository(),
        plans=get_plan_repository(),
        provider=get_provider_commands(),
        event_logger=get_event_logger(),
        max_retries=get_engine_config().ledger_max_retries,
    )


@lru_cache(maxsize=1)
def get_provider_sync_adapter() -> ProviderSyncAdapter:
    return ProviderSyncAdapter(
        commands=get_provider_commands(),
        lifecycle=get_lifecycle_manager(),
        ledger=get_credit_ledger(),
        memberships=get_membership_repository(),
        events=PostgresProcessedEventRepository(),
        event_logger=get_event_logger(),
    )


@lru_cache(maxsize=1)
def get_cascade_service() -> CascadeService:
    plans = get_plan_repository()
    return CascadeService(
        plans=plans,
        memberships=get_membership_repository(),
        lifecycle=get_lifecycle_manager(),
        directory=PostgresMemberDirectory(),
        provider=get_provider_commands(),
        identity=PostgresIdentityProvider(),
        invalidator=plans,
        event_logger=get_event_logger(),
    )


@lru_cache(maxsize=1)
def get_entitlement_service() -> EntitlementService:
    return EntitlementService(
        memberships=get_membership_repository(),
        plans=get_plan_repository(),
        usage=PostgresBookingUsageRepository(),
        ledger=get_credit_ledger(),
        gym_timezone=get_engine_config().gym_timezone,
    )


@lru_cache(maxsize=1)
def get_plan_service() -> PlanService:
    plans = get_plan_repository()
    return PlanService(
        plans=plans,
        memberships=get_membership_repository(),
        commands=get_provider_commands(),
        cascade=get_cascade_service(),
        invalidator=plans,
    )


__all__ = [
    "LocalSandboxPaymentProvider",
    "LoggingAuditEventLogger",
    "get_cascade_service",
    "get_credit_ledger",
    "get_engine_config",
    "get_entitlement_service",
    "get_lifecycle_manager",
    "get_plan_service",
    "get_provider_sync_adapter",
]

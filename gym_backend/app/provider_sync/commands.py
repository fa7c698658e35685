"""Outbound commands from the engine to the payment provider."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

from ..audit import AuditEvent, AuditEventLogger, AuditEventType, PlanCacheInvalidator, stringify
from ..errors import PlanNotFoundError, ProviderError
from ..memberships.models import Membership, MembershipPlan
from ..memberships.repository import PlanRepository
from .models import BatchResult, CheckoutLink, PricingSyncResult
from .provider import PaymentProvider

logger = logging.getLogger("memberships.provider_sync")


def plan_metadata(plan: MembershipPlan) -> Dict[str, str]:
    return {
        "plan_id": plan.id,
        "plan_name": plan.name,
        "payment_frequency": plan.payment_frequency.value,
        "duration_months": str(plan.duration_months),
    }


@dataclass
class ProviderCommands:
    """Pushes plan and subscription changes to the payment provider."""

    provider: PaymentProvider
    plans: PlanRepository
    currency: str = "eur"
    event_logger: Optional[AuditEventLogger] = None
    invalidator: Optional[PlanCacheInvalidator] = None

    def ensure_product(self, plan: MembershipPlan) -> Tuple[MembershipPlan, bool]:
        """Create the provider product for ``plan`` when it has none."""

        if plan.stripe_product_id:
            return plan, False
        product_id = self.provider.create_product(
            name=plan.name,
            description=plan.description,
            metadata=plan_metadata(plan),
        )
        stored = self.plans.save_plan(plan.model_copy(update={"stripe_product_id": product_id}))
        logger.info("Created provider product %s for plan %s", product_id, plan.id)
        return stored, True

    def sync_plan_pricing(
        self,
        plan_id: str,
        previous_price: Optional[Decimal] = None,
        *,
        actor: Optional[str] = None,
    ) -> PricingSyncResult:
        """Bring the provider product and price in line with the local plan.

        Existing provider prices are never mutated: a price change creates a
        new price and deactivates the old one. Failing to deactivate the old
        price only produces a warning.
        """

        plan = self.plans.get_plan(plan_id)
        if plan is None:
            raise PlanNotFoundError("Plan not found", detail={"plan_id": plan_id})

        plan, product_created = self.ensure_product(plan)
        warnings: List[str] = []
        if not product_created:
            self.provider.update_product(
                plan.stripe_product_id,
                name=plan.name,
                description=plan.description,
                metadata=plan_metadata(plan),
            )

        previous_price_id = plan.stripe_price_id
        price_changed = previous_price_id is None or plan.price_changed(previous_price)
        if price_changed:
            new_price_id = self.provider.create_price(
                product_id=plan.stripe_product_id,
                unit_amount=plan.unit_amount,
                currency=self.currency,
                interval=plan.payment_frequency.recurring_interval,
                metadata=plan_metadata(plan),
            )
            if previous_price_id:
                try:
                    self.provider.deactivate_price(previous_price_id)
                except ProviderError as exc:
                    logger.warning(
                        "Could not deactivate old price %s of plan %s: %s",
                        previous_price_id,
                        plan.id,
                        exc.message,
                    )
                    warnings.append(f"deactivate_price_failed:{previous_price_id}")
            plan = self.plans.save_plan(
                plan.model_copy(update={"stripe_price_id": new_price_id, "synced_price": plan.price})
            )
            logger.info(
                "Plan %s price synced: %s -> %s (%s)",
                plan.id,
                previous_price_id,
                new_price_id,
                plan.price,
            )
        elif plan.synced_price is None:
            plan = self.plans.save_plan(plan.model_copy(update={"synced_price": plan.price}))

        if self.invalidator is not None:
            self.invalidator.invalidate_plan(plan.id)
        if self.event_logger is not None:
            self.event_logger.log(
                AuditEvent(
                    event_type=AuditEventType.PLAN_PRICING_SYNCED,
                    plan_id=plan.id,
                    actor_id=actor,
                    metadata=stringify(
                        {
                            "product_id": plan.stripe_product_id,
                            "price_id": plan.stripe_price_id,
                            "previous_price_id": previous_price_id,
                            "price_changed": price_changed,
                        }
                    ),
                )
            )
        return PricingSyncResult(
            plan_id=plan.id,
            product_id=plan.stripe_product_id,
            price_id=plan.stripe_price_id,
            previous_price_id=previous_price_id,
            synced_price=plan.synced_price,
            product_created=product_created,
            price_changed=price_changed,
            warnings=warnings,
        )

    def archive_product(self, plan: MembershipPlan) -> bool:
        """Archive the plan's product; returns ``False`` when there is none."""

        if not plan.stripe_product_id:
            return False
        self.provider.archive_product(plan.stripe_product_id)
        return True

    def cancel_subscription(self, subscription_id: str, *, at_period_end: bool = False) -> None:
        self.provider.cancel_subscription(subscription_id, at_period_end=at_period_end)

    def cancel_subscriptions(self, memberships: Iterable[Membership]) -> BatchResult:
        """Best-effort immediate cancellation of every linked subscription."""

        result = BatchResult()
        seen = set()
        for membership in memberships:
            subscription_id = membership.stripe_subscription_id
            if not subscription_id or subscription_id in seen:
                continue
            seen.add(subscription_id)
            try:
                self.provider.cancel_subscription(subscription_id)
            except ProviderError as exc:
                logger.warning(
                    "Failed to cancel subscription %s of membership %s: %s",
                    subscription_id,
                    membership.id,
                    exc.message,
                )
                result.record_failure(membership.id, exc.message, reference=subscription_id)
            else:
                result.record_success(membership.id)
        return result

    def ensure_customer(self, user_id: str, existing: Optional[str] = None, email: Optional[str] = None) -> str:
        if existing:
            return existing
        return self.provider.create_customer(user_id=user_id, email=email)

    def create_checkout(
        self,
        plan: MembershipPlan,
        *,
        customer_id: str,
        success_url: str,
        cancel_url: str,
        metadata: Dict[str, str],
    ) -> CheckoutLink:
        if not plan.stripe_price_id:
            self.sync_plan_pricing(plan.id)
            refreshed = self.plans.get_plan(plan.id)
            if refreshed is None:
                raise PlanNotFoundError("Plan not found", detail={"plan_id": plan.id})
            plan = refreshed
        return self.provider.create_checkout_session(
            customer_id=customer_id,
            price_id=plan.stripe_price_id,
            recurring=plan.is_recurring,
            success_url=success_url,
            cancel_url=cancel_url,
            metadata=metadata,
        )


__all__ = ["ProviderCommands", "plan_metadata"]

"""Reconciliation of provider-reported events into local membership state."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Protocol

from ..audit import AuditEvent, AuditEventLogger, AuditEventType, stringify
from ..memberships.models import CancellationReason, Membership, MembershipStatus
from ..memberships.repository import MembershipRepository
from .commands import ProviderCommands
from .models import EventOutcome, PricingSyncResult, ProviderEvent, ProviderEventType, PurchaseType

if TYPE_CHECKING:  # pragma: no cover
    from ..ledger.service import CreditLedger
    from ..lifecycle.service import MembershipLifecycleManager

logger = logging.getLogger("memberships.provider_sync")

PROVIDER_ACTOR = "provider"


class ProcessedEventRepository(Protocol):
    """Remembers which provider events have already been applied."""

    def has_event(self, event_id: str) -> bool:
        ...

    def record_event(self, event: ProviderEvent) -> bool:
        """Store the event id; returns ``False`` if it was already stored."""

    def release_event(self, event_id: str) -> None:
        """Forget a claimed event id so a redelivery is applied again."""


def _subscription_of_invoice(invoice: Dict[str, Any]) -> Optional[str]:
    subscription = invoice.get("subscription")
    if isinstance(subscription, dict):
        subscription = subscription.get("id")
    if subscription:
        return str(subscription)
    parent = invoice.get("parent") or {}
    details = parent.get("subscription_details") or {}
    nested = details.get("subscription")
    return str(nested) if nested else None


def _period_end_of_invoice(invoice: Dict[str, Any]) -> Optional[date]:
    lines = (invoice.get("lines") or {}).get("data") or []
    for line in lines:
        end = (line.get("period") or {}).get("end")
        if end:
            return datetime.fromtimestamp(int(end), tz=timezone.utc).date()
    return None


@dataclass
class ProviderSyncAdapter:
    """Entry point for pricing sync and inbound provider events.

    Events are idempotent twice over. The event id is claimed before the
    handler runs and released again if the handler fails. Effects that add
    value are keyed on the checkout session as well: credit top-ups carry the
    session id as ledger idempotency key, and one-time memberships store it,
    so a replay that slipped past the claim changes nothing.
    """

    commands: ProviderCommands
    lifecycle: "MembershipLifecycleManager"
    ledger: "CreditLedger"
    memberships: MembershipRepository
    events: ProcessedEventRepository
    event_logger: Optional[AuditEventLogger] = None

    def sync_plan_pricing(
        self,
        plan_id: str,
        previous_price: Optional[Decimal] = None,
        *,
        actor: Optional[str] = None,
    ) -> PricingSyncResult:
        return self.commands.sync_plan_pricing(plan_id, previous_price, actor=actor)

    def handle_webhook(self, payload: bytes, signature: Optional[str]) -> EventOutcome:
        event = self.commands.provider.parse_webhook(payload, signature)
        return self.handle_event(event)

    def handle_event(self, event: ProviderEvent) -> EventOutcome:
        if not self.events.record_event(event):
            logger.info("Skipping already processed provider event %s", event.event_id)
            return EventOutcome(event_id=event.event_id, event_type=event.event_type, duplicate=True, action="duplicate")

        handlers: Dict[ProviderEventType, Callable[[ProviderEvent], EventOutcome]] = {
            ProviderEventType.CHECKOUT_SESSION_COMPLETED: self._checkout_completed,
            ProviderEventType.SUBSCRIPTION_UPDATED: self._subscription_updated,
            ProviderEventType.SUBSCRIPTION_DELETED: self._subscription_deleted,
            ProviderEventType.INVOICE_PAYMENT_SUCCEEDED: self._invoice_payment_succeeded,
            ProviderEventType.INVOICE_PAYMENT_FAILED: self._invoice_payment_failed,
        }
        known = event.known_type
        if known is None:
            logger.info("Ignoring provider event %s of type %s", event.event_id, event.event_type)
            outcome = EventOutcome(event_id=event.event_id, event_type=event.event_type, handled=False)
        else:
            try:
                outcome = handlers[known](event)
            except Exception:
                logger.warning("Provider event %s failed, releasing it for redelivery", event.event_id)
                self.events.release_event(event.event_id)
                raise
        return outcome

    # ------------------------------------------------------------------
    # checkout.session.completed
    # ------------------------------------------------------------------
    def _checkout_completed(self, event: ProviderEvent) -> EventOutcome:
        session = event.data
        metadata = event.metadata
        raw_type = metadata.get("purchase_type", PurchaseType.MEMBERSHIP.value)
        try:
            purchase_type = PurchaseType(raw_type)
        except ValueError:
            logger.warning("Checkout session %s has unknown purchase type %r", session.get("id"), raw_type)
            return self._unhandled(event, "unknown_purchase_type")

        customer_id = session.get("customer")
        subscription_id = session.get("subscription")

        if purchase_type.is_plan_change:
            membership_id = metadata.get("membership_id")
            if not membership_id:
                return self._unhandled(event, "missing_membership_id")
            pending = self.memberships.get_membership(membership_id)
            if pending is None:
                return self._unhandled(event, "unknown_membership")
            if pending.status == MembershipStatus.CANCELLED:
                # paid for a plan change that a newer change already replaced
                return self._unhandled(event, "plan_change_superseded")
            result = self.lifecycle.confirm_plan_change(
                membership_id,
                stripe_customer_id=customer_id,
                stripe_subscription_id=subscription_id,
                actor=PROVIDER_ACTOR,
            )
            return self._outcome(
                event,
                "plan_change_confirmed" if result.changed else "noop",
                [result.membership.id],
            )

        if purchase_type == PurchaseType.CREDIT_TOPUP:
            membership_id = metadata.get("membership_id")
            if not membership_id and metadata.get("user_id"):
                active = self.lifecycle.active_membership(metadata["user_id"])
                membership_id = active.id if active is not None else None
            if not membership_id:
                return self._unhandled(event, "missing_membership_id")
            key = f"credit_topup:{session.get('id') or event.event_id}"
            credits = metadata.get("credits")
            if credits and credits.isdigit():
                result = self.ledger.adjust(
                    membership_id, int(credits), "add", actor=PROVIDER_ACTOR, idempotency_key=key
                )
            else:
                result = self.ledger.grant_plan_credits(membership_id, actor=PROVIDER_ACTOR, idempotency_key=key)
            return self._outcome(event, "noop" if result.duplicate else "credits_added", [result.membership_id])

        user_id = metadata.get("user_id")
        plan_id = metadata.get("plan_id")
        if not user_id or not plan_id:
            return self._unhandled(event, "missing_user_or_plan")
        session_id = session.get("id")
        if subscription_id:
            existing = list(self.memberships.list_by_subscription(subscription_id))
        elif session_id:
            existing = list(self.memberships.list_by_checkout_session(session_id))
        else:
            existing = []
        if existing:
            return self._outcome(event, "noop", [item.id for item in existing])
        membership = self.lifecycle.create_membership(
            user_id,
            plan_id,
            stripe_customer_id=customer_id,
            stripe_subscription_id=subscription_id,
            stripe_checkout_session_id=session_id,
            supersede_active=True,
            actor=PROVIDER_ACTOR,
        )
        return self._outcome(event, "membership_created", [membership.id])

    # ------------------------------------------------------------------
    # customer.subscription.*
    # ------------------------------------------------------------------
    def _subscription_updated(self, event: ProviderEvent) -> EventOutcome:
        status = event.data.get("status")
        if status == "canceled":
            return self._cancel_for_subscription(event)
        if status == "active":
            touched = self._confirm_pending(self._linked(event.data.get("id")))
            return self._outcome(event, "activated" if touched else "noop", touched)
        logger.info(
            "Subscription %s reported status %s, no local change",
            event.data.get("id"),
            status,
        )
        return self._outcome(event, "noop", [])

    def _subscription_deleted(self, event: ProviderEvent) -> EventOutcome:
        return self._cancel_for_subscription(event)

    def _cancel_for_subscription(self, event: ProviderEvent) -> EventOutcome:
        touched: List[str] = []
        for membership in self._linked(event.data.get("id")):
            if membership.status == MembershipStatus.CANCELLED:
                continue
            reason = (
                CancellationReason.PERIOD_ENDED
                if membership.cancellation_requested
                else CancellationReason.PROVIDER_CANCELLED
            )
            result = self.lifecycle.cancel(membership.id, reason, actor=PROVIDER_ACTOR, cancel_provider=False)
            if result.changed:
                touched.append(membership.id)
        return self._outcome(event, "cancelled" if touched else "noop", touched)

    # ------------------------------------------------------------------
    # invoice.*
    # ------------------------------------------------------------------
    def _invoice_payment_succeeded(self, event: ProviderEvent) -> EventOutcome:
        invoice = event.data
        memberships = self._linked(_subscription_of_invoice(invoice))
        touched = self._confirm_pending(memberships)
        if invoice.get("billing_reason") == "subscription_cycle":
            period_end = _period_end_of_invoice(invoice)
            for membership in memberships:
                if membership.status != MembershipStatus.ACTIVE:
                    continue
                result = self.lifecycle.renew(membership.id, period_end=period_end, actor=PROVIDER_ACTOR)
                if result.changed:
                    touched.append(membership.id)
        return self._outcome(event, "payment_applied" if touched else "noop", touched)

    def _invoice_payment_failed(self, event: ProviderEvent) -> EventOutcome:
        invoice = event.data
        subscription_id = _subscription_of_invoice(invoice)
        memberships = self._linked(subscription_id)
        logger.warning(
            "Payment failed for subscription %s invoice=%s",
            subscription_id,
            invoice.get("id"),
        )
        for membership in memberships:
            self._audit(
                AuditEventType.PAYMENT_FAILED,
                membership,
                invoice_id=invoice.get("id"),
                subscription_id=subscription_id,
                amount_due=invoice.get("amount_due"),
            )
        return self._outcome(event, "payment_failed_recorded", [item.id for item in memberships])

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _linked(self, subscription_id: Optional[str]) -> List[Membership]:
        if not subscription_id:
            return []
        return list(self.memberships.list_by_subscription(subscription_id))

    def _confirm_pending(self, memberships: List[Membership]) -> List[str]:
        touched: List[str] = []
        for membership in memberships:
            if membership.status != MembershipStatus.PENDING_ACTIVATION:
                continue
            if membership.replaces_membership_id:
                changed = self.lifecycle.confirm_plan_change(membership.id, actor=PROVIDER_ACTOR).changed
            else:
                changed = self.lifecycle.activate(membership.id, actor=PROVIDER_ACTOR).changed
            if changed:
                touched.append(membership.id)
        return touched

    def _audit(self, event_type: AuditEventType, membership: Membership, **metadata: object) -> None:
        if self.event_logger is None:
            return
        self.event_logger.log(
            AuditEvent(
                event_type=event_type,
                membership_id=membership.id,
                user_id=membership.user_id,
                plan_id=membership.plan_id,
                actor_id=PROVIDER_ACTOR,
                metadata=stringify(metadata),
            )
        )

    @staticmethod
    def _outcome(event: ProviderEvent, action: str, membership_ids: List[str]) -> EventOutcome:
        return EventOutcome(
            event_id=event.event_id,
            event_type=event.event_type,
            action=action,
            membership_ids=list(membership_ids),
        )

    @staticmethod
    def _unhandled(event: ProviderEvent, action: str) -> EventOutcome:
        logger.warning("Provider event %s not applied: %s", event.event_id, action)
        return EventOutcome(event_id=event.event_id, event_type=event.event_type, handled=False, action=action)


__all__ = ["PROVIDER_ACTOR", "ProcessedEventRepository", "ProviderSyncAdapter"]

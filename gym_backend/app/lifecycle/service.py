"""Membership status state machine and plan transitions."""
from __future__ import annotations

import calendar
import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Callable, Iterable, List, Optional, Tuple
from uuid import uuid4

from ..audit import AuditEvent, AuditEventLogger, AuditEventType, stringify
from ..booking_rules import BookingRuleFamily, CreditRules
from ..errors import (
    ActiveMembershipExistsError,
    CancellationAlreadyRequestedError,
    CancellationNotAllowedError,
    ConcurrencyConflictError,
    EngineError,
    InvalidTransitionError,
    MembershipNotFoundError,
    PlanNotCreditBasedError,
    PlanNotFoundError,
    PolicyMismatchError,
    ProviderError,
    ValidationError,
)
from ..memberships.data import initial_membership_data
from ..memberships.models import (
    CancellationReason,
    Membership,
    MembershipPlan,
    MembershipStatus,
)
from ..memberships.repository import MembershipRepository, PlanRepository
from ..provider_sync.commands import ProviderCommands
from ..provider_sync.models import BatchResult
from .models import ConfirmationResult, PlanChangeKind, PlanChangeResult, TransitionResult

logger = logging.getLogger("memberships.lifecycle")

Mutation = Callable[[Membership], Optional[Membership]]


def add_months(day: date, months: int) -> date:
    """Shift ``day`` by whole months, clamping to the last day of the month."""

    month_index = day.month - 1 + months
    year = day.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(day.day, last_day))


def _latest(memberships: Iterable[Membership]) -> Optional[Membership]:
    ordered = sorted(memberships, key=lambda item: (item.start_date, item.created_at), reverse=True)
    return ordered[0] if ordered else None


@dataclass
class MembershipLifecycleManager:
    """Owns every status change of a membership."""

    memberships: MembershipRepository
    plans: PlanRepository
    provider: Optional[ProviderCommands] = None
    event_logger: Optional[AuditEventLogger] = None
    max_retries: int = 3

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _today(self) -> date:
        return self._now().date()

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------
    def get_membership(self, membership_id: str) -> Membership:
        membership = self.memberships.get_membership(membership_id)
        if membership is None:
            raise MembershipNotFoundError("Membership not found", detail={"membership_id": membership_id})
        return membership

    def get_plan(self, plan_id: str) -> MembershipPlan:
        plan = self.plans.get_plan(plan_id)
        if plan is None:
            raise PlanNotFoundError("Plan not found", detail={"plan_id": plan_id})
        return plan

    def active_membership(self, user_id: str) -> Optional[Membership]:
        """The user's active membership; the latest start wins on duplicates."""

        active = list(self.memberships.list_for_user(user_id, [MembershipStatus.ACTIVE]))
        if len(active) > 1:
            logger.warning(
                "User %s holds %s active memberships, using the latest start",
                user_id,
                len(active),
            )
        return _latest(active)

    # ------------------------------------------------------------------
    # Creation and activation
    # ------------------------------------------------------------------
    def create_membership(
        self,
        user_id: str,
        plan_id: str,
        *,
        start_date: Optional[date] = None,
        stripe_customer_id: Optional[str] = None,
        stripe_subscription_id: Optional[str] = None,
        stripe_checkout_session_id: Optional[str] = None,
        supersede_active: bool = False,
        actor: Optional[str] = None,
    ) -> Membership:
        """Create a membership, active immediately unless it starts later.

        With ``supersede_active`` the user's current active memberships are
        cancelled first; otherwise an existing active membership is an error.
        """

        plan = self.get_plan(plan_id)
        if not plan.is_active:
            raise ValidationError("Plan is not available", detail={"plan_id": plan_id})

        today = self._today()
        start = start_date or today
        status = MembershipStatus.ACTIVE if start <= today else MembershipStatus.PENDING_ACTIVATION

        if status == MembershipStatus.ACTIVE:
            current = list(self.memberships.list_for_user(user_id, [MembershipStatus.ACTIVE]))
            if current and not supersede_active:
                raise ActiveMembershipExistsError(
                    "User already holds an active membership",
                    detail={"user_id": user_id, "membership_id": current[0].id},
                )
            for existing in current:
                self.cancel(
                    existing.id,
                    CancellationReason.SUPERSEDED,
                    actor=actor,
                    cancel_provider=existing.stripe_subscription_id != stripe_subscription_id,
                )

        now = self._now()
        membership = Membership(
            id=str(uuid4()),
            user_id=user_id,
            plan_id=plan.id,
            status=status,
            start_date=start,
            end_date=add_months(start, plan.duration_months),
            stripe_customer_id=stripe_customer_id,
            stripe_subscription_id=stripe_subscription_id,
            stripe_checkout_session_id=stripe_checkout_session_id,
            membership_data=initial_membership_data(
                plan.family,
                credits=self._credit_grant(plan),
                now=now,
            ),
            created_at=now,
            updated_at=now,
        )
        stored = self.memberships.insert_membership(membership)
        logger.info(
            "Created membership %s for user %s on plan %s (%s)",
            stored.id,
            user_id,
            plan.id,
            stored.status.value,
        )
        self._log(AuditEventType.MEMBERSHIP_CREATED, stored, actor, status=stored.status.value)
        return stored

    def activate(self, membership_id: str, *, actor: Optional[str] = None) -> TransitionResult:
        """Move a pending membership to ``active``.

        Refuses when the user already holds another active membership, unless
        this membership replaces it, in which case the replaced one is
        cancelled with reason ``plan_changed``. Nothing is cancelled until the
        blocking check has passed.
        """

        return self._activate(membership_id, actor)[0]

    def _activate(
        self, membership_id: str, actor: Optional[str]
    ) -> Tuple[TransitionResult, List[TransitionResult]]:
        membership = self.get_membership(membership_id)
        if membership.status == MembershipStatus.ACTIVE:
            return TransitionResult(membership=membership, changed=False, previous_status=membership.status), []
        if membership.status == MembershipStatus.CANCELLED:
            raise InvalidTransitionError(
                "Cancelled memberships cannot be activated",
                detail={"membership_id": membership_id},
            )

        others = [
            item
            for item in self.memberships.list_for_user(membership.user_id, [MembershipStatus.ACTIVE])
            if item.id != membership.id
        ]
        blocking = [item for item in others if item.id != membership.replaces_membership_id]
        if blocking:
            raise ActiveMembershipExistsError(
                "User already holds an active membership",
                detail={"user_id": membership.user_id, "membership_id": blocking[0].id},
            )
        replaced_results = [
            self.cancel(
                replaced.id,
                CancellationReason.PLAN_CHANGED,
                actor=actor,
                cancel_provider=replaced.stripe_subscription_id != membership.stripe_subscription_id,
            )
            for replaced in others
        ]

        today = self._today()

        def mutate(current: Membership) -> Optional[Membership]:
            if current.status != MembershipStatus.PENDING_ACTIVATION:
                return None
            return current.model_copy(
                update={
                    "status": MembershipStatus.ACTIVE,
                    "start_date": min(current.start_date, today),
                    "membership_data": current.membership_data.model_copy(update={"awaiting_payment": False}),
                }
            )

        stored, changed = self._write(membership_id, mutate)
        if changed:
            logger.info("Activated membership %s for user %s", stored.id, stored.user_id)
            self._log(AuditEventType.MEMBERSHIP_ACTIVATED, stored, actor)
        result = TransitionResult(membership=stored, changed=changed, previous_status=membership.status)
        return result, replaced_results

    def activate_due(self, today: Optional[date] = None) -> BatchResult:
        """Activate every pending membership whose start date has been reached."""

        result = BatchResult()
        for membership in self.memberships.list_due_activation(today or self._today()):
            try:
                self.activate(membership.id, actor="scheduler")
            except EngineError as exc:
                logger.warning("Could not activate membership %s: %s", membership.id, exc.message)
                result.record_failure(membership.id, exc.message)
            else:
                result.record_success(membership.id)
        return result

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------
    def request_cancellation(self, membership_id: str, *, actor: Optional[str] = None) -> TransitionResult:
        """Member-initiated cancellation at the end of the paid period.

        The provider subscription is scheduled to end at period end and
        ``cancellation_requested_at`` is recorded; the status only changes
        once the provider reports the period end.
        """

        membership = self.get_membership(membership_id)
        if membership.status == MembershipStatus.CANCELLED:
            raise InvalidTransitionError(
                "Membership is already cancelled",
                detail={"membership_id": membership_id},
            )
        plan = self.get_plan(membership.plan_id)
        if not plan.cancellation_allowed:
            raise CancellationNotAllowedError(
                "Plan does not allow cancellation",
                detail={"membership_id": membership_id, "plan_id": plan.id},
            )
        if membership.cancellation_requested:
            raise CancellationAlreadyRequestedError(
                "Cancellation was already requested",
                detail={
                    "membership_id": membership_id,
                    "requested_at": membership.membership_data.cancellation_requested_at.isoformat(),
                },
            )

        if membership.stripe_subscription_id and self.provider is not None:
            self.provider.cancel_subscription(membership.stripe_subscription_id, at_period_end=True)

        requested_at = self._now()

        def mutate(current: Membership) -> Optional[Membership]:
            if current.cancellation_requested or current.status == MembershipStatus.CANCELLED:
                return None
            return current.model_copy(
                update={
                    "membership_data": current.membership_data.model_copy(
                        update={"cancellation_requested_at": requested_at}
                    )
                }
            )

        stored, changed = self._write(membership_id, mutate)
        if changed:
            self._log(
                AuditEventType.CANCELLATION_REQUESTED,
                stored,
                actor,
                subscription_id=stored.stripe_subscription_id,
                ends_on=stored.end_date,
            )
        return TransitionResult(membership=stored, changed=changed, previous_status=membership.status)

    def cancel(
        self,
        membership_id: str,
        reason: object,
        *,
        actor: Optional[str] = None,
        cancel_provider: bool = True,
    ) -> TransitionResult:
        """Immediately cancel a membership.

        Provider cancellation is best effort: a failure is reported on the
        result and never prevents the local transition. Cancelling a
        cancelled membership is a no-op.
        """

        reason_code = reason.value if isinstance(reason, CancellationReason) else str(reason)
        membership = self.get_membership(membership_id)
        if membership.status == MembershipStatus.CANCELLED:
            return TransitionResult(membership=membership, changed=False, previous_status=membership.status)

        provider_error: Optional[str] = None
        subscription_id = membership.stripe_subscription_id
        if cancel_provider and subscription_id and self.provider is not None:
            try:
                self.provider.cancel_subscription(subscription_id)
            except ProviderError as exc:
                logger.warning(
                    "Provider cancellation of subscription %s failed for membership %s: %s",
                    subscription_id,
                    membership_id,
                    exc.message,
                )
                provider_error = exc.message

        cancelled_at = self._now()
        today = cancelled_at.date()

        def mutate(current: Membership) -> Optional[Membership]:
            if current.status == MembershipStatus.CANCELLED:
                return None
            end_date = current.end_date
            if end_date is None or end_date > today:
                end_date = today
            return current.model_copy(
                update={
                    "status": MembershipStatus.CANCELLED,
                    "end_date": end_date,
                    "membership_data": current.membership_data.model_copy(
                        update={
                            "cancelled_reason": reason_code,
                            "cancelled_at": cancelled_at,
                            "awaiting_payment": False,
                        }
                    ),
                }
            )

        stored, changed = self._write(membership_id, mutate)
        if changed:
            logger.info("Cancelled membership %s (%s)", membership_id, reason_code)
            self._log(
                AuditEventType.MEMBERSHIP_CANCELLED,
                stored,
                actor,
                reason=reason_code,
                provider_error=provider_error,
            )
        return TransitionResult(
            membership=stored,
            changed=changed,
            previous_status=membership.status,
            provider_error=provider_error,
            provider_reference=subscription_id if provider_error else None,
        )

    # ------------------------------------------------------------------
    # Renewal
    # ------------------------------------------------------------------
    def renew(
        self,
        membership_id: str,
        *,
        period_end: Optional[date] = None,
        actor: Optional[str] = None,
    ) -> TransitionResult:
        """Extend ``end_date`` after a successful renewal payment.

        With ``period_end`` the new end date is taken from the provider and a
        replay is a no-op; otherwise the plan's duration is added.
        """

        membership = self.get_membership(membership_id)
        if membership.status == MembershipStatus.CANCELLED:
            raise InvalidTransitionError(
                "Cancelled memberships cannot be renewed",
                detail={"membership_id": membership_id},
            )
        plan = self.get_plan(membership.plan_id)
        today = self._today()

        def mutate(current: Membership) -> Optional[Membership]:
            if period_end is not None:
                if current.end_date is not None and current.end_date >= period_end:
                    return None
                new_end = period_end
            else:
                base = max(current.end_date or today, today)
                new_end = add_months(base, plan.duration_months)
            return current.model_copy(update={"end_date": new_end})

        stored, changed = self._write(membership_id, mutate)
        if changed:
            self._log(AuditEventType.MEMBERSHIP_RENEWED, stored, actor, end_date=stored.end_date)
        return TransitionResult(membership=stored, changed=changed, previous_status=membership.status)

    # ------------------------------------------------------------------
    # Plan changes
    # ------------------------------------------------------------------
    def start_plan_change(
        self,
        user_id: str,
        target_plan_id: str,
        kind: object,
        *,
        success_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> PlanChangeResult:
        """Create the pending membership for a plan change.

        The current membership stays active until the payment is confirmed
        through :meth:`confirm_plan_change`.
        """

        try:
            change_kind = PlanChangeKind(kind)
        except ValueError as exc:
            raise ValidationError(
                "Unknown plan change kind",
                detail={"kind": repr(kind), "allowed": [item.value for item in PlanChangeKind]},
            ) from exc

        current = self.active_membership(user_id)
        if current is None:
            raise MembershipNotFoundError("User has no active membership", detail={"user_id": user_id})
        target = self.get_plan(target_plan_id)
        if target.id == current.plan_id:
            raise ValidationError("User is already on this plan", detail={"plan_id": target.id})
        if not target.is_active:
            raise ValidationError("Plan is not available", detail={"plan_id": target.id})

        if change_kind == PlanChangeKind.CREDITS_TO_SUBSCRIPTION:
            current_plan = self.get_plan(current.plan_id)
            if current_plan.family != BookingRuleFamily.CREDITS:
                raise PlanNotCreditBasedError(
                    "Current plan is not credit based",
                    detail={"membership_id": current.id, "plan_id": current_plan.id},
                )
            if not target.is_recurring:
                raise PolicyMismatchError(
                    "Target plan is not a subscription",
                    detail={"plan_id": target.id},
                )

        superseded: List[str] = []
        for pending in self.memberships.list_for_user(user_id, [MembershipStatus.PENDING_ACTIVATION]):
            if pending.replaces_membership_id and pending.awaiting_payment:
                self.cancel(
                    pending.id,
                    CancellationReason.REPLACED_BY_NEW_PLAN_CHANGE,
                    actor=actor,
                    cancel_provider=False,
                )
                superseded.append(pending.id)

        now = self._now()
        today = now.date()
        membership = Membership(
            id=str(uuid4()),
            user_id=user_id,
            plan_id=target.id,
            status=MembershipStatus.PENDING_ACTIVATION,
            start_date=today,
            end_date=add_months(today, target.duration_months),
            stripe_customer_id=current.stripe_customer_id,
            replaces_membership_id=current.id,
            membership_data=initial_membership_data(
                target.family,
                credits=self._credit_grant(target),
                awaiting_payment=True,
                now=now,
            ),
            created_at=now,
            updated_at=now,
        )
        stored = self.memberships.insert_membership(membership)
        logger.info(
            "Started %s from membership %s to plan %s (pending %s)",
            change_kind.value,
            current.id,
            target.id,
            stored.id,
        )

        checkout = None
        if self.provider is not None and success_url and cancel_url:
            customer_id = self.provider.ensure_customer(user_id, current.stripe_customer_id)
            if customer_id != stored.stripe_customer_id:
                stored, _ = self._write(
                    stored.id,
                    lambda item: item.model_copy(update={"stripe_customer_id": customer_id}),
                )
            checkout = self.provider.create_checkout(
                target,
                customer_id=customer_id,
                success_url=success_url,
                cancel_url=cancel_url,
                metadata={
                    "purchase_type": change_kind.purchase_type,
                    "membership_id": stored.id,
                    "replaces_membership_id": current.id,
                    "user_id": user_id,
                    "plan_id": target.id,
                },
            )

        self._log(
            AuditEventType.PLAN_CHANGE_STARTED,
            stored,
            actor,
            kind=change_kind.value,
            replaces=current.id,
        )
        return PlanChangeResult(
            membership=stored,
            replaces_membership_id=current.id,
            superseded_ids=superseded,
            checkout=checkout,
        )

    def confirm_plan_change(
        self,
        new_membership_id: str,
        *,
        stripe_customer_id: Optional[str] = None,
        stripe_subscription_id: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> ConfirmationResult:
        """Activate a paid plan change and cancel the membership it replaces."""

        membership = self.get_membership(new_membership_id)
        if membership.status == MembershipStatus.CANCELLED:
            raise InvalidTransitionError(
                "Plan change membership was cancelled",
                detail={"membership_id": new_membership_id},
            )
        if membership.status == MembershipStatus.ACTIVE and not membership.awaiting_payment:
            return ConfirmationResult(membership=membership, changed=False)

        refs = {}
        if stripe_customer_id and stripe_customer_id != membership.stripe_customer_id:
            refs["stripe_customer_id"] = stripe_customer_id
        if stripe_subscription_id and stripe_subscription_id != membership.stripe_subscription_id:
            refs["stripe_subscription_id"] = stripe_subscription_id
        if refs:
            membership, _ = self._write(new_membership_id, lambda item: item.model_copy(update=refs))

        activation, cancelled = self._activate(new_membership_id, actor)
        replaced: Optional[TransitionResult] = next(
            (item for item in cancelled if item.membership.id == membership.replaces_membership_id),
            None,
        )
        if replaced is None and membership.replaces_membership_id:
            old = self.memberships.get_membership(membership.replaces_membership_id)
            if old is not None and old.status != MembershipStatus.CANCELLED:
                replaced = self.cancel(
                    old.id,
                    CancellationReason.PLAN_CHANGED,
                    actor=actor,
                    cancel_provider=old.stripe_subscription_id != membership.stripe_subscription_id,
                )
        if activation.changed:
            self._log(
                AuditEventType.PLAN_CHANGE_CONFIRMED,
                activation.membership,
                actor,
                replaced=membership.replaces_membership_id,
            )
        return ConfirmationResult(membership=activation.membership, changed=activation.changed, replaced=replaced)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    @staticmethod
    def _credit_grant(plan: MembershipPlan) -> int:
        rules = plan.resolved_rules()
        return rules.credits_per_purchase if isinstance(rules, CreditRules) else 0

    def _write(self, membership_id: str, mutate: Mutation) -> Tuple[Membership, bool]:
        """Versioned read-modify-write; ``mutate`` returns ``None`` for no-ops."""

        attempt = 0
        while True:
            attempt += 1
            current = self.get_membership(membership_id)
            candidate = mutate(current)
            if candidate is None:
                return current, False
            stored = self.memberships.update_membership(candidate, expected_version=current.version)
            if stored is not None:
                return stored, True
            if attempt > self.max_retries:
                raise ConcurrencyConflictError(
                    "Membership was modified concurrently",
                    detail={"membership_id": membership_id, "attempts": attempt},
                )
            logger.info("Version conflict on membership %s, retrying (attempt %s)", membership_id, attempt)

    def _log(self, event_type: AuditEventType, membership: Membership, actor: Optional[str], **metadata) -> None:
        if self.event_logger is None:
            return
        self.event_logger.log(
            AuditEvent(
                event_type=event_type,
                membership_id=membership.id,
                user_id=membership.user_id,
                plan_id=membership.plan_id,
                actor_id=actor,
                metadata=stringify(metadata),
            )
        )


__all__ = ["MembershipLifecycleManager", "add_months"]

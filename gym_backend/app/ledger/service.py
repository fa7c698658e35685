"""Credit ledger owning the per-membership credit balance."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import TYPE_CHECKING, Optional, Sequence, Tuple

from ..audit import AuditEvent, AuditEventLogger, AuditEventType, stringify
from ..booking_rules import BookingRuleFamily, CreditRules
from ..errors import (
    ConcurrencyConflictError,
    InsufficientCreditsError,
    MembershipNotFoundError,
    PlanNotCreditBasedError,
    ValidationError,
)
from ..memberships.data import CreditMembershipData, load_membership_data
from ..memberships.models import Membership, MembershipPlan, MembershipStatus
from .models import AdjustmentMode, AdjustmentResult, CreditAdjustment

if TYPE_CHECKING:  # pragma: no cover
    from ..memberships.repository import MembershipRepository, PlanRepository

logger = logging.getLogger("memberships.ledger")


def validate_amount(amount: object) -> int:
    """Reject anything that is not an integral number.

    Booleans are rejected explicitly because ``True`` is an ``int``.
    """

    if amount is None or isinstance(amount, bool):
        raise ValidationError("Credit amount must be a number", detail={"amount": repr(amount)})
    if isinstance(amount, int):
        return amount
    if isinstance(amount, float) and amount.is_integer():
        return int(amount)
    if isinstance(amount, Decimal) and amount.is_finite() and amount == amount.to_integral_value():
        return int(amount)
    raise ValidationError("Credit amount must be a whole number", detail={"amount": repr(amount)})


def validate_mode(mode: object) -> AdjustmentMode:
    try:
        return AdjustmentMode(mode)
    except ValueError as exc:
        raise ValidationError(
            "Unknown adjustment mode",
            detail={"mode": repr(mode), "allowed": [item.value for item in AdjustmentMode]},
        ) from exc


def compute_balance(previous: int, amount: int, mode: AdjustmentMode) -> Tuple[int, bool]:
    """Return ``(new_balance, clamped)`` for an adjustment."""

    if mode == AdjustmentMode.ADD:
        target = previous + amount
    elif mode == AdjustmentMode.SUBTRACT:
        target = previous - amount
    else:
        target = amount
    return max(0, target), target < 0


@dataclass
class CreditLedger:
    """Adds, subtracts and sets credits with optimistic concurrency."""

    memberships: "MembershipRepository"
    plans: "PlanRepository"
    event_logger: Optional[AuditEventLogger] = None
    max_retries: int = 3

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def adjust(
        self,
        membership_id: str,
        amount: object,
        mode: object,
        *,
        actor: Optional[str] = None,
        require_sufficient: bool = False,
        reason: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> AdjustmentResult:
        """Apply a credit adjustment and append it to the audit trail.

        The read-modify-write is retried when a concurrent writer bumped the
        membership version in between; after ``max_retries`` retries a
        :class:`ConcurrencyConflictError` is raised.

        With ``idempotency_key`` the adjustment is applied at most once per
        membership: the key is stored as the audit reason and a later call
        with the same key returns the recorded adjustment unchanged.
        """

        value = validate_amount(amount)
        adjustment_mode = validate_mode(mode)
        if adjustment_mode == AdjustmentMode.SUBTRACT and value < 0:
            raise ValidationError("Subtract amount must not be negative", detail={"amount": value})
        if idempotency_key is not None:
            reason = idempotency_key

        attempt = 0
        while True:
            attempt += 1
            membership = self._load(membership_id)
            if idempotency_key is not None:
                applied = self._applied(membership.id, idempotency_key)
                if applied is not None:
                    logger.info(
                        "Credit adjustment %s already applied to membership %s",
                        idempotency_key,
                        membership.id,
                    )
                    return AdjustmentResult(
                        membership_id=membership.id,
                        previous_balance=applied.previous_balance,
                        new_balance=applied.new_balance,
                        clamped=applied.clamped,
                        adjustment=applied,
                        attempts=attempt,
                        duplicate=True,
                    )
            previous = membership.remaining_credits
            new_balance, clamped = compute_balance(previous, value, adjustment_mode)
            if require_sufficient and adjustment_mode == AdjustmentMode.SUBTRACT and clamped:
                raise InsufficientCreditsError(
                    "Not enough credits remaining",
                    detail={"membership_id": membership_id, "balance": previous, "requested": value},
                )

            now = self._now()
            adjustment = CreditAdjustment(
                membership_id=membership.id,
                mode=adjustment_mode,
                requested_amount=value,
                delta=new_balance - previous,
                previous_balance=previous,
                new_balance=new_balance,
                clamped=clamped,
                actor=actor,
                reason=reason,
                occurred_at=now,
            )
            data_update = {"remaining_credits": new_balance, "last_credit_update": now}
            if new_balance > previous:
                data_update["credits_added_at"] = now
            candidate = membership.model_copy(
                update={"membership_data": membership.membership_data.model_copy(update=data_update)}
            )
            stored = self.memberships.apply_credit_adjustment(
                candidate,
                expected_version=membership.version,
                adjustment=adjustment,
            )
            if stored is not None:
                break
            if attempt > self.max_retries:
                logger.warning(
                    "Credit adjustment on membership %s lost %s version races",
                    membership_id,
                    attempt,
                )
                raise ConcurrencyConflictError(
                    "Membership was modified concurrently",
                    detail={"membership_id": membership_id, "attempts": attempt},
                )
            logger.info("Version conflict on membership %s, retrying (attempt %s)", membership_id, attempt)

        if clamped:
            logger.info(
                "Credit adjustment on membership %s clamped at zero (mode=%s requested=%s previous=%s)",
                membership_id,
                adjustment_mode.value,
                value,
                previous,
            )
        self._log(
            AuditEvent(
                event_type=AuditEventType.CREDITS_ADJUSTED,
                membership_id=membership.id,
                user_id=membership.user_id,
                plan_id=membership.plan_id,
                actor_id=actor,
                metadata=stringify(
                    {
                        "mode": adjustment_mode.value,
                        "requested": value,
                        "previous_balance": previous,
                        "new_balance": new_balance,
                        "clamped": clamped,
                        "reason": reason,
                    }
                ),
                occurred_at=now,
            )
        )
        return AdjustmentResult(
            membership_id=membership.id,
            previous_balance=previous,
            new_balance=new_balance,
            clamped=clamped,
            adjustment=adjustment,
            attempts=attempt,
        )

    def adjust_active(
        self,
        user_id: str,
        amount: object,
        mode: object,
        *,
        actor: Optional[str] = None,
        require_sufficient: bool = False,
        reason: Optional[str] = None,
    ) -> AdjustmentResult:
        """Adjust the balance of the user's active membership."""

        active = sorted(
            self.memberships.list_for_user(user_id, [MembershipStatus.ACTIVE]),
            key=lambda item: (item.start_date, item.created_at),
            reverse=True,
        )
        if not active:
            raise MembershipNotFoundError(
                "User has no active membership",
                detail={"user_id": user_id},
            )
        return self.adjust(
            active[0].id,
            amount,
            mode,
            actor=actor,
            require_sufficient=require_sufficient,
            reason=reason,
        )

    def grant_plan_credits(
        self,
        membership_id: str,
        *,
        actor: Optional[str] = None,
        reason: str = "credit_topup",
        idempotency_key: Optional[str] = None,
    ) -> AdjustmentResult:
        """Add the per-purchase credit grant of the membership's plan."""

        membership = self._get(membership_id)
        plan = self._credit_plan(membership)
        rules = plan.resolved_rules()
        grant = rules.credits_per_purchase if isinstance(rules, CreditRules) else 0
        return self.adjust(
            membership_id,
            grant,
            AdjustmentMode.ADD,
            actor=actor,
            reason=reason,
            idempotency_key=idempotency_key,
        )

    def balance(self, membership_id: str) -> int:
        return self._load(membership_id).remaining_credits

    def history(self, membership_id: str) -> Sequence[CreditAdjustment]:
        self._get(membership_id)
        return self.memberships.list_credit_adjustments(membership_id)

    def _get(self, membership_id: str) -> Membership:
        membership = self.memberships.get_membership(membership_id)
        if membership is None:
            raise MembershipNotFoundError(
                "Membership not found",
                detail={"membership_id": membership_id},
            )
        return membership

    def _applied(self, membership_id: str, key: str) -> Optional[CreditAdjustment]:
        for adjustment in self.memberships.list_credit_adjustments(membership_id):
            if adjustment.reason == key:
                return adjustment
        return None

    def _credit_plan(self, membership: Membership) -> MembershipPlan:
        plan = self.plans.get_plan(membership.plan_id)
        if plan is None or plan.family != BookingRuleFamily.CREDITS:
            raise PlanNotCreditBasedError(
                "Membership plan is not credit based",
                detail={"membership_id": membership.id, "plan_id": membership.plan_id},
            )
        return plan

    def _load(self, membership_id: str) -> Membership:
        membership = self._get(membership_id)
        self._credit_plan(membership)
        if not isinstance(membership.membership_data, CreditMembershipData):
            migrated = load_membership_data(
                membership.membership_data.model_dump(),
                BookingRuleFamily.CREDITS,
            )
            membership = membership.model_copy(update={"membership_data": migrated})
        return membership

    def _log(self, event: AuditEvent) -> None:
        if self.event_logger is not None:
            self.event_logger.log(event)


__all__ = ["CreditLedger", "compute_balance", "validate_amount", "validate_mode"]

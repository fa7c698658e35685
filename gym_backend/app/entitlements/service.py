"""Entitlement queries answering whether a member may book a resource."""
from __future__ import annotations

import logging
from datetime import date, datetime, timezone, tzinfo
from typing import Callable, Optional, Union
from zoneinfo import ZoneInfo

from ..booking_rules import (
    BookingRuleFamily,
    DecisionReason,
    LimitedRules,
    ResourceKind,
    evaluate,
    local_date,
    usage_window,
)
from ..errors import ValidationError
from ..ledger import AdjustmentMode, CreditLedger
from ..memberships.models import Membership, MembershipStatus
from ..memberships.repository import BookingUsageRepository, MembershipRepository, PlanRepository
from .models import BookingDecision, CheckInResult

logger = logging.getLogger("memberships.entitlements")

When = Union[date, datetime, None]


class EntitlementService:
    """Read-only façade over memberships, plans and booking usage.

    Only :meth:`check_in_open_gym` writes: credit debits go through the
    ledger and limited-plan visits through the usage repository.
    """

    def __init__(
        self,
        memberships: MembershipRepository,
        plans: PlanRepository,
        usage: BookingUsageRepository,
        ledger: CreditLedger,
        *,
        gym_timezone: Union[str, tzinfo] = "Europe/Berlin",
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._memberships = memberships
        self._plans = plans
        self._usage = usage
        self._ledger = ledger
        self._tz = ZoneInfo(gym_timezone) if isinstance(gym_timezone, str) else gym_timezone
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def can_book(
        self,
        user_id: str,
        resource: Union[ResourceKind, str] = ResourceKind.COURSE,
        on: When = None,
    ) -> BookingDecision:
        """Evaluate the user's active membership for ``resource`` on ``on``.

        ``on`` may be a future date for booking previews; date-only values
        are interpreted in the gym's timezone.
        """

        try:
            kind = ResourceKind(resource)
        except ValueError as exc:
            raise ValidationError(
                "Unknown resource kind",
                detail={"resource": repr(resource), "allowed": [item.value for item in ResourceKind]},
            ) from exc

        moment: Union[date, datetime] = on if on is not None else self._clock()
        day = local_date(moment, self._tz)

        membership = self._active_membership(user_id)
        if membership is None:
            return BookingDecision(allowed=False, reason=DecisionReason.NO_MEMBERSHIP, resource=kind)

        if membership.end_date is not None and membership.end_date < day:
            return BookingDecision(
                allowed=False,
                reason=DecisionReason.MEMBERSHIP_EXPIRED,
                resource=kind,
                membership_id=membership.id,
                plan_id=membership.plan_id,
            )

        plan = self._plans.get_plan(membership.plan_id)
        if plan is None:
            logger.warning("Membership %s references missing plan %s", membership.id, membership.plan_id)
            return BookingDecision(
                allowed=False,
                reason=DecisionReason.NO_ENTITLEMENT,
                resource=kind,
                membership_id=membership.id,
                plan_id=membership.plan_id,
            )

        rules = plan.resolved_rules()
        used = 0
        window = None
        period_limit = None
        if isinstance(rules, LimitedRules) and kind == ResourceKind.COURSE:
            window = usage_window(rules.limit.period, moment, self._tz)
            used = self._usage.count_bookings(user_id, start=window.start, end=window.end)
            period_limit = rules.limit.count

        evaluation = evaluate(rules, used, membership.remaining_credits, kind)
        return BookingDecision(
            allowed=evaluation.allowed,
            reason=evaluation.reason,
            resource=kind,
            remaining=evaluation.remaining,
            family=evaluation.family,
            used_in_period=used if window is not None else None,
            period_limit=period_limit,
            period_start=window.start if window is not None else None,
            period_end=window.end if window is not None else None,
            membership_id=membership.id,
            plan_id=plan.id,
        )

    def check_in_open_gym(
        self,
        user_id: str,
        at: When = None,
        *,
        actor: Optional[str] = None,
    ) -> CheckInResult:
        """Admit a member to open gym.

        Credit plans are debited one credit per check-in. Limited plans record
        the visit as a free training session, at most once per local day.
        """

        decision = self.can_book(user_id, ResourceKind.OPEN_GYM, at)
        if not decision.allowed:
            logger.info("Open gym check-in denied for user %s: %s", user_id, decision.reason.value)
            return CheckInResult(decision=decision)
        if decision.family == BookingRuleFamily.LIMITED:
            day = local_date(at if at is not None else self._clock(), self._tz)
            recorded = self._usage.record_open_gym_visit(user_id, day)
            if not recorded:
                logger.info("Open gym visit of user %s on %s was already recorded", user_id, day)
            return CheckInResult(decision=decision, visit_recorded=recorded)
        if decision.family != BookingRuleFamily.CREDITS:
            return CheckInResult(decision=decision)

        result = self._ledger.adjust(
            decision.membership_id,
            1,
            AdjustmentMode.SUBTRACT,
            actor=actor or user_id,
            require_sufficient=True,
            reason="open_gym_check_in",
        )
        return CheckInResult(
            decision=decision.model_copy(update={"remaining": result.new_balance}),
            debited=True,
            credits_remaining=result.new_balance,
        )

    def _active_membership(self, user_id: str) -> Optional[Membership]:
        active = list(self._memberships.list_for_user(user_id, [MembershipStatus.ACTIVE]))
        if not active:
            return None
        if len(active) > 1:
            logger.warning(
                "User %s holds %s active memberships, evaluating the latest start",
                user_id,
                len(active),
            )
        return max(active, key=lambda item: (item.start_date, item.created_at))


__all__ = ["EntitlementService"]

"""Pure evaluation of booking-rule policies against usage data."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional

from .models import (
    BookingRuleFamily,
    BookingRules,
    CreditRules,
    LimitedRules,
    LimitPeriod,
    OpenGymOnlyRules,
    PeriodLimit,
    ResourceKind,
    UnlimitedRules,
    parse_booking_rules,
)

logger = logging.getLogger("memberships.booking_rules")


class DecisionReason(str, Enum):
    """Machine readable reason attached to every booking decision."""

    ALLOWED = "Allowed"
    NO_MEMBERSHIP = "NoMembership"
    NO_ENTITLEMENT = "NoEntitlement"
    PERIOD_LIMIT_REACHED = "PeriodLimitReached"
    NO_CREDITS_REMAINING = "NoCreditsRemaining"
    OPEN_GYM_ONLY = "OpenGymOnly"
    MEMBERSHIP_EXPIRED = "MembershipExpired"


@dataclass(frozen=True)
class Evaluation:
    allowed: bool
    remaining: Optional[int]
    reason: DecisionReason
    family: Optional[BookingRuleFamily] = None


def _legacy_limited(period: LimitPeriod) -> Callable[[Optional[int]], BookingRules]:
    def build(limit: Optional[int]) -> BookingRules:
        return LimitedRules(limit=PeriodLimit(count=max(0, limit or 0), period=period))

    return build


# Fixed mapping from v1 booking_type strings to policy variants.
LEGACY_BOOKING_TYPES: Dict[str, Callable[[Optional[int]], BookingRules]] = {
    "unlimited": lambda _limit: UnlimitedRules(),
    "limited": _legacy_limited(LimitPeriod.MONTH),
    "monthly_limit": _legacy_limited(LimitPeriod.MONTH),
    "weekly_limit": _legacy_limited(LimitPeriod.WEEK),
    "credits": lambda _limit: CreditRules(),
    "open_gym_only": lambda _limit: OpenGymOnlyRules(),
}


def resolve_booking_rules(
    structured: object,
    legacy_booking_type: Optional[str] = None,
    legacy_booking_limit: Optional[int] = None,
) -> Optional[BookingRules]:
    """Pick the authoritative policy for a plan.

    Structured rules always win. The legacy string is only consulted when no
    structured rules exist; unknown legacy codes resolve to ``None`` so the
    caller denies instead of granting unlimited access.
    """

    if structured is not None:
        return parse_booking_rules(structured)
    if not legacy_booking_type:
        return None
    builder = LEGACY_BOOKING_TYPES.get(legacy_booking_type.strip().lower())
    if builder is None:
        logger.warning("Unknown legacy booking type %r, denying by default", legacy_booking_type)
        return None
    return builder(legacy_booking_limit)


def evaluate(
    rules: Optional[BookingRules],
    usage_count: int,
    credit_balance: int,
    resource: ResourceKind = ResourceKind.COURSE,
) -> Evaluation:
    """Decide whether a resource may be consumed under ``rules``."""

    if rules is None:
        return Evaluation(allowed=False, remaining=None, reason=DecisionReason.NO_ENTITLEMENT)
    rules = parse_booking_rules(rules)

    if isinstance(rules, UnlimitedRules):
        return Evaluation(
            allowed=True,
            remaining=None,
            reason=DecisionReason.ALLOWED,
            family=rules.family,
        )

    if isinstance(rules, OpenGymOnlyRules):
        allowed = resource == ResourceKind.OPEN_GYM
        return Evaluation(
            allowed=allowed,
            remaining=None,
            reason=DecisionReason.ALLOWED if allowed else DecisionReason.OPEN_GYM_ONLY,
            family=rules.family,
        )

    if isinstance(rules, LimitedRules):
        remaining = max(0, rules.limit.count - usage_count)
        allowed = usage_count < rules.limit.count
        return Evaluation(
            allowed=allowed,
            remaining=remaining,
            reason=DecisionReason.ALLOWED if allowed else DecisionReason.PERIOD_LIMIT_REACHED,
            family=rules.family,
        )

    if isinstance(rules, CreditRules):
        balance = max(0, credit_balance)
        allowed = balance > 0
        return Evaluation(
            allowed=allowed,
            remaining=balance,
            reason=DecisionReason.ALLOWED if allowed else DecisionReason.NO_CREDITS_REMAINING,
            family=rules.family,
        )

    raise AssertionError(f"unhandled booking rules variant: {rules!r}")

"""Booking-rule policies and their pure evaluation."""

from .evaluator import (
    LEGACY_BOOKING_TYPES,
    DecisionReason,
    Evaluation,
    evaluate,
    resolve_booking_rules,
)
from .models import (
    BookingRuleFamily,
    BookingRules,
    CreditGrant,
    CreditRules,
    LimitedRules,
    LimitPeriod,
    OpenGymOnlyRules,
    PeriodLimit,
    ResourceKind,
    UnlimitedRules,
    dump_booking_rules,
    parse_booking_rules,
)
from .usage_window import UsageWindow, local_date, usage_window

__all__ = [
    "LEGACY_BOOKING_TYPES",
    "BookingRuleFamily",
    "BookingRules",
    "CreditGrant",
    "CreditRules",
    "DecisionReason",
    "Evaluation",
    "LimitedRules",
    "LimitPeriod",
    "OpenGymOnlyRules",
    "PeriodLimit",
    "ResourceKind",
    "UnlimitedRules",
    "UsageWindow",
    "dump_booking_rules",
    "evaluate",
    "local_date",
    "parse_booking_rules",
    "resolve_booking_rules",
    "usage_window",
]

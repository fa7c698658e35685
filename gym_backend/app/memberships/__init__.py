"""Membership plans, memberships and their persistence contracts."""

from .data import (
    CreditMembershipData,
    MembershipData,
    StandardMembershipData,
    dump_membership_data,
    initial_membership_data,
    load_membership_data,
)
from .models import (
    DEFAULT_PLAN_COLOR,
    LIVE_STATUSES,
    CancellationReason,
    Membership,
    MembershipPlan,
    MembershipStatus,
    PaymentFrequency,
)
from .repository import BookingUsageRepository, MembershipRepository, PlanRepository

__all__ = [
    "DEFAULT_PLAN_COLOR",
    "LIVE_STATUSES",
    "BookingUsageRepository",
    "CancellationReason",
    "CreditMembershipData",
    "Membership",
    "MembershipData",
    "MembershipPlan",
    "MembershipRepository",
    "MembershipStatus",
    "PaymentFrequency",
    "PlanRepository",
    "StandardMembershipData",
    "dump_membership_data",
    "initial_membership_data",
    "load_membership_data",
]

"""Membership status transitions and plan changes."""

from .models import ConfirmationResult, PlanChangeKind, PlanChangeResult, TransitionResult
from .service import MembershipLifecycleManager, add_months

__all__ = [
    "ConfirmationResult",
    "MembershipLifecycleManager",
    "PlanChangeKind",
    "PlanChangeResult",
    "TransitionResult",
    "add_months",
]

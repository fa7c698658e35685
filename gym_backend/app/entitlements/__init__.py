"""Entitlement queries and the plan cache backing them."""

from .cache import ALL_PLANS_TAG, CachedPlanRepository, InMemoryPlanCache, PlanCache, plan_tag
from .models import BookingDecision, CheckInResult
from .service import EntitlementService

__all__ = [
    "ALL_PLANS_TAG",
    "BookingDecision",
    "CachedPlanRepository",
    "CheckInResult",
    "EntitlementService",
    "InMemoryPlanCache",
    "PlanCache",
    "plan_tag",
]

"""Plan catalog administration."""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional, Sequence, Tuple

from ..audit import PlanCacheInvalidator
from ..cascade.models import CascadeResult
from ..cascade.service import CascadeService
from ..errors import BookingRuleFamilyChangeError, PlanNotFoundError, ProviderError
from ..memberships.models import LIVE_STATUSES, MembershipPlan
from ..memberships.repository import MembershipRepository, PlanRepository
from ..provider_sync.commands import ProviderCommands
from ..provider_sync.models import PricingSyncResult
from .models import PlanDraft, PlanUpdate, PlanWriteResult

logger = logging.getLogger("memberships.plans")

_PRODUCT_FIELDS = {"name", "description", "payment_frequency", "duration_months"}


@dataclass
class PlanService:
    """Creates and edits plans while keeping provider state and caches in line.

    Plan rows are committed first. Provider failures afterwards are reported
    as warnings on the result and leave the stored plan untouched.
    """

    plans: PlanRepository
    memberships: MembershipRepository
    commands: Optional[ProviderCommands] = None
    cascade: Optional[CascadeService] = None
    invalidator: Optional[PlanCacheInvalidator] = None

    def list_plans(self, *, active_only: bool = False) -> Sequence[MembershipPlan]:
        return self.plans.list_plans(active_only=active_only)

    def get_plan(self, plan_id: str) -> MembershipPlan:
        plan = self.plans.get_plan(plan_id)
        if plan is None:
            raise PlanNotFoundError("Plan not found", detail={"plan_id": plan_id})
        return plan

    def create_plan(self, draft: PlanDraft, *, actor: Optional[str] = None) -> PlanWriteResult:
        plan = MembershipPlan(id=str(uuid.uuid4()), **draft.model_dump())
        stored = self.plans.save_plan(plan)
        logger.info("Created plan %s (%s, %s)", stored.id, stored.name, stored.family.value)
        pricing, warnings = self._sync(stored.id, None, actor)
        if pricing is not None:
            stored = self.get_plan(stored.id)
        return PlanWriteResult(plan=stored, pricing=pricing, warnings=warnings)

    def update_plan(
        self,
        plan_id: str,
        changes: PlanUpdate,
        *,
        actor: Optional[str] = None,
    ) -> PlanWriteResult:
        current = self.get_plan(plan_id)
        update = changes.model_dump(exclude_unset=True)
        for key in [key for key, value in update.items() if value is None and key != "description"]:
            del update[key]

        if "booking_rules" in update:
            new_rules = changes.booking_rules
            previous_family = current.family
            if previous_family is not None and new_rules.family != previous_family:
                live = list(self.memberships.list_for_plan(plan_id, LIVE_STATUSES))
                if live:
                    raise BookingRuleFamilyChangeError(
                        "Booking-rule family cannot change while the plan has live memberships",
                        detail={
                            "plan_id": plan_id,
                            "from": previous_family.value,
                            "to": new_rules.family.value,
                            "live_memberships": len(live),
                        },
                    )
            update["booking_rules"] = new_rules

        if not update:
            return PlanWriteResult(plan=current)

        update["updated_at"] = datetime.now(timezone.utc)
        stored = self.plans.save_plan(current.model_copy(update=update))
        if self.invalidator is not None:
            self.invalidator.invalidate_plan(plan_id)

        previous_price: Optional[Decimal] = None
        if "price" in update and current.price != stored.price:
            previous_price = current.price
        needs_sync = previous_price is not None or bool(_PRODUCT_FIELDS.intersection(update))
        logger.info("Updated plan %s fields=%s", plan_id, sorted(update))
        if not needs_sync:
            return PlanWriteResult(plan=stored)

        pricing, warnings = self._sync(plan_id, previous_price, actor)
        if pricing is not None:
            stored = self.get_plan(plan_id)
        return PlanWriteResult(plan=stored, pricing=pricing, warnings=warnings)

    def delete_plan(self, plan_id: str, *, actor: Optional[str] = None) -> CascadeResult:
        if self.cascade is None:
            raise RuntimeError("Plan deletion requires a cascade service")
        return self.cascade.delete_plan(plan_id, actor=actor)

    def _sync(
        self,
        plan_id: str,
        previous_price: Optional[Decimal],
        actor: Optional[str],
    ) -> Tuple[Optional[PricingSyncResult], List[str]]:
        if self.commands is None:
            return None, []
        try:
            pricing = self.commands.sync_plan_pricing(plan_id, previous_price, actor=actor)
        except ProviderError as exc:
            logger.warning("Provider sync failed for plan %s: %s", plan_id, exc.message)
            return None, [f"provider_sync_failed:{exc.message}"]
        return pricing, list(pricing.warnings)


__all__ = ["PlanService"]

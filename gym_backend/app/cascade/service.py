"""Plan and member deletion cascades."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from ..audit import (
    AuditEvent,
    AuditEventLogger,
    AuditEventType,
    PlanCacheInvalidator,
    stringify,
)
from ..errors import EngineError, MemberNotFoundError, PlanNotFoundError, ProviderError
from ..lifecycle.service import MembershipLifecycleManager
from ..memberships.models import LIVE_STATUSES, CancellationReason, Membership
from ..memberships.repository import MembershipRepository, PlanRepository
from ..provider_sync.commands import ProviderCommands
from .models import CascadeResult
from .repository import IdentityProvider, MemberDirectory

logger = logging.getLogger("memberships.cascade")


@dataclass
class CascadeService:
    """Deletes plans and members, provider side first and local rows last.

    Memberships are processed one at a time; each membership's provider
    cancellation runs before its local status update.
    """

    plans: PlanRepository
    memberships: MembershipRepository
    lifecycle: MembershipLifecycleManager
    directory: MemberDirectory
    provider: Optional[ProviderCommands] = None
    identity: Optional[IdentityProvider] = None
    invalidator: Optional[PlanCacheInvalidator] = None
    event_logger: Optional[AuditEventLogger] = None

    def delete_plan(self, plan_id: str, *, actor: Optional[str] = None) -> CascadeResult:
        plan = self.plans.get_plan(plan_id)
        if plan is None:
            raise PlanNotFoundError("Plan not found", detail={"plan_id": plan_id})

        live = list(self.memberships.list_for_plan(plan_id, LIVE_STATUSES))
        result = CascadeResult(target_id=plan_id, affected_count=len(live))

        for membership in live:
            provider_ok = self._cancel_subscription(membership, result)
            try:
                transition = self.lifecycle.cancel(
                    membership.id,
                    CancellationReason.PLAN_DELETED,
                    actor=actor,
                    cancel_provider=False,
                )
            except EngineError as exc:
                logger.error("Could not cancel membership %s of plan %s: %s", membership.id, plan_id, exc.message)
                result.add_error("cancel_membership", membership.id, exc.message)
                continue
            if provider_ok and transition.membership.is_cancelled:
                result.cancelled_count += 1

        if self.provider is not None:
            try:
                self.provider.archive_product(plan)
            except ProviderError as exc:
                logger.warning("Could not archive product %s of plan %s: %s", plan.stripe_product_id, plan_id, exc.message)
                result.add_error("archive_product", plan_id, exc.message, reference=plan.stripe_product_id)

        primary_ok = True
        try:
            primary_ok = self.plans.delete_plan(plan_id)
        except EngineError as exc:
            logger.error("Could not delete plan %s: %s", plan_id, exc.message)
            result.add_error("delete_plan", plan_id, exc.message)
            primary_ok = False

        if self.invalidator is not None:
            self.invalidator.invalidate_plan(plan_id)
        result.finish(primary_ok=primary_ok)
        logger.info(
            "Deleted plan %s: outcome=%s affected=%s cancelled=%s errors=%s",
            plan_id,
            result.outcome.value,
            result.affected_count,
            result.cancelled_count,
            len(result.errors),
        )
        self._log(AuditEventType.PLAN_DELETED, result, actor, plan_id=plan_id)
        return result

    def delete_member(self, user_id: str, *, actor: Optional[str] = None) -> CascadeResult:
        memberships = list(self.memberships.list_for_user(user_id))
        has_profile = self.directory.profile_exists(user_id)
        if not memberships and not has_profile:
            raise MemberNotFoundError("Member not found", detail={"user_id": user_id})

        result = CascadeResult(target_id=user_id, affected_count=len(memberships))
        for membership in memberships:
            if membership.status not in LIVE_STATUSES:
                continue
            if self._cancel_subscription(membership, result):
                result.cancelled_count += 1

        for step, action in (
            ("delete_memberships", lambda: self.memberships.delete_for_user(user_id)),
            ("delete_role_grants", lambda: self.directory.delete_role_grants(user_id)),
            ("delete_derived_stats", lambda: self.directory.delete_derived_stats(user_id)),
        ):
            try:
                action()
            except EngineError as exc:
                logger.error("Member cascade step %s failed for user %s: %s", step, user_id, exc.message)
                result.add_error(step, user_id, exc.message)

        try:
            primary_ok = self.directory.delete_profile(user_id) or not has_profile
        except EngineError as exc:
            logger.error("Could not delete profile of user %s: %s", user_id, exc.message)
            result.add_error("delete_profile", user_id, exc.message)
            primary_ok = False

        if primary_ok and self.identity is not None:
            try:
                self.identity.delete_user(user_id)
            except EngineError as exc:
                logger.warning("Could not delete identity record of user %s: %s", user_id, exc.message)
                result.add_error("delete_identity", user_id, exc.message)

        result.finish(primary_ok=primary_ok)
        logger.info(
            "Deleted member %s: outcome=%s memberships=%s cancelled=%s errors=%s",
            user_id,
            result.outcome.value,
            result.affected_count,
            result.cancelled_count,
            len(result.errors),
        )
        self._log(AuditEventType.MEMBER_DELETED, result, actor, user_id=user_id)
        return result

    def _cancel_subscription(self, membership: Membership, result: CascadeResult) -> bool:
        """Best-effort provider cancellation; failures are recorded on ``result``."""

        subscription_id = membership.stripe_subscription_id
        if not subscription_id or self.provider is None:
            return True
        try:
            self.provider.cancel_subscription(subscription_id)
        except ProviderError as exc:
            logger.warning(
                "Failed to cancel subscription %s of membership %s: %s",
                subscription_id,
                membership.id,
                exc.message,
            )
            result.add_error("cancel_subscription", membership.id, exc.message, reference=subscription_id)
            return False
        return True

    def _log(
        self,
        event_type: AuditEventType,
        result: CascadeResult,
        actor: Optional[str],
        *,
        plan_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> None:
        if self.event_logger is None:
            return
        self.event_logger.log(
            AuditEvent(
                event_type=event_type,
                plan_id=plan_id,
                user_id=user_id,
                actor_id=actor,
                metadata=stringify(
                    {
                        "outcome": result.outcome.value,
                        "affected_count": result.affected_count,
                        "cancelled_count": result.cancelled_count,
                        "errors": len(result.errors),
                    }
                ),
            )
        )


__all__ = ["CascadeService"]

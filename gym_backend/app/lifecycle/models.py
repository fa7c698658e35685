"""Result types returned by the membership lifecycle manager."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional

from ..memberships.models import Membership, MembershipStatus


class PlanChangeKind(str, Enum):
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"
    CREDITS_TO_SUBSCRIPTION = "credits_to_subscription"

    @property
    def purchase_type(self) -> str:
        """Checkout ``purchase_type`` metadata for this kind of change."""

        if self == PlanChangeKind.UPGRADE:
            return "membership_upgrade"
        if self == PlanChangeKind.CREDITS_TO_SUBSCRIPTION:
            return "credits_to_subscription"
        return "plan_change"


@dataclass(frozen=True)
class TransitionResult:
    membership: Membership
    changed: bool
    previous_status: Optional[MembershipStatus] = None
    provider_error: Optional[str] = None
    provider_reference: Optional[str] = None


@dataclass(frozen=True)
class PlanChangeResult:
    """A pending plan-change membership awaiting payment confirmation."""

    membership: Membership
    replaces_membership_id: str
    superseded_ids: List[str] = field(default_factory=list)
    checkout: Optional[Any] = None


@dataclass(frozen=True)
class ConfirmationResult:
    membership: Membership
    changed: bool
    replaced: Optional[TransitionResult] = None


__all__ = ["ConfirmationResult", "PlanChangeKind", "PlanChangeResult", "TransitionResult"]

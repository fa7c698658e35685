"""Typed per-membership state stored in the ``membership_data`` column."""
from __future__ import annotations

import logging
import math
from datetime import datetime
from typing import Any, Literal, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from ..booking_rules import BookingRuleFamily

logger = logging.getLogger("memberships.data")


class MembershipDataBase(BaseModel):
    cancellation_requested_at: Optional[datetime] = None
    cancelled_reason: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    awaiting_payment: bool = False

    model_config = ConfigDict(frozen=True, extra="ignore")


class CreditMembershipData(MembershipDataBase):
    """State of a membership on a credit plan."""

    family: Literal["credits"] = "credits"
    remaining_credits: int = Field(default=0, ge=0)
    last_credit_update: Optional[datetime] = None
    credits_added_at: Optional[datetime] = None


class StandardMembershipData(MembershipDataBase):
    """State of a membership on a non-credit plan."""

    family: Optional[Literal["unlimited", "limited", "open_gym_only"]] = None


MembershipData = Union[CreditMembershipData, StandardMembershipData]

_KNOWN_KEYS = set(CreditMembershipData.model_fields) | set(StandardMembershipData.model_fields)


def _coerce_credits(value: Any) -> int:
    """Best-effort conversion of legacy credit values to a non-negative int."""

    if value is None or isinstance(value, bool):
        return 0
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return 0
        try:
            value = float(value)
        except ValueError:
            logger.warning("Discarding unparseable credit balance %r", value)
            return 0
    if isinstance(value, (int, float)):
        if isinstance(value, float) and not math.isfinite(value):
            return 0
        return max(0, int(value))
    logger.warning("Discarding credit balance of unexpected type %s", type(value).__name__)
    return 0


def load_membership_data(
    raw: Optional[Mapping[str, Any]],
    family: Optional[BookingRuleFamily],
) -> MembershipData:
    """Migrate stored JSON into the variant matching the plan's family.

    Older rows carry free-form keys, string credit counts or no family tag at
    all. Unknown keys are dropped; the plan family decides the variant.
    """

    payload = dict(raw or {})
    unknown = set(payload) - _KNOWN_KEYS
    if unknown:
        logger.debug("Dropping unknown membership_data keys: %s", sorted(unknown))

    stored_family = payload.pop("family", None)
    if family is None and stored_family:
        try:
            family = BookingRuleFamily(stored_family)
        except ValueError:
            family = None

    if family == BookingRuleFamily.CREDITS:
        payload["remaining_credits"] = _coerce_credits(payload.get("remaining_credits"))
        return CreditMembershipData.model_validate(payload)

    payload.pop("remaining_credits", None)
    payload.pop("last_credit_update", None)
    payload.pop("credits_added_at", None)
    return StandardMembershipData.model_validate(
        {**payload, "family": family.value if family is not None else None}
    )


def initial_membership_data(
    family: Optional[BookingRuleFamily],
    *,
    credits: int = 0,
    awaiting_payment: bool = False,
    now: Optional[datetime] = None,
) -> MembershipData:
    """State for a freshly created membership."""

    if family == BookingRuleFamily.CREDITS:
        return CreditMembershipData(
            remaining_credits=max(0, credits),
            last_credit_update=now if credits else None,
            credits_added_at=now if credits else None,
            awaiting_payment=awaiting_payment,
        )
    return StandardMembershipData(
        family=family.value if family is not None else None,
        awaiting_payment=awaiting_payment,
    )


def dump_membership_data(data: MembershipData) -> dict:
    return data.model_dump(mode="json", exclude_none=True)


__all__ = [
    "CreditMembershipData",
    "MembershipData",
    "MembershipDataBase",
    "StandardMembershipData",
    "dump_membership_data",
    "initial_membership_data",
    "load_membership_data",
]

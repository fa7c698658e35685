"""Booking-rule policy models attached to membership plans."""
from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Literal, Mapping, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from ..errors import BookingRulesConfigurationError


class BookingRuleFamily(str, Enum):
    """Categorical entitlement policy families."""

    UNLIMITED = "unlimited"
    LIMITED = "limited"
    CREDITS = "credits"
    OPEN_GYM_ONLY = "open_gym_only"


class LimitPeriod(str, Enum):
    """Calendar periods over which a limited policy counts consumption."""

    WEEK = "week"
    MONTH = "month"


class ResourceKind(str, Enum):
    """Billable resources a member can consume."""

    COURSE = "course"
    OPEN_GYM = "open_gym"


class PeriodLimit(BaseModel):
    count: int = Field(ge=0)
    period: LimitPeriod = LimitPeriod.MONTH

    model_config = ConfigDict(frozen=True)


class CreditGrant(BaseModel):
    """Number of credits granted with each purchase of a credit plan."""

    count: int = Field(default=0, ge=0)

    model_config = ConfigDict(frozen=True)


class UnlimitedRules(BaseModel):
    type: Literal["unlimited"] = "unlimited"

    model_config = ConfigDict(frozen=True)

    @property
    def family(self) -> BookingRuleFamily:
        return BookingRuleFamily.UNLIMITED


class LimitedRules(BaseModel):
    type: Literal["limited"] = "limited"
    limit: PeriodLimit

    model_config = ConfigDict(frozen=True)

    @property
    def family(self) -> BookingRuleFamily:
        return BookingRuleFamily.LIMITED


class CreditRules(BaseModel):
    type: Literal["credits"] = "credits"
    limit: CreditGrant = Field(default_factory=CreditGrant)

    model_config = ConfigDict(frozen=True)

    @property
    def family(self) -> BookingRuleFamily:
        return BookingRuleFamily.CREDITS

    @property
    def credits_per_purchase(self) -> int:
        return self.limit.count


class OpenGymOnlyRules(BaseModel):
    type: Literal["open_gym_only"] = "open_gym_only"

    model_config = ConfigDict(frozen=True)

    @property
    def family(self) -> BookingRuleFamily:
        return BookingRuleFamily.OPEN_GYM_ONLY


BookingRules = Annotated[
    Union[UnlimitedRules, LimitedRules, CreditRules, OpenGymOnlyRules],
    Field(discriminator="type"),
]

_BOOKING_RULES_ADAPTER: TypeAdapter[Any] = TypeAdapter(BookingRules)


def parse_booking_rules(raw: object) -> BookingRules:
    """Validate stored booking-rule data into one of the policy variants.

    Raises :class:`BookingRulesConfigurationError` when the payload does not
    describe a known policy, so malformed plans are reported as configuration
    problems instead of booking denials.
    """

    if isinstance(raw, (UnlimitedRules, LimitedRules, CreditRules, OpenGymOnlyRules)):
        return raw
    if not isinstance(raw, Mapping):
        raise BookingRulesConfigurationError(
            "booking_rules must be an object",
            detail={"booking_rules": repr(raw)},
        )
    try:
        return _BOOKING_RULES_ADAPTER.validate_python(dict(raw))
    except PydanticValidationError as exc:
        raise BookingRulesConfigurationError(
            "booking_rules could not be parsed",
            detail={"booking_rules": dict(raw), "errors": exc.errors(include_url=False)},
        ) from exc


def dump_booking_rules(rules: BookingRules) -> dict:
    return rules.model_dump(mode="json")

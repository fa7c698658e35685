"""Error taxonomy shared by the membership engine services."""
from __future__ import annotations

from typing import Any, Dict, Mapping, Optional

from fastapi import HTTPException, status


class EngineError(Exception):
    """Base class for actionable engine failures surfaced to callers."""

    code = "engine_error"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        detail: Optional[Mapping[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.detail: Dict[str, Any] = dict(detail or {})

    @property
    def payload(self) -> Mapping[str, Any]:
        """Serialized representation suitable for JSON responses."""

        base: Dict[str, Any] = {"error": self.code, "message": self.message}
        base.update(self.detail)
        return base

    def to_http_exception(self) -> HTTPException:
        """Convert the domain error into a FastAPI HTTPException."""

        return HTTPException(status_code=self.status_code, detail=dict(self.payload))


class ValidationError(EngineError):
    code = "validation_error"
    status_code = status.HTTP_400_BAD_REQUEST


class NotFoundError(EngineError):
    code = "not_found"
    status_code = status.HTTP_404_NOT_FOUND


class MembershipNotFoundError(NotFoundError):
    code = "membership_not_found"


class PlanNotFoundError(NotFoundError):
    code = "plan_not_found"


class MemberNotFoundError(NotFoundError):
    code = "member_not_found"


class PolicyMismatchError(EngineError):
    """Operation is not valid for the membership's booking-rule family."""

    code = "policy_mismatch"
    status_code = status.HTTP_409_CONFLICT


class PlanNotCreditBasedError(PolicyMismatchError):
    code = "plan_not_credit_based"


class CancellationNotAllowedError(PolicyMismatchError):
    code = "cancellation_not_allowed"


class BookingRuleFamilyChangeError(PolicyMismatchError):
    code = "booking_rule_family_change"


class InvalidTransitionError(EngineError):
    code = "invalid_transition"
    status_code = status.HTTP_409_CONFLICT


class CancellationAlreadyRequestedError(InvalidTransitionError):
    code = "cancellation_already_requested"


class ActiveMembershipExistsError(InvalidTransitionError):
    code = "active_membership_exists"


class InsufficientCreditsError(EngineError):
    code = "insufficient_credits"
    status_code = status.HTTP_409_CONFLICT


class ConcurrencyConflictError(EngineError):
    code = "concurrency_conflict"
    status_code = status.HTTP_409_CONFLICT


class ProviderError(EngineError):
    """The payment provider rejected a call or could not be reached."""

    code = "provider_error"
    status_code = status.HTTP_502_BAD_GATEWAY

    def __init__(
        self,
        message: str,
        *,
        reference: Optional[str] = None,
        code: Optional[str] = None,
        detail: Optional[Mapping[str, Any]] = None,
    ) -> None:
        merged = dict(detail or {})
        if reference:
            merged.setdefault("reference", reference)
        super().__init__(message, code=code, detail=merged)
        self.reference = reference


class PersistenceError(EngineError):
    code = "persistence_error"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class BookingRulesConfigurationError(EngineError):
    """Stored booking-rule data could not be interpreted."""

    code = "booking_rules_misconfigured"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


__all__ = [
    "ActiveMembershipExistsError",
    "BookingRuleFamilyChangeError",
    "BookingRulesConfigurationError",
    "CancellationAlreadyRequestedError",
    "CancellationNotAllowedError",
    "ConcurrencyConflictError",
    "EngineError",
    "InsufficientCreditsError",
    "InvalidTransitionError",
    "MemberNotFoundError",
    "MembershipNotFoundError",
    "NotFoundError",
    "PersistenceError",
    "PlanNotCreditBasedError",
    "PlanNotFoundError",
    "PolicyMismatchError",
    "ProviderError",
    "ValidationError",
]

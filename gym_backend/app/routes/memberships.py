"""API routes for credit adjustments, cancellations and plan changes."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Request, status

from ... import app_context
from ..errors import EngineError
from ..schemas.memberships import (
    CancellationResponse,
    CreditAdjustmentRequest,
    CreditAdjustmentResponse,
    PlanChangeRequest,
    PlanChangeResponse,
)
from ..services.engine import get_credit_ledger, get_engine_config, get_lifecycle_manager


def _get_actor(request: Request) -> Optional[str]:
    return app_context.get_current_actor(request)


router = APIRouter(prefix="/api/memberships", tags=["memberships"])


@router.post("/plan-change", response_model=PlanChangeResponse, status_code=status.HTTP_201_CREATED)
def start_plan_change(
    payload: PlanChangeRequest,
    *,
    actor: Optional[str] = Depends(_get_actor),
) -> PlanChangeResponse:
    lifecycle = get_lifecycle_manager()
    base_url = get_engine_config().app_base_url
    try:
        result = lifecycle.start_plan_change(
            payload.user_id,
            payload.target_plan_id,
            payload.kind,
            success_url=f"{base_url}/memberships?checkout=success",
            cancel_url=f"{base_url}/memberships?checkout=cancelled",
            actor=actor,
        )
    except EngineError as exc:
        raise exc.to_http_exception() from exc
    return PlanChangeResponse.from_result(result)


@router.post("/{membership_id}/credits", response_model=CreditAdjustmentResponse)
def adjust_credits(
    membership_id: str,
    payload: CreditAdjustmentRequest,
    *,
    actor: Optional[str] = Depends(_get_actor),
) -> CreditAdjustmentResponse:
    ledger = get_credit_ledger()
    try:
        result = ledger.adjust(
            membership_id,
            payload.amount,
            payload.mode,
            actor=actor,
            require_sufficient=payload.require_sufficient,
            reason=payload.reason,
        )
    except EngineError as exc:
        raise exc.to_http_exception() from exc
    return CreditAdjustmentResponse.from_result(result)


@router.post("/{membership_id}/cancellation", response_model=CancellationResponse)
def request_cancellation(
    membership_id: str,
    *,
    actor: Optional[str] = Depends(_get_actor),
) -> CancellationResponse:
    lifecycle = get_lifecycle_manager()
    try:
        result = lifecycle.request_cancellation(membership_id, actor=actor)
    except EngineError as exc:
        raise exc.to_http_exception() from exc
    return CancellationResponse.from_transition(result)

"""API routes administering membership plans."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Body, Depends, Request, status

from ... import app_context
from ..errors import EngineError
from ..plans import PlanDraft, PlanUpdate
from ..schemas.plans import CascadeResponse, PlanResponse, SyncPricingRequest, SyncPricingResponse
from ..services.engine import get_plan_service, get_provider_sync_adapter


def _get_actor(request: Request) -> Optional[str]:
    return app_context.get_current_actor(request)


router = APIRouter(prefix="/api/plans", tags=["plans"])


@router.post("", response_model=PlanResponse, status_code=status.HTTP_201_CREATED)
def create_plan(
    payload: PlanDraft,
    *,
    actor: Optional[str] = Depends(_get_actor),
) -> PlanResponse:
    service = get_plan_service()
    try:
        result = service.create_plan(payload, actor=actor)
    except EngineError as exc:
        raise exc.to_http_exception() from exc
    return PlanResponse.from_result(result)


@router.patch("/{plan_id}", response_model=PlanResponse)
def update_plan(
    plan_id: str,
    payload: PlanUpdate,
    *,
    actor: Optional[str] = Depends(_get_actor),
) -> PlanResponse:
    service = get_plan_service()
    try:
        result = service.update_plan(plan_id, payload, actor=actor)
    except EngineError as exc:
        raise exc.to_http_exception() from exc
    return PlanResponse.from_result(result)


@router.delete("/{plan_id}", response_model=CascadeResponse)
def delete_plan(
    plan_id: str,
    *,
    actor: Optional[str] = Depends(_get_actor),
) -> CascadeResponse:
    service = get_plan_service()
    try:
        result = service.delete_plan(plan_id, actor=actor)
    except EngineError as exc:
        raise exc.to_http_exception() from exc
    return CascadeResponse.from_result(result)


@router.post("/{plan_id}/sync-pricing", response_model=SyncPricingResponse)
def sync_plan_pricing(
    plan_id: str,
    payload: Optional[SyncPricingRequest] = Body(default=None),
    *,
    actor: Optional[str] = Depends(_get_actor),
) -> SyncPricingResponse:
    adapter = get_provider_sync_adapter()
    previous_price = payload.previous_price if payload is not None else None
    try:
        result = adapter.sync_plan_pricing(plan_id, previous_price, actor=actor)
    except EngineError as exc:
        raise exc.to_http_exception() from exc
    return SyncPricingResponse.from_result(result)

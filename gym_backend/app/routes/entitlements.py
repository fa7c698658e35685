"""API routes answering booking entitlement questions."""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from ... import app_context
from ..booking_rules import ResourceKind
from ..errors import EngineError
from ..schemas.entitlements import BookingDecisionResponse, OpenGymCheckInRequest, OpenGymCheckInResponse
from ..services.engine import get_entitlement_service


def _get_actor(request: Request) -> Optional[str]:
    return app_context.get_current_actor(request)


router = APIRouter(prefix="/api/entitlements", tags=["entitlements"])


@router.get("/can-book", response_model=BookingDecisionResponse)
def can_book(
    user_id: str = Query(alias="userId"),
    resource: ResourceKind = Query(default=ResourceKind.COURSE),
    on: Optional[datetime] = Query(default=None),
) -> BookingDecisionResponse:
    service = get_entitlement_service()
    try:
        decision = service.can_book(user_id, resource, on)
    except EngineError as exc:
        raise exc.to_http_exception() from exc
    return BookingDecisionResponse.from_decision(decision)


@router.post("/open-gym-check-in", response_model=OpenGymCheckInResponse)
def open_gym_check_in(
    payload: OpenGymCheckInRequest,
    *,
    actor: Optional[str] = Depends(_get_actor),
) -> OpenGymCheckInResponse:
    service = get_entitlement_service()
    try:
        result = service.check_in_open_gym(payload.user_id, payload.at, actor=actor)
    except EngineError as exc:
        raise exc.to_http_exception() from exc
    return OpenGymCheckInResponse.from_result(result)

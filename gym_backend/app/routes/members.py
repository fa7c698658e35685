"""API routes for member account deletion."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Request

from ... import app_context
from ..errors import EngineError
from ..schemas.plans import CascadeResponse
from ..services.engine import get_cascade_service


def _get_actor(request: Request) -> Optional[str]:
    return app_context.get_current_actor(request)


router = APIRouter(prefix="/api/members", tags=["members"])


@router.delete("/{user_id}", response_model=CascadeResponse)
def delete_member(
    user_id: str,
    *,
    actor: Optional[str] = Depends(_get_actor),
) -> CascadeResponse:
    service = get_cascade_service()
    try:
        result = service.delete_member(user_id, actor=actor)
    except EngineError as exc:
        raise exc.to_http_exception() from exc
    return CascadeResponse.from_result(result)

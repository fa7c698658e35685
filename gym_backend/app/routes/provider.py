"""Inbound payment provider webhook."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Header, Request
from fastapi.concurrency import run_in_threadpool

from ..errors import EngineError
from ..schemas.provider import WebhookResponse
from ..services.engine import get_provider_sync_adapter

router = APIRouter(prefix="/api/provider", tags=["provider"])


@router.post("/webhook", response_model=WebhookResponse)
async def receive_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None, alias="Stripe-Signature"),
) -> WebhookResponse:
    payload = await request.body()
    adapter = get_provider_sync_adapter()
    try:
        outcome = await run_in_threadpool(adapter.handle_webhook, payload, stripe_signature)
    except EngineError as exc:
        raise exc.to_http_exception() from exc
    return WebhookResponse.from_outcome(outcome)

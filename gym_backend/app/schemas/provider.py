"""API schemas for the payment provider webhook."""
from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..provider_sync import EventOutcome


class WebhookResponse(BaseModel):
    event_id: str = Field(alias="eventId")
    event_type: str = Field(alias="eventType")
    duplicate: bool
    handled: bool
    action: Optional[str] = None
    membership_ids: List[str] = Field(alias="membershipIds", default_factory=list)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_outcome(cls, outcome: EventOutcome) -> "WebhookResponse":
        return cls(
            event_id=outcome.event_id,
            event_type=outcome.event_type,
            duplicate=outcome.duplicate,
            handled=outcome.handled,
            action=outcome.action,
            membership_ids=list(outcome.membership_ids),
        )

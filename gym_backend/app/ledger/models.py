"""Value objects recorded by the credit ledger."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


class AdjustmentMode(str, Enum):
    ADD = "add"
    SUBTRACT = "subtract"
    SET = "set"


class CreditAdjustment(BaseModel):
    """Append-only audit record of a single balance change."""

    adjustment_id: str = Field(default_factory=lambda: uuid4().hex)
    membership_id: str
    mode: AdjustmentMode
    requested_amount: int
    delta: int
    previous_balance: int = Field(ge=0)
    new_balance: int = Field(ge=0)
    clamped: bool = False
    actor: Optional[str] = None
    reason: Optional[str] = None
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(frozen=True)


class AdjustmentResult(BaseModel):
    membership_id: str
    previous_balance: int
    new_balance: int
    clamped: bool
    adjustment: CreditAdjustment
    attempts: int = 1
    duplicate: bool = False

    model_config = ConfigDict(frozen=True)

    @property
    def delta(self) -> int:
        return self.new_balance - self.previous_balance


__all__ = ["AdjustmentMode", "AdjustmentResult", "CreditAdjustment"]

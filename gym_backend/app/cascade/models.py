"""Summaries returned by cascade operations."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional


class CascadeOutcome(str, Enum):
    SUCCESS = "success"
    PARTIAL_SUCCESS = "partial_success"
    FAILURE = "failure"


@dataclass(frozen=True)
class CascadeError:
    step: str
    item_id: str
    message: str
    reference: Optional[str] = None


@dataclass
class CascadeResult:
    """Outcome of a multi-step deletion.

    ``failure`` is reserved for the primary local mutation; secondary steps
    that fail only downgrade the outcome to ``partial_success``.
    """

    target_id: str
    outcome: CascadeOutcome = CascadeOutcome.SUCCESS
    affected_count: int = 0
    cancelled_count: int = 0
    errors: List[CascadeError] = field(default_factory=list)

    def add_error(self, step: str, item_id: str, message: str, reference: Optional[str] = None) -> None:
        self.errors.append(CascadeError(step=step, item_id=item_id, message=message, reference=reference))

    def finish(self, *, primary_ok: bool) -> "CascadeResult":
        if not primary_ok:
            self.outcome = CascadeOutcome.FAILURE
        elif self.errors:
            self.outcome = CascadeOutcome.PARTIAL_SUCCESS
        else:
            self.outcome = CascadeOutcome.SUCCESS
        return self


__all__ = ["CascadeError", "CascadeOutcome", "CascadeResult"]

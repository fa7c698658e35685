"""Plan catalog administration."""

from .models import PlanDraft, PlanUpdate, PlanWriteResult
from .service import PlanService

__all__ = ["PlanDraft", "PlanService", "PlanUpdate", "PlanWriteResult"]

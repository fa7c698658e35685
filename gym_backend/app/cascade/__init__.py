"""Deletion cascades for plans and members."""

from .models import CascadeError, CascadeOutcome, CascadeResult
from .repository import IdentityProvider, MemberDirectory
from .service import CascadeService

__all__ = [
    "CascadeError",
    "CascadeOutcome",
    "CascadeResult",
    "CascadeService",
    "IdentityProvider",
    "MemberDirectory",
]

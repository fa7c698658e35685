"""Credit ledger for credit-based memberships."""

from .models import AdjustmentMode, AdjustmentResult, CreditAdjustment
from .service import CreditLedger, compute_balance, validate_amount, validate_mode

__all__ = [
    "AdjustmentMode",
    "AdjustmentResult",
    "CreditAdjustment",
    "CreditLedger",
    "compute_balance",
    "validate_amount",
    "validate_mode",
]

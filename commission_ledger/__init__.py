"""
Commission & Payout Ledger for Agent Referrals

This module provides:
- Referral code registry with usage caps and expiry
- Usage recording and commission earnings
- Earnings lifecycle: pending → confirmed → paid / cancelled / disputed
- Agent balances kept consistent with the earnings and payout ledgers
- Payout approval workflow with balance reservation
- Reconciliation and read-only reports
"""

from .db import Database
from .errors import (
    CodeExhausted,
    CodeExpired,
    CodeNotUsable,
    ConcurrencyConflict,
    InsufficientBalance,
    IntegrityViolation,
    InvalidTransition,
    LedgerError,
    NotFoundError,
    ValidationError,
)
from .models import (
    EarningStatus,
    EarningType,
    PayoutMethod,
    PayoutStatus,
    ReferralCodeStatus,
    UsageStatus,
)
from .service import LedgerService

__all__ = [
    "Database",
    "LedgerService",
    "LedgerError",
    "ValidationError",
    "NotFoundError",
    "CodeNotUsable",
    "CodeExpired",
    "CodeExhausted",
    "InvalidTransition",
    "InsufficientBalance",
    "ConcurrencyConflict",
    "IntegrityViolation",
    "EarningStatus",
    "EarningType",
    "PayoutMethod",
    "PayoutStatus",
    "ReferralCodeStatus",
    "UsageStatus",
]

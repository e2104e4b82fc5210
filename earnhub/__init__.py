"""
EarnHub reward backend

This package provides:
- Task rewards credited once per user and task
- Withdrawals debited atomically and reversed on rejection
- One-time referral bonuses
- JWT session authentication and admin tooling
- An append-only ledger of every balance change
"""

from .models import (
    EntryType,
    LedgerEntry,
    Role,
    User,
    Withdrawal,
    WithdrawalStatus,
)
from .service import LedgerService

__all__ = [
    "EntryType",
    "LedgerEntry",
    "Role",
    "User",
    "Withdrawal",
    "WithdrawalStatus",
    "LedgerService",
]

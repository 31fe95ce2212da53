"""
Jar Ledger

This package provides:
- Users, budget jars and spending events
- Atomic recording: a spending event and its jar total change together
- Daily activity streaks
- Error taxonomy shared with the settlement and realtime packages
"""

from .models import (
    TransactionStatus,
    EmergencyStatus,
    EventKind,
    User,
    Jar,
    Transaction,
    Settlement,
    EmergencyRequest,
)
from .service import LedgerService
from .storage import InMemoryStorage
from .streak import next_streak

__all__ = [
    "TransactionStatus",
    "EmergencyStatus",
    "EventKind",
    "User",
    "Jar",
    "Transaction",
    "Settlement",
    "EmergencyRequest",
    "LedgerService",
    "InMemoryStorage",
    "next_streak",
]

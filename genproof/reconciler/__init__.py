"""
Ledger event reconciliation.
"""

from .ledger import LedgerClient, MemoryLedgerClient
from .models import LedgerEvent, LedgerEventType
from .reconciler import DeadLetter, EventReconciler

__all__ = [
    "DeadLetter",
    "EventReconciler",
    "LedgerClient",
    "LedgerEvent",
    "LedgerEventType",
    "MemoryLedgerClient",
]

"""Authoritative settlement ledger."""

from .gateway import LedgerGateway
from .memory import InMemoryLedger, SettlementLedger
from .state import LedgerState

__all__ = ["InMemoryLedger", "LedgerGateway", "LedgerState", "SettlementLedger"]

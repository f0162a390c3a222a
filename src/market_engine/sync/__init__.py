"""Secondary store and ledger reconciliation."""

from .models import RepairRecord, SyncReport
from .store import SecondaryStore
from .synchronizer import StateSynchronizer

__all__ = ["RepairRecord", "SecondaryStore", "StateSynchronizer", "SyncReport"]

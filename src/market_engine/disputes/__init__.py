"""Evidence and dispute models."""

from .models import BondSettlement, Dispute, DisputeStatus, Evidence

__all__ = ["BondSettlement", "Dispute", "DisputeStatus", "Evidence"]

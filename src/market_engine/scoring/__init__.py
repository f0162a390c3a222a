"""Confidence scoring package."""

from .confidence import evidence_signal, score_confidence
from .models import (
    BlendWeights,
    ConfidenceAssessment,
    ConfidenceBreakdown,
    ConfidenceInputs,
    EvidenceItem,
    EvidenceMultipliers,
)
from .service import evaluate_market

__all__ = [
    "BlendWeights",
    "ConfidenceAssessment",
    "ConfidenceBreakdown",
    "ConfidenceInputs",
    "EvidenceItem",
    "EvidenceMultipliers",
    "evaluate_market",
    "evidence_signal",
    "score_confidence",
]

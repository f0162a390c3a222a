"""Typed inputs and outputs for confidence scoring."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field, model_validator

from ..models import Outcome

WeightingStrategy = Literal["fixed", "market_validated", "evidence_contradicts", "standard"]


class BlendWeights(BaseModel):
    """Relative weight of each signal; the three must sum to 1."""

    market: float = Field(ge=0.0, le=1.0)
    evidence: float = Field(ge=0.0, le=1.0)
    external: float = Field(ge=0.0, le=1.0)

    @model_validator(mode="after")
    def validate_sum(self) -> BlendWeights:
        if abs(self.market + self.evidence + self.external - 1.0) > 1e-6:
            raise ValueError("Blend weights must sum to 1.0.")
        return self


class EvidenceMultipliers(BaseModel):
    contrarian: float = Field(default=3.0, gt=0.0)
    legitimate: float = Field(default=1.5, gt=0.0)
    regular: float = Field(default=1.0, gt=0.0)
    prior_weight: float = Field(default=1.0, ge=0.0)


class EvidenceItem(BaseModel):
    """One dispute's evidence as seen by the scorer."""

    dispute_id: str
    direction: Outcome
    legitimate: bool | None = None
    contradicts_consensus: bool | None = None


class EvidenceContribution(BaseModel):
    dispute_id: str
    direction: Outcome
    multiplier: float
    signed_weight: float


class ConfidenceInputs(BaseModel):
    """Signals oriented toward ``target_outcome`` (each in 0-100)."""

    target_outcome: Outcome
    market_signal: float = Field(ge=0.0, le=100.0)
    evidence: list[EvidenceItem] = Field(default_factory=list)
    external_signal: float | None = Field(default=None, ge=0.0, le=100.0)


class ConfidenceBreakdown(BaseModel):
    """Score for one target outcome with every component reported."""

    target_outcome: Outcome
    confidence: float
    market_signal: float
    evidence_signal: float
    external_signal: float
    external_available: bool
    weights: BlendWeights
    strategy: WeightingStrategy = "fixed"
    consensus_score: float | None = None
    contributions: list[EvidenceContribution] = Field(default_factory=list)


class ConfidenceAssessment(BaseModel):
    """Scores for a market's preliminary outcome and its opposite."""

    market_id: str
    primary: ConfidenceBreakdown
    opposite: ConfidenceBreakdown

    @property
    def target_outcome(self) -> Outcome:
        return self.primary.target_outcome

    @property
    def confidence(self) -> float:
        return self.primary.confidence

    def confidence_for(self, outcome: Outcome) -> float:
        if outcome == self.primary.target_outcome:
            return self.primary.confidence
        if outcome == self.opposite.target_outcome:
            return self.opposite.confidence
        return 0.0

    @property
    def recommended_outcome(self) -> Outcome:
        if self.opposite.confidence > self.primary.confidence:
            return self.opposite.target_outcome
        return self.primary.target_outcome

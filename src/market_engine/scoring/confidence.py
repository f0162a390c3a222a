"""Deterministic confidence blend of market odds, dispute evidence and an external signal.

Nothing here reads the clock, the ledger or the network: identical inputs always
produce identical scores.
"""

from __future__ import annotations

from .models import (
    BlendWeights,
    ConfidenceBreakdown,
    ConfidenceInputs,
    EvidenceContribution,
    EvidenceItem,
    EvidenceMultipliers,
    WeightingStrategy,
)

MARKET_VALIDATED_THRESHOLD = 0.8
EVIDENCE_CONTRADICTS_THRESHOLD = 0.2

ADAPTIVE_WEIGHTS: dict[WeightingStrategy, BlendWeights] = {
    "market_validated": BlendWeights(market=0.60, evidence=0.10, external=0.30),
    "evidence_contradicts": BlendWeights(market=0.20, evidence=0.30, external=0.50),
    "standard": BlendWeights(market=0.35, evidence=0.25, external=0.40),
}


def evidence_multiplier(item: EvidenceItem, multipliers: EvidenceMultipliers) -> float:
    if item.legitimate is True and item.contradicts_consensus is True:
        return multipliers.contrarian
    if item.legitimate is True:
        return multipliers.legitimate
    return multipliers.regular


def tally_evidence(
    inputs: ConfidenceInputs,
    multipliers: EvidenceMultipliers,
) -> tuple[float, float, list[EvidenceContribution]]:
    """Return ``(supporting, opposing, contributions)`` relative to the target."""
    supporting = 0.0
    opposing = 0.0
    contributions: list[EvidenceContribution] = []
    for item in inputs.evidence:
        multiplier = evidence_multiplier(item, multipliers)
        if item.direction == inputs.target_outcome:
            supporting += multiplier
            signed = multiplier
        else:
            opposing += multiplier
            signed = -multiplier
        contributions.append(
            EvidenceContribution(
                dispute_id=item.dispute_id,
                direction=item.direction,
                multiplier=multiplier,
                signed_weight=signed,
            )
        )
    return supporting, opposing, contributions


def evidence_signal(supporting: float, opposing: float, prior_weight: float) -> float:
    """Map a weighted tally onto 0-100; no evidence is neutral (50)."""
    total = supporting + opposing
    if total <= 0:
        return 50.0
    net = supporting - opposing
    return 50.0 + 50.0 * net / (total + prior_weight)


def consensus_score(market_signal: float, supporting: float, opposing: float) -> float:
    """How strongly the evidence agrees with the market's current direction (0-1)."""
    total = supporting + opposing
    if total <= 0:
        return 1.0
    evidence_agrees = supporting > opposing
    market_agrees = market_signal > 50.0
    if evidence_agrees == market_agrees:
        return max(supporting, opposing) / total
    return min(supporting, opposing) / total


def select_weights(consensus: float) -> tuple[WeightingStrategy, BlendWeights]:
    if consensus >= MARKET_VALIDATED_THRESHOLD:
        return "market_validated", ADAPTIVE_WEIGHTS["market_validated"]
    if consensus <= EVIDENCE_CONTRADICTS_THRESHOLD:
        return "evidence_contradicts", ADAPTIVE_WEIGHTS["evidence_contradicts"]
    return "standard", ADAPTIVE_WEIGHTS["standard"]


def score_confidence(
    inputs: ConfidenceInputs,
    weights: BlendWeights,
    multipliers: EvidenceMultipliers,
    *,
    adaptive: bool = False,
) -> ConfidenceBreakdown:
    """Blend the three signals into a 0-100 confidence for ``inputs.target_outcome``.

    A missing external signal contributes 0. With ``adaptive`` the fixed
    ``weights`` are replaced by a strategy chosen from how well the evidence
    agrees with market odds.
    """
    supporting, opposing, contributions = tally_evidence(inputs, multipliers)
    evidence = evidence_signal(supporting, opposing, multipliers.prior_weight)
    external_available = inputs.external_signal is not None
    external = inputs.external_signal if inputs.external_signal is not None else 0.0

    strategy: WeightingStrategy = "fixed"
    consensus: float | None = None
    applied = weights
    if adaptive:
        consensus = consensus_score(inputs.market_signal, supporting, opposing)
        strategy, applied = select_weights(consensus)

    confidence = (
        applied.market * inputs.market_signal
        + applied.evidence * evidence
        + applied.external * external
    )
    return ConfidenceBreakdown(
        target_outcome=inputs.target_outcome,
        confidence=round(min(100.0, max(0.0, confidence)), 6),
        market_signal=inputs.market_signal,
        evidence_signal=evidence,
        external_signal=external,
        external_available=external_available,
        weights=applied,
        strategy=strategy,
        consensus_score=consensus,
        contributions=contributions,
    )

"""Assemble confidence inputs from ledger state."""

from __future__ import annotations

from typing import Any

from ..disputes.models import Dispute, DisputeStatus
from ..ledger.state import LedgerState
from ..models import Outcome
from ..pricing.curve import PRICE_SCALE, marginal_price
from .confidence import score_confidence
from .models import (
    BlendWeights,
    ConfidenceAssessment,
    ConfidenceBreakdown,
    ConfidenceInputs,
    EvidenceItem,
    EvidenceMultipliers,
)

_COUNTED_STATUSES = {DisputeStatus.ACTIVE, DisputeStatus.ACCEPTED}


def blend_weights_from(settings: Any) -> BlendWeights:
    return BlendWeights(
        market=settings.confidence_weight_market,
        evidence=settings.confidence_weight_evidence,
        external=settings.confidence_weight_external,
    )


def multipliers_from(settings: Any) -> EvidenceMultipliers:
    return EvidenceMultipliers(
        contrarian=settings.evidence_multiplier_contrarian,
        legitimate=settings.evidence_multiplier_legitimate,
        regular=settings.evidence_multiplier_regular,
        prior_weight=settings.evidence_prior_weight,
    )


def evidence_items(disputes: list[Dispute]) -> list[EvidenceItem]:
    """Disputes that still count as evidence (rejected and expired ones do not)."""
    return [
        EvidenceItem(
            dispute_id=dispute.dispute_id,
            direction=dispute.declared_outcome,
            legitimate=dispute.legitimate,
            contradicts_consensus=dispute.contradicts_consensus,
        )
        for dispute in disputes
        if dispute.status in _COUNTED_STATUSES
    ]


def oriented_external(external_yes_score: float | None, target: Outcome) -> float | None:
    if external_yes_score is None:
        return None
    return external_yes_score if target == Outcome.YES else 100.0 - external_yes_score


def evaluate_market(
    state: LedgerState,
    market_id: str,
    settings: Any,
    *,
    external_yes_score: float | None = None,
) -> ConfidenceAssessment:
    """Score the preliminary outcome of ``market_id`` and its opposite.

    ``external_yes_score`` overrides the value cached on the resolution record.
    """
    record = state.resolutions[market_id]
    target = record.preliminary_outcome
    if target not in (Outcome.YES, Outcome.NO):
        raise ValueError(f"Market {market_id} has no preliminary outcome to score.")
    reserves = state.require_reserves(market_id)
    yes_score = external_yes_score if external_yes_score is not None else record.external_yes_score
    items = evidence_items(state.disputes_for(market_id))
    weights = blend_weights_from(settings)
    multipliers = multipliers_from(settings)

    def score(outcome: Outcome) -> ConfidenceBreakdown:
        price = marginal_price(
            outcome.side,
            yes_shares=reserves.yes_shares,
            no_shares=reserves.no_shares,
            virtual_liquidity=settings.amm_virtual_liquidity,
        )
        return score_confidence(
            ConfidenceInputs(
                target_outcome=outcome,
                market_signal=100.0 * price / PRICE_SCALE,
                evidence=items,
                external_signal=oriented_external(yes_score, outcome),
            ),
            weights,
            multipliers,
            adaptive=settings.confidence_adaptive_weights,
        )

    return ConfidenceAssessment(
        market_id=market_id,
        primary=score(target),
        opposite=score(target.opposite),
    )

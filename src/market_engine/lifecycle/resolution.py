"""Resolution-record helpers that run inside a ledger transaction."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from ..disputes.models import DisputeStatus
from ..exceptions import AlreadyResolved, ResolutionNotReady
from ..ledger.state import LedgerState
from ..models import Market, Outcome
from ..scoring.models import ConfidenceAssessment
from ..scoring.service import evaluate_market
from .models import LifecycleEvent, ResolutionRecord


def window_length(settings: Any) -> timedelta:
    return timedelta(hours=settings.dispute_window_hours)


def ceiling_at(market: Market, settings: Any) -> datetime:
    """Latest moment a market may stay unresolved after expiry."""
    return market.expires_at + timedelta(days=settings.resolution_ceiling_days)


def threshold_outcome(record: ResolutionRecord, threshold: float) -> Outcome | None:
    """Outcome whose confidence meets ``threshold``, preliminary first."""
    if record.preliminary_outcome not in (Outcome.YES, Outcome.NO):
        return None
    if record.confidence >= threshold:
        return record.preliminary_outcome
    if record.opposite_confidence >= threshold:
        return record.preliminary_outcome.opposite
    return None


def has_unreviewed_disputes(state: LedgerState, market_id: str) -> bool:
    return any(
        dispute.status == DisputeStatus.ACTIVE and not dispute.is_reviewed
        for dispute in state.disputes_for(market_id)
    )


def refresh_confidence(
    state: LedgerState,
    market_id: str,
    settings: Any,
    now: datetime,
    *,
    allow_early_close: bool,
    external_yes_score: float | None = None,
    external_source: str | None = None,
) -> ConfidenceAssessment:
    """Recompute and store confidence; optionally close the window when it crosses the threshold."""
    record = state.resolutions.get(market_id)
    if record is None:
        raise ResolutionNotReady(f"Market {market_id} has no preliminary resolution.")
    if record.sealed:
        raise AlreadyResolved(f"Market {market_id} resolution is already sealed.")
    if external_yes_score is not None:
        record.external_yes_score = external_yes_score
        record.external_source = external_source
    assessment = evaluate_market(state, market_id, settings)
    previous = record.confidence
    record.confidence = assessment.primary.confidence
    record.opposite_confidence = assessment.opposite.confidence
    record.confidence_updated_at = now

    if (
        allow_early_close
        and not record.window_closed(now)
        and threshold_outcome(record, settings.confidence_threshold) is not None
    ):
        record.closed_early = True
        record.dispute_window_end = now
        state.append_history(
            LifecycleEvent(
                market_id=market_id,
                event="dispute_window_closed_early",
                ts=now,
                metadata={
                    "confidence_before": previous,
                    "confidence": record.confidence,
                    "opposite_confidence": record.opposite_confidence,
                },
            )
        )
    return assessment

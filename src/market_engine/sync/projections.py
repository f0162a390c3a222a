"""Derive secondary-store rows from ledger state."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from ..disputes.models import Dispute
from ..ledger.state import LedgerState
from ..models import ensure_utc
from ..pricing.curve import marginal_price
from ..pricing.models import Position

Projection = dict[str, dict[str, dict[str, Any]]]


def project_market(state: LedgerState, market_id: str, virtual_liquidity: int) -> dict[str, Any]:
    market = state.require_market(market_id)
    reserves = state.require_reserves(market_id)
    record = state.resolutions.get(market_id)
    pools = {
        "yes_shares": reserves.yes_shares,
        "no_shares": reserves.no_shares,
        "virtual_liquidity": virtual_liquidity,
    }
    return {
        "market_id": market.market_id,
        "question": market.question,
        "creator": market.creator,
        "status": market.status.name.lower(),
        "status_code": int(market.status),
        "expires_at": market.expires_at,
        "fee_rate_bps": market.fee_rate_bps,
        "collateral_token": market.collateral_token,
        "resolver": market.resolver,
        "halted": market.halted,
        "yes_shares": reserves.yes_shares,
        "no_shares": reserves.no_shares,
        "reserve": reserves.reserve,
        "price_yes": marginal_price("yes", **pools),
        "price_no": marginal_price("no", **pools),
        "preliminary_outcome": record.preliminary_outcome.value if record else None,
        "final_outcome": record.final_outcome.value if record and record.final_outcome else None,
        "confidence": record.confidence if record else None,
        "dispute_window_end": record.dispute_window_end if record else None,
        "requires_review": record.requires_review if record else False,
    }


def project_dispute(dispute: Dispute) -> dict[str, Any]:
    return {
        "dispute_id": dispute.dispute_id,
        "market_id": dispute.market_id,
        "disputer": dispute.disputer,
        "bond_amount": dispute.bond_amount,
        "declared_outcome": dispute.declared_outcome.value,
        "status": dispute.status.value,
        "legitimate": dispute.legitimate,
        "contradicts_consensus": dispute.contradicts_consensus,
        "evidence_hash": dispute.evidence_hash,
        "created_at": dispute.created_at,
        "resolved_at": dispute.resolved_at,
        "refunded_amount": dispute.refunded_amount,
        "slashed_amount": dispute.slashed_amount,
    }


def project_position(position: Position) -> dict[str, Any]:
    return {
        "position_key": position.key,
        "market_id": position.market_id,
        "account": position.account,
        "yes_shares": position.yes_shares,
        "no_shares": position.no_shares,
        "cost_basis": position.cost_basis,
        "redeemed": position.redeemed,
        "redeemed_amount": position.redeemed_amount,
    }


def project_state(
    state: LedgerState,
    virtual_liquidity: int,
    *,
    market_id: str | None = None,
) -> Projection:
    """Rows every table should hold, keyed by primary key."""
    market_ids = [market_id] if market_id is not None else sorted(state.markets)
    projection: Projection = {"markets": {}, "disputes": {}, "positions": {}}
    for current in market_ids:
        projection["markets"][current] = project_market(state, current, virtual_liquidity)
        for dispute in state.disputes_for(current):
            projection["disputes"][dispute.dispute_id] = project_dispute(dispute)
        for position in state.positions_for(current):
            projection["positions"][position.key] = project_position(position)
    return projection


def normalize_value(value: Any) -> Any:
    """Comparable form of a column value (timestamps as UTC ISO strings)."""
    if isinstance(value, datetime):
        return ensure_utc(value).isoformat()
    if isinstance(value, float):
        return round(value, 6)
    return value


def diff_row(expected: dict[str, Any], actual: dict[str, Any]) -> dict[str, tuple[Any, Any]]:
    """Columns whose store value differs from the ledger-derived value."""
    drift: dict[str, tuple[Any, Any]] = {}
    for column, value in expected.items():
        want = normalize_value(value)
        have = normalize_value(actual.get(column))
        if want != have:
            drift[column] = (want, have)
    return drift

"""Authoritative ledger state: balances, escrow, markets, reserves, positions, disputes."""

from __future__ import annotations

from pydantic import BaseModel, Field

from ..disputes.models import Dispute
from ..exceptions import (
    DisputeNotFoundError,
    InsufficientBalanceError,
    MarketNotFoundError,
)
from ..lifecycle.models import LifecycleEvent, ResolutionRecord
from ..models import Market
from ..pricing.models import Position, ShareReserves, position_key


class LedgerState(BaseModel):
    """Everything the settlement layer holds, as one copyable value."""

    balances: dict[str, int] = Field(default_factory=dict)
    escrow: dict[str, int] = Field(default_factory=dict)
    minted: int = 0
    markets: dict[str, Market] = Field(default_factory=dict)
    reserves: dict[str, ShareReserves] = Field(default_factory=dict)
    positions: dict[str, Position] = Field(default_factory=dict)
    resolutions: dict[str, ResolutionRecord] = Field(default_factory=dict)
    disputes: dict[str, Dispute] = Field(default_factory=dict)
    dispute_seq: int = 0
    history: dict[str, list[LifecycleEvent]] = Field(default_factory=dict)

    def balance_of(self, account: str) -> int:
        return self.balances.get(account, 0)

    def credit(self, account: str, amount: int) -> None:
        if amount < 0:
            raise ValueError("credit amount must be >= 0.")
        if amount == 0:
            return
        self.balances[account] = self.balance_of(account) + amount

    def debit(self, account: str, amount: int) -> None:
        if amount < 0:
            raise ValueError("debit amount must be >= 0.")
        balance = self.balance_of(account)
        if balance < amount:
            raise InsufficientBalanceError(
                f"Account {account} has {balance}, needs {amount}."
            )
        if amount:
            self.balances[account] = balance - amount

    def lock_escrow(self, account: str, escrow_key: str, amount: int) -> None:
        self.debit(account, amount)
        self.escrow[escrow_key] = self.escrow.get(escrow_key, 0) + amount

    def release_escrow(self, escrow_key: str) -> int:
        """Remove and return the escrowed amount (0 when already released)."""
        return self.escrow.pop(escrow_key, 0)

    def require_market(self, market_id: str) -> Market:
        market = self.markets.get(market_id)
        if market is None:
            raise MarketNotFoundError(f"Unknown market {market_id}.")
        return market

    def require_reserves(self, market_id: str) -> ShareReserves:
        self.require_market(market_id)
        return self.reserves.setdefault(market_id, ShareReserves(market_id=market_id))

    def require_dispute(self, dispute_id: str) -> Dispute:
        dispute = self.disputes.get(dispute_id)
        if dispute is None:
            raise DisputeNotFoundError(f"Unknown dispute {dispute_id}.")
        return dispute

    def position(self, market_id: str, account: str) -> Position:
        """Return the position, creating an empty one on first touch."""
        key = position_key(market_id, account)
        existing = self.positions.get(key)
        if existing is None:
            existing = Position(market_id=market_id, account=account)
            self.positions[key] = existing
        return existing

    def positions_for(self, market_id: str) -> list[Position]:
        return [
            position for position in self.positions.values() if position.market_id == market_id
        ]

    def disputes_for(self, market_id: str) -> list[Dispute]:
        disputes = [dispute for dispute in self.disputes.values() if dispute.market_id == market_id]
        return sorted(disputes, key=lambda dispute: (dispute.created_at, dispute.dispute_id))

    def next_dispute_id(self, market_id: str) -> str:
        self.dispute_seq += 1
        return f"dsp-{self.dispute_seq:06d}-{market_id[-6:]}"

    def total_supply(self) -> int:
        """Collateral held in balances, reserves and escrow; equals ``minted``."""
        return (
            sum(self.balances.values())
            + sum(reserves.reserve for reserves in self.reserves.values())
            + sum(self.escrow.values())
        )

    def append_history(self, event: LifecycleEvent) -> None:
        self.history.setdefault(event.market_id, []).append(event)

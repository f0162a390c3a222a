"""Typed models for AMM reserves, positions and trade receipts."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

from ..models import Outcome, Side, utc_validator
from .curve import PRICE_SCALE

PayoutMode = Literal["winner", "refund"]


class PayoutSnapshot(BaseModel):
    """Redemption terms frozen when a market stops trading for good."""

    mode: PayoutMode
    outcome: Outcome
    pool: int = Field(ge=0)
    supply: int = Field(ge=0)
    taken_at: datetime

    @field_validator("taken_at", mode="before")
    @classmethod
    def ensure_utc(cls, value: Any) -> Any:
        return utc_validator(value)


class ShareReserves(BaseModel):
    """Outstanding shares and collateral held for one market."""

    market_id: str
    yes_shares: int = Field(default=0, ge=0)
    no_shares: int = Field(default=0, ge=0)
    reserve: int = 0
    collateral_in: int = Field(default=0, ge=0)
    collateral_out: int = Field(default=0, ge=0)
    fees_collected: int = Field(default=0, ge=0)
    payout: PayoutSnapshot | None = None

    def shares(self, side: Side) -> int:
        return self.yes_shares if side == "yes" else self.no_shares

    def add_shares(self, side: Side, delta: int) -> None:
        if side == "yes":
            self.yes_shares += delta
        else:
            self.no_shares += delta


class Position(BaseModel):
    """One account's holdings in one market."""

    market_id: str
    account: str
    yes_shares: int = Field(default=0, ge=0)
    no_shares: int = Field(default=0, ge=0)
    cost_basis: int = Field(default=0, ge=0)
    redeemed: bool = False
    redeemed_amount: int = 0

    @property
    def key(self) -> str:
        return position_key(self.market_id, self.account)

    @property
    def total_shares(self) -> int:
        return self.yes_shares + self.no_shares

    def shares(self, side: Side) -> int:
        return self.yes_shares if side == "yes" else self.no_shares

    def add_shares(self, side: Side, delta: int) -> None:
        if side == "yes":
            self.yes_shares += delta
        else:
            self.no_shares += delta


def position_key(market_id: str, account: str) -> str:
    return f"{market_id}:{account}"


class MarketPrices(BaseModel):
    """Marginal prices in fixed point (``PRICE_SCALE`` == 1.0)."""

    market_id: str
    price_yes: int
    price_no: int

    @property
    def yes_probability(self) -> float:
        return self.price_yes / PRICE_SCALE

    @property
    def no_probability(self) -> float:
        return self.price_no / PRICE_SCALE

    def for_side(self, side: Side) -> int:
        return self.price_yes if side == "yes" else self.price_no


class TradeQuote(BaseModel):
    """Result of pricing a prospective purchase."""

    market_id: str
    side: Side
    shares: int
    cost: int
    fee: int
    total: int
    price_before: int
    price_after: int


class TradeReceipt(BaseModel):
    """Executed buy or sell."""

    action: Literal["buy", "sell"]
    market_id: str
    account: str
    side: Side
    shares: int
    collateral: int
    fee: int
    net: int
    price_yes: int
    price_no: int
    reserve_after: int
    ts: datetime


class RedemptionReceipt(BaseModel):
    """Result of a redeem call; a repeat call reports ``payout == 0``."""

    market_id: str
    account: str
    outcome: Outcome
    mode: PayoutMode
    shares_redeemed: int = 0
    payout: int = 0
    already_redeemed: bool = False
    ts: datetime


class TransferReceipt(BaseModel):
    """Secondary-market position transfer."""

    market_id: str
    from_account: str
    to_account: str
    yes_shares: int
    no_shares: int
    cost_basis_moved: int
    ts: datetime

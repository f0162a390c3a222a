"""AMM pricing core: quotes, trades, transfers and redemption."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import TypeVar

from ..config import Settings
from ..exceptions import (
    InsufficientSharesError,
    InvalidTradeError,
    JournalError,
    MarketHaltedError,
    ReserveInvariantError,
    ResolutionNotReady,
    SlippageExceeded,
)
from ..journal import JournalWriter
from ..ledger.gateway import LedgerGateway
from ..ledger.state import LedgerState
from ..models import Market, MarketStatus, Outcome, Side
from ..redaction import sanitize_text
from .curve import (
    buy_cost,
    fee_for,
    marginal_price,
    max_shares_for_budget,
    sell_proceeds,
)
from .models import (
    MarketPrices,
    PayoutSnapshot,
    Position,
    RedemptionReceipt,
    ShareReserves,
    TradeQuote,
    TradeReceipt,
    TransferReceipt,
    position_key,
)

T = TypeVar("T")


def require_writable(market: Market) -> None:
    if market.halted:
        raise MarketHaltedError(
            f"Market {market.market_id} is halted: {market.halted_reason or 'invariant violation'}."
        )


def require_tradeable(market: Market, now: datetime) -> None:
    require_writable(market)
    if market.status != MarketStatus.OPEN:
        raise InvalidTradeError(
            f"Market {market.market_id} is {market.status.name}; trading requires OPEN."
        )
    if market.is_expired(now):
        raise InvalidTradeError(f"Market {market.market_id} expired at {market.expires_at}.")


def check_reserve_invariants(
    state: LedgerState,
    market_id: str,
    *,
    virtual_liquidity: int,
    price_sum_tolerance: float,
) -> None:
    """Raise ``ReserveInvariantError`` when reserve accounting is inconsistent."""
    reserves = state.require_reserves(market_id)
    if reserves.reserve < 0:
        raise ReserveInvariantError(
            f"Market {market_id} reserve went negative ({reserves.reserve})."
        )
    if reserves.reserve != reserves.collateral_in - reserves.collateral_out:
        raise ReserveInvariantError(
            f"Market {market_id} reserve {reserves.reserve} != collateral_in "
            f"{reserves.collateral_in} - collateral_out {reserves.collateral_out}."
        )
    positions = state.positions_for(market_id)
    held_yes = sum(position.yes_shares for position in positions)
    held_no = sum(position.no_shares for position in positions)
    if held_yes != reserves.yes_shares or held_no != reserves.no_shares:
        raise ReserveInvariantError(
            f"Market {market_id} share supply mismatch: positions hold "
            f"yes={held_yes} no={held_no}, reserves record "
            f"yes={reserves.yes_shares} no={reserves.no_shares}."
        )
    prices = _prices(market_id, reserves, virtual_liquidity)
    price_sum = prices.yes_probability + prices.no_probability
    if abs(price_sum - 1.0) > price_sum_tolerance:
        raise ReserveInvariantError(
            f"Market {market_id} prices sum to {price_sum:.8f}, outside tolerance "
            f"{price_sum_tolerance} of 1.0."
        )


def build_payout_snapshot(
    state: LedgerState,
    market_id: str,
    outcome: Outcome,
    now: datetime,
) -> PayoutSnapshot:
    """Freeze redemption terms for a market that will never trade again."""
    reserves = state.require_reserves(market_id)
    market = state.require_market(market_id)
    positions = state.positions_for(market_id)
    refund = outcome in (Outcome.INVALID, Outcome.UNSET) or market.status == MarketStatus.CANCELED
    winning_supply = 0 if refund else reserves.shares(outcome.side)
    if refund or winning_supply == 0:
        snapshot = PayoutSnapshot(
            mode="refund",
            outcome=outcome,
            pool=reserves.reserve,
            supply=sum(position.cost_basis for position in positions),
            taken_at=now,
        )
    else:
        snapshot = PayoutSnapshot(
            mode="winner",
            outcome=outcome,
            pool=reserves.reserve,
            supply=winning_supply,
            taken_at=now,
        )
    reserves.payout = snapshot
    return snapshot


def _payout_for(snapshot: PayoutSnapshot, position: Position) -> tuple[int, int]:
    """Return ``(payout, weight)`` for one position under ``snapshot``."""
    if snapshot.mode == "refund":
        weight = position.cost_basis
    else:
        weight = position.shares(snapshot.outcome.side)
    if weight <= 0 or snapshot.supply <= 0:
        return 0, weight
    return (snapshot.pool * weight) // snapshot.supply, weight


def _prices(market_id: str, reserves: ShareReserves, virtual_liquidity: int) -> MarketPrices:
    return MarketPrices(
        market_id=market_id,
        price_yes=marginal_price(
            "yes",
            yes_shares=reserves.yes_shares,
            no_shares=reserves.no_shares,
            virtual_liquidity=virtual_liquidity,
        ),
        price_no=marginal_price(
            "no",
            yes_shares=reserves.yes_shares,
            no_shares=reserves.no_shares,
            virtual_liquidity=virtual_liquidity,
        ),
    )


class PricingEngine:
    """Price and settle YES/NO share trades against per-market reserves."""

    def __init__(
        self,
        settings: Settings,
        gateway: LedgerGateway,
        logger: logging.Logger,
        journal: JournalWriter | None = None,
        now_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self.settings = settings
        self.gateway = gateway
        self.logger = logger
        self.journal = journal
        self._now_provider = now_provider or (lambda: datetime.now(UTC))

    @property
    def virtual_liquidity(self) -> int:
        return self.settings.amm_virtual_liquidity

    def prices(self, market_id: str) -> MarketPrices:
        def read(state: LedgerState) -> MarketPrices:
            return _prices(market_id, state.require_reserves(market_id), self.virtual_liquidity)

        return self.gateway.read("prices", read)

    def reserves(self, market_id: str) -> ShareReserves:
        return self.gateway.read("reserves", lambda state: state.require_reserves(market_id))

    def position(self, market_id: str, account: str) -> Position:
        def read(state: LedgerState) -> Position:
            state.require_market(market_id)
            return state.position(market_id, account)

        return self.gateway.read("position", read)

    def quote(self, market_id: str, side: Side, shares: int) -> TradeQuote:
        """Price a purchase of ``shares`` without executing it."""
        if shares <= 0:
            raise InvalidTradeError("shares must be > 0.")

        def read(state: LedgerState) -> TradeQuote:
            market = state.require_market(market_id)
            reserves = state.require_reserves(market_id)
            return self._quote(market, reserves, side, shares)

        return self.gateway.read("quote", read)

    def shares_for_collateral(self, market_id: str, side: Side, budget: int) -> int:
        """Largest purchase of ``side`` whose cost plus fee fits in ``budget``."""

        def read(state: LedgerState) -> int:
            market = state.require_market(market_id)
            reserves = state.require_reserves(market_id)
            return max_shares_for_budget(
                side,
                budget,
                yes_shares=reserves.yes_shares,
                no_shares=reserves.no_shares,
                virtual_liquidity=self.virtual_liquidity,
                fee_rate_bps=market.fee_rate_bps,
            )

        return self.gateway.read("shares_for_collateral", read)

    def buy(
        self,
        market_id: str,
        account: str,
        side: Side,
        shares: int,
        max_cost: int,
    ) -> TradeReceipt:
        """Buy ``shares`` of ``side``; fails when cost plus fee exceeds ``max_cost``."""
        if shares <= 0:
            raise InvalidTradeError("shares must be > 0.")
        if account == self.settings.treasury_account:
            raise InvalidTradeError("The treasury account cannot trade.")
        now = self._now()

        def apply(state: LedgerState) -> TradeReceipt:
            market = state.require_market(market_id)
            require_tradeable(market, now)
            reserves = state.require_reserves(market_id)
            quote = self._quote(market, reserves, side, shares)
            if quote.total > max_cost:
                raise SlippageExceeded(
                    f"Buy of {shares} {side} would cost {quote.total} > max_cost {max_cost}.",
                    actual=quote.total,
                    limit=max_cost,
                )
            state.debit(account, quote.total)
            state.credit(self.settings.treasury_account, quote.fee)
            reserves.reserve += quote.cost
            reserves.collateral_in += quote.cost
            reserves.fees_collected += quote.fee
            reserves.add_shares(side, shares)
            position = state.position(market_id, account)
            position.add_shares(side, shares)
            position.cost_basis += quote.cost
            self._check_invariants(state, market_id)
            prices = _prices(market_id, reserves, self.virtual_liquidity)
            return TradeReceipt(
                action="buy",
                market_id=market_id,
                account=account,
                side=side,
                shares=shares,
                collateral=quote.cost,
                fee=quote.fee,
                net=quote.total,
                price_yes=prices.price_yes,
                price_no=prices.price_no,
                reserve_after=reserves.reserve,
                ts=now,
            )

        receipt = self._guarded(market_id, "buy", apply)
        self.logger.info(
            "Buy executed market=%s account=%s side=%s shares=%d total=%d",
            market_id,
            account,
            side,
            shares,
            receipt.net,
        )
        self._write_event("trade_executed", receipt.model_dump(mode="json"))
        return receipt

    def sell(
        self,
        market_id: str,
        account: str,
        side: Side,
        shares: int,
        min_proceeds: int,
    ) -> TradeReceipt:
        """Sell ``shares`` of ``side``; fails when net proceeds fall below ``min_proceeds``."""
        if shares <= 0:
            raise InvalidTradeError("shares must be > 0.")
        now = self._now()

        def apply(state: LedgerState) -> TradeReceipt:
            market = state.require_market(market_id)
            require_tradeable(market, now)
            reserves = state.require_reserves(market_id)
            position = state.position(market_id, account)
            held = position.shares(side)
            if held < shares:
                raise InsufficientSharesError(
                    f"Account {account} holds {held} {side} shares, cannot sell {shares}."
                )
            proceeds = sell_proceeds(
                side,
                shares,
                yes_shares=reserves.yes_shares,
                no_shares=reserves.no_shares,
                virtual_liquidity=self.virtual_liquidity,
            )
            if proceeds > reserves.reserve:
                raise InvalidTradeError(
                    f"Market {market_id} reserve {reserves.reserve} cannot cover a "
                    f"{proceeds} sale of {shares} {side}."
                )
            fee = fee_for(proceeds, market.fee_rate_bps)
            net = proceeds - fee
            if net < min_proceeds:
                raise SlippageExceeded(
                    f"Sell of {shares} {side} would pay {net} < min_proceeds {min_proceeds}.",
                    actual=net,
                    limit=min_proceeds,
                )
            basis_released = (position.cost_basis * shares) // position.total_shares
            position.add_shares(side, -shares)
            position.cost_basis -= basis_released
            reserves.add_shares(side, -shares)
            reserves.reserve -= proceeds
            reserves.collateral_out += proceeds
            reserves.fees_collected += fee
            state.credit(account, net)
            state.credit(self.settings.treasury_account, fee)
            self._check_invariants(state, market_id)
            prices = _prices(market_id, reserves, self.virtual_liquidity)
            return TradeReceipt(
                action="sell",
                market_id=market_id,
                account=account,
                side=side,
                shares=shares,
                collateral=proceeds,
                fee=fee,
                net=net,
                price_yes=prices.price_yes,
                price_no=prices.price_no,
                reserve_after=reserves.reserve,
                ts=now,
            )

        receipt = self._guarded(market_id, "sell", apply)
        self.logger.info(
            "Sell executed market=%s account=%s side=%s shares=%d net=%d",
            market_id,
            account,
            side,
            shares,
            receipt.net,
        )
        self._write_event("trade_executed", receipt.model_dump(mode="json"))
        return receipt

    def transfer_position(
        self,
        market_id: str,
        from_account: str,
        to_account: str,
        *,
        yes_shares: int = 0,
        no_shares: int = 0,
    ) -> TransferReceipt:
        """Move shares and their proportional cost basis between accounts."""
        if yes_shares < 0 or no_shares < 0 or yes_shares + no_shares == 0:
            raise InvalidTradeError("Transfer must move a positive number of shares.")
        if from_account == to_account:
            raise InvalidTradeError("Cannot transfer a position to the same account.")
        now = self._now()

        def apply(state: LedgerState) -> TransferReceipt:
            market = state.require_market(market_id)
            require_writable(market)
            source = state.position(market_id, from_account)
            if source.redeemed:
                raise InvalidTradeError(f"Position {source.key} was already redeemed.")
            if source.yes_shares < yes_shares or source.no_shares < no_shares:
                raise InsufficientSharesError(
                    f"Account {from_account} holds yes={source.yes_shares} "
                    f"no={source.no_shares}; cannot transfer yes={yes_shares} no={no_shares}."
                )
            moved = yes_shares + no_shares
            if moved == source.total_shares:
                basis_moved = source.cost_basis
            else:
                basis_moved = (source.cost_basis * moved) // source.total_shares
            target = state.position(market_id, to_account)
            if target.redeemed:
                raise InvalidTradeError(
                    f"Position {target.key} was already redeemed and cannot receive shares."
                )
            source.add_shares("yes", -yes_shares)
            source.add_shares("no", -no_shares)
            source.cost_basis -= basis_moved
            target.add_shares("yes", yes_shares)
            target.add_shares("no", no_shares)
            target.cost_basis += basis_moved
            self._check_invariants(state, market_id)
            return TransferReceipt(
                market_id=market_id,
                from_account=from_account,
                to_account=to_account,
                yes_shares=yes_shares,
                no_shares=no_shares,
                cost_basis_moved=basis_moved,
                ts=now,
            )

        receipt = self._guarded(market_id, "transfer_position", apply)
        self._write_event("position_transferred", receipt.model_dump(mode="json"))
        return receipt

    def redeem(self, market_id: str, account: str) -> RedemptionReceipt:
        """Pay out the account's position; repeat calls pay zero."""
        now = self._now()

        def apply(state: LedgerState) -> RedemptionReceipt:
            market = state.require_market(market_id)
            require_writable(market)
            if market.status == MarketStatus.CANCELED:
                outcome = Outcome.INVALID
            elif market.status == MarketStatus.RESOLVED:
                record = state.resolutions.get(market_id)
                outcome = Outcome.INVALID
                if record is not None and record.final_outcome is not None:
                    outcome = record.final_outcome
            else:
                raise ResolutionNotReady(
                    f"Market {market_id} is {market.status.name}; redemption requires RESOLVED."
                )
            reserves = state.require_reserves(market_id)
            snapshot = reserves.payout or build_payout_snapshot(state, market_id, outcome, now)
            position = state.positions.get(position_key(market_id, account))
            if position is None:
                return RedemptionReceipt(
                    market_id=market_id,
                    account=account,
                    outcome=snapshot.outcome,
                    mode=snapshot.mode,
                    ts=now,
                )
            if position.redeemed:
                return RedemptionReceipt(
                    market_id=market_id,
                    account=account,
                    outcome=snapshot.outcome,
                    mode=snapshot.mode,
                    already_redeemed=True,
                    ts=now,
                )
            payout, _ = _payout_for(snapshot, position)
            shares_redeemed = position.total_shares
            reserves.add_shares("yes", -position.yes_shares)
            reserves.add_shares("no", -position.no_shares)
            reserves.reserve -= payout
            reserves.collateral_out += payout
            position.yes_shares = 0
            position.no_shares = 0
            position.redeemed = True
            position.redeemed_amount = payout
            state.credit(account, payout)
            self._check_invariants(state, market_id)
            return RedemptionReceipt(
                market_id=market_id,
                account=account,
                outcome=snapshot.outcome,
                mode=snapshot.mode,
                shares_redeemed=shares_redeemed,
                payout=payout,
                ts=now,
            )

        receipt = self._guarded(market_id, "redeem", apply)
        if not receipt.already_redeemed:
            self.logger.info(
                "Redeemed market=%s account=%s mode=%s payout=%d",
                market_id,
                account,
                receipt.mode,
                receipt.payout,
            )
            self._write_event("position_redeemed", receipt.model_dump(mode="json"))
        return receipt

    def _quote(
        self,
        market: Market,
        reserves: ShareReserves,
        side: Side,
        shares: int,
    ) -> TradeQuote:
        cost = buy_cost(
            side,
            shares,
            yes_shares=reserves.yes_shares,
            no_shares=reserves.no_shares,
            virtual_liquidity=self.virtual_liquidity,
        )
        fee = fee_for(cost, market.fee_rate_bps)
        after = reserves.model_copy()
        after.add_shares(side, shares)
        return TradeQuote(
            market_id=market.market_id,
            side=side,
            shares=shares,
            cost=cost,
            fee=fee,
            total=cost + fee,
            price_before=_prices(market.market_id, reserves, self.virtual_liquidity).for_side(side),
            price_after=_prices(market.market_id, after, self.virtual_liquidity).for_side(side),
        )

    def _check_invariants(self, state: LedgerState, market_id: str) -> None:
        check_reserve_invariants(
            state,
            market_id,
            virtual_liquidity=self.virtual_liquidity,
            price_sum_tolerance=self.settings.price_sum_tolerance,
        )

    def _guarded(
        self,
        market_id: str,
        operation: str,
        fn: Callable[[LedgerState], T],
    ) -> T:
        try:
            return self.gateway.execute(operation, fn)
        except ReserveInvariantError as exc:
            self.halt_market(market_id, str(exc))
            raise

    def halt_market(self, market_id: str, reason: str) -> None:
        """Stop all further writes to ``market_id``."""

        def apply(state: LedgerState) -> None:
            market = state.require_market(market_id)
            market.halted = True
            market.halted_reason = reason

        self.gateway.execute("halt_market", apply)
        self.logger.critical(
            "Market halted after invariant violation market=%s reason=%s",
            market_id,
            sanitize_text(reason),
        )
        self._write_event("market_halted", {"market_id": market_id, "reason": reason})

    def _now(self) -> datetime:
        current = self._now_provider()
        return current.astimezone(UTC) if current.tzinfo else current.replace(tzinfo=UTC)

    def _write_event(self, event_type: str, payload: dict[str, object]) -> None:
        if self.journal is None:
            return
        try:
            self.journal.write_event(event_type=event_type, payload=payload)
        except JournalError as exc:
            safe_msg = sanitize_text(str(exc))
            self.logger.error("Failed to write %s journal event: %s", event_type, safe_msg)

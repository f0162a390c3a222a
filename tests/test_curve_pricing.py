"""AMM curve math, trades, transfers and redemption tests."""

from __future__ import annotations

import logging
import random
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from market_engine.config import Settings
from market_engine.engine import MarketEngine
from market_engine.exceptions import (
    InsufficientSharesError,
    InvalidTradeError,
    MarketHaltedError,
    ReserveInvariantError,
    ResolutionNotReady,
    SlippageExceeded,
)
from market_engine.ledger.memory import InMemoryLedger
from market_engine.models import MarketStatus, Outcome
from market_engine.pricing.curve import (
    PRICE_SCALE,
    buy_cost,
    fee_for,
    marginal_price,
    max_shares_for_budget,
    sell_proceeds,
)

START = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


class _Clock:
    def __init__(self, start: datetime) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **delta: float) -> None:
        self.current += timedelta(**delta)


def _settings(**overrides: Any) -> Settings:
    payload: dict[str, Any] = {
        "amm_virtual_liquidity": 100,
        "default_fee_rate_bps": 100,
        "admin_accounts": "admin",
        "resolver_account": "resolver",
        "treasury_account": "treasury",
        "retry_base_ms": 0,
        "retry_jitter_ms": 0,
    }
    payload.update(overrides)
    return Settings(**payload)


def _engine(**overrides: Any) -> tuple[MarketEngine, _Clock]:
    clock = _Clock(START)
    engine = MarketEngine(
        _settings(**overrides),
        InMemoryLedger(),
        logging.getLogger("test_curve_pricing"),
        now_provider=clock,
        sleep_fn=lambda _seconds: None,
    )
    return engine, clock


def _open_market(engine: MarketEngine, clock: _Clock) -> str:
    market = engine.create_market(
        "Will it rain in Paris on March 11?",
        "carol",
        clock() + timedelta(days=10),
    )
    engine.lifecycle.approve_market(market.market_id, "admin")
    return market.market_id


def test_marginal_prices_start_even_and_sum_to_one() -> None:
    yes = marginal_price("yes", yes_shares=0, no_shares=0, virtual_liquidity=100)
    no = marginal_price("no", yes_shares=0, no_shares=0, virtual_liquidity=100)
    assert yes == no == PRICE_SCALE // 2

    yes = marginal_price("yes", yes_shares=37, no_shares=5, virtual_liquidity=100)
    no = marginal_price("no", yes_shares=37, no_shares=5, virtual_liquidity=100)
    assert PRICE_SCALE - 1 <= yes + no <= PRICE_SCALE


def test_buy_rounds_up_and_sell_rounds_down() -> None:
    # 10 * 110 / 210 = 5.238...
    assert buy_cost("yes", 10, yes_shares=0, no_shares=0, virtual_liquidity=100) == 6
    # 50 * 100 / 200 = 25 exactly; 49 * 101 / 201 = 24.62...
    assert sell_proceeds("yes", 50, yes_shares=50, no_shares=0, virtual_liquidity=100) == 25
    assert sell_proceeds("yes", 49, yes_shares=50, no_shares=0, virtual_liquidity=100) == 24
    assert fee_for(6, 100) == 1
    assert fee_for(0, 100) == 0


def test_sell_more_than_outstanding_is_rejected_by_curve() -> None:
    with pytest.raises(ValueError):
        sell_proceeds("no", 5, yes_shares=10, no_shares=4, virtual_liquidity=100)


def test_max_shares_for_budget_is_largest_affordable() -> None:
    shares = max_shares_for_budget(
        "yes",
        7,
        yes_shares=0,
        no_shares=0,
        virtual_liquidity=100,
        fee_rate_bps=100,
    )
    assert shares == 11

    def total(k: int) -> int:
        cost = buy_cost("yes", k, yes_shares=0, no_shares=0, virtual_liquidity=100)
        return cost + fee_for(cost, 100)

    assert total(shares) <= 7 < total(shares + 1)
    assert (
        max_shares_for_budget(
            "yes",
            1,
            yes_shares=0,
            no_shares=0,
            virtual_liquidity=100,
            fee_rate_bps=100,
        )
        == 0
    )


def test_buy_moves_price_and_routes_fee_to_treasury() -> None:
    engine, clock = _engine()
    market_id = _open_market(engine, clock)
    engine.fund("alice", 1_000)

    before = engine.pricing.prices(market_id)
    receipt = engine.buy(market_id, "alice", "yes", 10, max_cost=10)

    assert receipt.collateral == 6
    assert receipt.fee == 1
    assert receipt.net == 7
    assert receipt.price_yes > before.price_yes
    assert engine.balance("alice") == 993
    assert engine.balance("treasury") == 1

    reserves = engine.pricing.reserves(market_id)
    assert reserves.reserve == 6
    assert reserves.collateral_in == 6
    assert reserves.fees_collected == 1
    assert engine.pricing.position(market_id, "alice").yes_shares == 10


def test_quote_matches_executed_buy() -> None:
    engine, clock = _engine()
    market_id = _open_market(engine, clock)
    engine.fund("alice", 1_000)

    quote = engine.pricing.quote(market_id, "no", 25)
    receipt = engine.buy(market_id, "alice", "no", 25, max_cost=quote.total)

    assert receipt.net == quote.total
    assert receipt.price_no == quote.price_after
    assert quote.price_after > quote.price_before


def test_buy_then_sell_never_returns_more_than_paid() -> None:
    engine, clock = _engine()
    market_id = _open_market(engine, clock)
    engine.fund("alice", 1_000)

    bought = engine.buy(market_id, "alice", "yes", 50, max_cost=1_000)
    sold = engine.pricing.sell(market_id, "alice", "yes", 50, min_proceeds=0)

    assert bought.collateral == 30
    assert sold.collateral == 25
    assert sold.net == 24
    assert engine.balance("alice") == 1_000 - bought.net + sold.net
    reserves = engine.pricing.reserves(market_id)
    assert reserves.reserve == reserves.collateral_in - reserves.collateral_out == 5
    position = engine.pricing.position(market_id, "alice")
    assert position.yes_shares == 0
    assert position.cost_basis == 0


def test_slippage_limits_leave_state_untouched() -> None:
    engine, clock = _engine()
    market_id = _open_market(engine, clock)
    engine.fund("alice", 1_000)

    with pytest.raises(SlippageExceeded) as excinfo:
        engine.buy(market_id, "alice", "yes", 10, max_cost=6)
    assert excinfo.value.actual == 7
    assert excinfo.value.limit == 6
    assert engine.balance("alice") == 1_000
    assert engine.pricing.reserves(market_id).reserve == 0

    engine.buy(market_id, "alice", "yes", 50, max_cost=1_000)
    with pytest.raises(SlippageExceeded):
        engine.pricing.sell(market_id, "alice", "yes", 50, min_proceeds=25)
    assert engine.pricing.position(market_id, "alice").yes_shares == 50


def test_trading_requires_open_unexpired_market() -> None:
    engine, clock = _engine()
    engine.fund("alice", 1_000)
    submitted = engine.create_market("Unapproved?", "carol", clock() + timedelta(days=1))
    with pytest.raises(InvalidTradeError):
        engine.buy(submitted.market_id, "alice", "yes", 1, max_cost=10)

    market_id = _open_market(engine, clock)
    clock.advance(days=11)
    with pytest.raises(InvalidTradeError):
        engine.buy(market_id, "alice", "yes", 1, max_cost=10)


def test_treasury_cannot_trade_and_overselling_fails() -> None:
    engine, clock = _engine()
    market_id = _open_market(engine, clock)
    engine.fund("treasury", 1_000)
    engine.fund("alice", 1_000)

    with pytest.raises(InvalidTradeError):
        engine.buy(market_id, "treasury", "yes", 1, max_cost=10)
    engine.buy(market_id, "alice", "no", 5, max_cost=100)
    with pytest.raises(InsufficientSharesError):
        engine.pricing.sell(market_id, "alice", "no", 6, min_proceeds=0)


def test_shares_for_collateral_uses_market_fee() -> None:
    engine, clock = _engine()
    market_id = _open_market(engine, clock)
    assert engine.pricing.shares_for_collateral(market_id, "yes", 7) == 11


def test_transfer_moves_shares_and_proportional_basis() -> None:
    engine, clock = _engine()
    market_id = _open_market(engine, clock)
    engine.fund("alice", 1_000)
    engine.buy(market_id, "alice", "yes", 40, max_cost=1_000)
    reserve_before = engine.pricing.reserves(market_id).reserve

    receipt = engine.pricing.transfer_position(market_id, "alice", "bob", yes_shares=10)

    assert receipt.cost_basis_moved == 6
    alice = engine.pricing.position(market_id, "alice")
    bob = engine.pricing.position(market_id, "bob")
    assert (alice.yes_shares, alice.cost_basis) == (30, 18)
    assert (bob.yes_shares, bob.cost_basis) == (10, 6)
    assert engine.pricing.reserves(market_id).reserve == reserve_before

    with pytest.raises(InsufficientSharesError):
        engine.pricing.transfer_position(market_id, "bob", "alice", yes_shares=11)
    with pytest.raises(InvalidTradeError):
        engine.pricing.transfer_position(market_id, "bob", "bob", yes_shares=1)


def test_redeem_pays_winners_once() -> None:
    engine, clock = _engine(
        confidence_weight_market=0.2,
        confidence_weight_evidence=0.1,
        confidence_weight_external=0.7,
    )
    market_id = _open_market(engine, clock)
    engine.fund("alice", 1_000)
    engine.fund("bob", 1_000)
    engine.buy(market_id, "alice", "yes", 60, max_cost=1_000)
    engine.buy(market_id, "bob", "no", 20, max_cost=1_000)
    assert engine.pricing.reserves(market_id).reserve == 46

    with pytest.raises(ResolutionNotReady):
        engine.redeem(market_id, "alice")

    clock.advance(days=10)
    record = engine.lifecycle.preliminary_resolve(
        market_id,
        Outcome.YES,
        "resolver",
        external_yes_score=100.0,
    )
    assert record.confidence >= 80.0
    clock.advance(hours=169)
    engine.final_resolve(market_id, Outcome.YES, "resolver")

    alice_before = engine.balance("alice")
    first = engine.redeem(market_id, "alice")
    assert first.mode == "winner"
    assert first.payout == 46
    assert first.shares_redeemed == 60
    assert engine.balance("alice") == alice_before + 46

    again = engine.redeem(market_id, "alice")
    assert again.already_redeemed is True
    assert again.payout == 0
    assert engine.balance("alice") == alice_before + 46

    loser = engine.redeem(market_id, "bob")
    assert loser.payout == 0
    reserves = engine.pricing.reserves(market_id)
    assert reserves.reserve == 0
    assert reserves.yes_shares == reserves.no_shares == 0

    stranger = engine.redeem(market_id, "dave")
    assert stranger.payout == 0
    assert stranger.shares_redeemed == 0


def test_cancel_refunds_cost_basis() -> None:
    engine, clock = _engine()
    market_id = _open_market(engine, clock)
    engine.fund("alice", 1_000)
    engine.fund("bob", 1_000)
    engine.buy(market_id, "alice", "yes", 30, max_cost=1_000)
    engine.buy(market_id, "bob", "no", 30, max_cost=1_000)

    engine.lifecycle.cancel_market(market_id, "admin", reason="ambiguous question")
    assert engine.lifecycle.get_market(market_id).status == MarketStatus.CANCELED

    alice = engine.redeem(market_id, "alice")
    bob = engine.redeem(market_id, "bob")
    assert alice.mode == bob.mode == "refund"
    assert alice.payout == 17
    assert bob.payout == 15
    assert engine.pricing.reserves(market_id).reserve == 0


def test_invariant_violation_halts_market() -> None:
    engine, clock = _engine()
    market_id = _open_market(engine, clock)
    engine.fund("alice", 1_000)
    engine.buy(market_id, "alice", "yes", 10, max_cost=100)

    with engine.ledger.transaction() as state:
        state.reserves[market_id].collateral_in += 5

    with pytest.raises(ReserveInvariantError):
        engine.buy(market_id, "alice", "yes", 10, max_cost=100)

    market = engine.lifecycle.get_market(market_id)
    assert market.halted is True
    assert engine.pricing.position(market_id, "alice").yes_shares == 10
    with pytest.raises(MarketHaltedError):
        engine.buy(market_id, "alice", "yes", 1, max_cost=100)
    with pytest.raises(MarketHaltedError):
        engine.pricing.sell(market_id, "alice", "yes", 1, min_proceeds=0)


def test_transfer_into_redeemed_position_is_rejected() -> None:
    engine, clock = _engine()
    market_id = _open_market(engine, clock)
    engine.fund("alice", 1_000)
    engine.fund("bob", 1_000)
    engine.buy(market_id, "alice", "yes", 30, max_cost=1_000)
    engine.buy(market_id, "bob", "no", 30, max_cost=1_000)
    engine.lifecycle.cancel_market(market_id, "admin", reason="ambiguous question")
    engine.redeem(market_id, "bob")

    with pytest.raises(InvalidTradeError, match="cannot receive shares"):
        engine.pricing.transfer_position(market_id, "alice", "bob", yes_shares=10)

    assert engine.pricing.position(market_id, "alice").yes_shares == 30
    refund = engine.redeem(market_id, "alice")
    assert refund.payout == 17
    assert engine.pricing.reserves(market_id).reserve == 0
    assert engine.lifecycle.get_market(market_id).halted is False


def test_committed_results_are_detached_from_ledger() -> None:
    engine, clock = _engine()
    market_id = _open_market(engine, clock)

    market = engine.lifecycle.cancel_market(market_id, "admin", reason="duplicate")
    market.status = MarketStatus.OPEN
    market.halted = True

    stored = engine.lifecycle.get_market(market_id)
    assert stored.status == MarketStatus.CANCELED
    assert stored.halted is False


def test_price_sum_outside_tolerance_halts_market() -> None:
    strict, clock = _engine(price_sum_tolerance=1e-9)
    market_id = _open_market(strict, clock)
    strict.fund("alice", 1_000)

    # 137/237 and 100/237 floor to 578059 + 421940 = 999999 millionths.
    with pytest.raises(ReserveInvariantError, match="prices sum"):
        strict.buy(market_id, "alice", "yes", 37, max_cost=1_000)
    assert strict.lifecycle.get_market(market_id).halted is True
    assert strict.balance("alice") == 1_000

    lenient, clock = _engine()
    market_id = _open_market(lenient, clock)
    lenient.fund("alice", 1_000)
    lenient.buy(market_id, "alice", "yes", 37, max_cost=1_000)
    assert lenient.lifecycle.get_market(market_id).halted is False


def test_sale_larger_than_reserve_is_rejected() -> None:
    engine, clock = _engine()
    market_id = _open_market(engine, clock)
    engine.fund("alice", 1_000)
    engine.buy(market_id, "alice", "yes", 10, max_cost=1_000)

    # Leave less collateral in the pool than the curve would pay out.
    with engine.ledger.transaction() as state:
        reserves = state.reserves[market_id]
        reserves.reserve -= 3
        reserves.collateral_out += 3
        state.credit("alice", 3)

    with pytest.raises(InvalidTradeError, match="cannot cover"):
        engine.pricing.sell(market_id, "alice", "yes", 10, min_proceeds=0)
    assert engine.pricing.reserves(market_id).reserve == 3
    assert engine.pricing.position(market_id, "alice").yes_shares == 10
    assert engine.lifecycle.get_market(market_id).halted is False


def test_interleaved_trades_keep_reserve_accounting() -> None:
    engine, clock = _engine()
    market_id = _open_market(engine, clock)
    accounts = ["alice", "bob", "carol", "dave"]
    for account in accounts:
        engine.fund(account, 100_000)
    rng = random.Random(20260301)

    for _step in range(200):
        account = rng.choice(accounts)
        side = rng.choice(["yes", "no"])
        try:
            if rng.random() < 0.55:
                engine.buy(market_id, account, side, rng.randint(1, 60), max_cost=100_000)
            else:
                held = engine.pricing.position(market_id, account).shares(side)
                shares = rng.randint(1, held) if held else 1
                engine.pricing.sell(market_id, account, side, shares, min_proceeds=0)
        except (InvalidTradeError, InsufficientSharesError):
            pass

        reserves = engine.pricing.reserves(market_id)
        assert reserves.reserve >= 0
        assert reserves.reserve == reserves.collateral_in - reserves.collateral_out
        assert engine.lifecycle.get_market(market_id).halted is False
        snapshot = engine.ledger.snapshot()
        assert snapshot.total_supply() == snapshot.minted

"""Market lifecycle transitions and two-phase resolution tests."""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from market_engine.config import Settings
from market_engine.engine import MarketEngine
from market_engine.exceptions import (
    AlreadyResolved,
    InvalidTransition,
    MarketValidationError,
    ResolutionNotReady,
    UnauthorizedActionError,
)
from market_engine.ledger.memory import InMemoryLedger
from market_engine.lifecycle.machine import is_terminal_status
from market_engine.models import MarketStatus, Outcome

START = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


class _Clock:
    def __init__(self, start: datetime) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **delta: float) -> None:
        self.current += timedelta(**delta)


def _engine(**overrides: Any) -> tuple[MarketEngine, _Clock]:
    payload: dict[str, Any] = {
        "amm_virtual_liquidity": 100,
        "admin_accounts": "admin,ops",
        "resolver_account": "resolver",
        "treasury_account": "treasury",
        "retry_base_ms": 0,
        "retry_jitter_ms": 0,
    }
    payload.update(overrides)
    clock = _Clock(START)
    engine = MarketEngine(
        Settings(**payload),
        InMemoryLedger(),
        logging.getLogger("test_lifecycle"),
        now_provider=clock,
        sleep_fn=lambda _seconds: None,
    )
    return engine, clock


def _pending_market(engine: MarketEngine, clock: _Clock, outcome: Outcome = Outcome.NO) -> str:
    market = engine.create_market(
        "Will the bridge reopen by June?",
        "carol",
        clock() + timedelta(days=5),
    )
    engine.lifecycle.approve_market(market.market_id, "admin")
    clock.advance(days=5)
    engine.preliminary_resolve(market.market_id, outcome, "resolver")
    return market.market_id


def test_create_market_provisions_resolver_and_history() -> None:
    engine, clock = _engine()
    market = engine.create_market(
        "  Will  it snow\tin Oslo? ",
        "carol",
        clock() + timedelta(days=3),
    )

    assert market.status == MarketStatus.SUBMITTED
    assert market.question == "Will it snow in Oslo?"
    assert market.resolver == "resolver"
    assert market.market_id.startswith("mkt-")
    assert engine.pricing.reserves(market.market_id).reserve == 0

    history = engine.lifecycle.history(market.market_id)
    assert [event.event for event in history] == ["market_created"]
    assert history[0].metadata["resolver"] == "resolver"


@pytest.mark.parametrize(
    ("question", "expires_in", "fee"),
    [
        ("", timedelta(days=1), None),
        ("Valid question?", timedelta(seconds=-1), None),
        ("Valid question?", timedelta(days=1), 10_000),
    ],
)
def test_create_market_validation(question: str, expires_in: timedelta, fee: int | None) -> None:
    engine, clock = _engine()
    with pytest.raises(MarketValidationError):
        engine.create_market(question, "carol", clock() + expires_in, fee_rate_bps=fee)


def test_approve_requires_admin_and_valid_source_state() -> None:
    engine, clock = _engine()
    market = engine.create_market("Approve me?", "carol", clock() + timedelta(days=1))

    with pytest.raises(UnauthorizedActionError):
        engine.lifecycle.approve_market(market.market_id, "carol")

    opened = engine.lifecycle.approve_market(market.market_id, "ops")
    assert opened.status == MarketStatus.OPEN

    with pytest.raises(InvalidTransition) as excinfo:
        engine.lifecycle.approve_market(market.market_id, "admin")
    assert excinfo.value.current == "OPEN"
    assert excinfo.value.target == "OPEN"


def test_preliminary_requires_expiry_resolver_and_open_market() -> None:
    engine, clock = _engine()
    submitted = engine.create_market("Never approved?", "carol", clock() + timedelta(days=1))
    with pytest.raises(InvalidTransition):
        engine.preliminary_resolve(submitted.market_id, Outcome.YES, "resolver")

    market = engine.create_market("Approved?", "carol", clock() + timedelta(days=1))
    engine.lifecycle.approve_market(market.market_id, "admin")
    with pytest.raises(ResolutionNotReady):
        engine.preliminary_resolve(market.market_id, Outcome.YES, "resolver")

    clock.advance(days=1)
    with pytest.raises(UnauthorizedActionError):
        engine.preliminary_resolve(market.market_id, Outcome.YES, "carol")
    with pytest.raises(MarketValidationError):
        engine.preliminary_resolve(market.market_id, Outcome.INVALID, "resolver")

    record = engine.preliminary_resolve(market.market_id, Outcome.YES, "resolver")
    assert engine.lifecycle.get_market(market.market_id).status == MarketStatus.PENDING_RESOLUTION
    assert record.preliminary_outcome == Outcome.YES
    assert record.dispute_window_end == clock() + timedelta(hours=168)
    # No trades, no evidence and no external signal: 0.5 * 50 + 0.2 * 50.
    assert record.confidence == pytest.approx(35.0)

    with pytest.raises(AlreadyResolved):
        engine.preliminary_resolve(market.market_id, Outcome.NO, "resolver")


def test_cancel_is_only_reachable_before_resolution() -> None:
    engine, clock = _engine()
    market = engine.create_market("Cancel me?", "carol", clock() + timedelta(days=1))
    with pytest.raises(UnauthorizedActionError):
        engine.lifecycle.cancel_market(market.market_id, "carol")
    canceled = engine.lifecycle.cancel_market(market.market_id, "admin", reason="duplicate")
    assert canceled.status == MarketStatus.CANCELED
    assert is_terminal_status(MarketStatus.CANCELED)

    market_id = _pending_market(engine, clock)
    with pytest.raises(InvalidTransition):
        engine.lifecycle.cancel_market(market_id, "admin")


def test_final_resolve_waits_for_window_and_threshold() -> None:
    engine, clock = _engine()
    market_id = _pending_market(engine, clock)

    with pytest.raises(ResolutionNotReady):
        engine.final_resolve(market_id, Outcome.NO, "resolver")

    clock.advance(hours=168)
    with pytest.raises(ResolutionNotReady):
        engine.final_resolve(market_id, Outcome.NO, "resolver")
    assert engine.lifecycle.get_market(market_id).status == MarketStatus.PENDING_RESOLUTION


def test_extend_dispute_window_after_low_confidence_window() -> None:
    engine, clock = _engine()
    market_id = _pending_market(engine, clock)

    with pytest.raises(ResolutionNotReady):
        engine.lifecycle.extend_dispute_window(market_id)

    clock.advance(hours=170)
    record = engine.lifecycle.extend_dispute_window(market_id)
    assert record.window_extensions == 1
    assert record.dispute_window_end == clock() + timedelta(hours=168)
    assert not record.window_closed(clock())
    events = [event.event for event in engine.lifecycle.history(market_id)]
    assert events[-1] == "dispute_window_extended"


def test_extension_is_capped_at_resolution_ceiling() -> None:
    engine, clock = _engine(resolution_ceiling_days=10)
    market_id = _pending_market(engine, clock)
    expires_at = engine.lifecycle.get_market(market_id).expires_at

    clock.advance(days=8)
    record = engine.lifecycle.extend_dispute_window(market_id)
    assert record.dispute_window_end == expires_at + timedelta(days=10)


def test_ceiling_applies_fallback_outcome() -> None:
    engine, clock = _engine()
    market_id = _pending_market(engine, clock)
    expires_at = engine.lifecycle.get_market(market_id).expires_at

    clock.current = expires_at + timedelta(days=100)
    record = engine.final_resolve(market_id, Outcome.NO, "resolver")

    assert record.final_outcome == Outcome.INVALID
    assert record.fallback_applied is True
    assert record.sealed is True
    assert record.resolved_by == "automated"
    assert engine.lifecycle.get_market(market_id).status == MarketStatus.RESOLVED

    with pytest.raises(AlreadyResolved):
        engine.final_resolve(market_id, Outcome.NO, "resolver")
    with pytest.raises(InvalidTransition):
        engine.lifecycle.cancel_market(market_id, "admin")


def test_admin_override_is_recorded() -> None:
    engine, clock = _engine(fallback_outcome="no")
    market_id = _pending_market(engine, clock)
    expires_at = engine.lifecycle.get_market(market_id).expires_at

    clock.current = expires_at + timedelta(days=101)
    record = engine.final_resolve(market_id, Outcome.YES, "admin")
    assert record.final_outcome == Outcome.NO
    assert record.resolved_by == "admin"


def test_list_markets_filters_by_status() -> None:
    engine, clock = _engine()
    first = engine.create_market("First?", "carol", clock() + timedelta(days=1))
    clock.advance(seconds=1)
    second = engine.create_market("Second?", "carol", clock() + timedelta(days=1))
    engine.lifecycle.approve_market(second.market_id, "admin")

    assert [m.market_id for m in engine.lifecycle.list_markets()] == [
        first.market_id,
        second.market_id,
    ]
    assert [m.market_id for m in engine.lifecycle.list_markets(MarketStatus.OPEN)] == [
        second.market_id
    ]

"""Resolution monitor cycle tests: preliminary, finalization, extension, fallback."""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from market_engine.config import Settings
from market_engine.disputes.models import DisputeStatus
from market_engine.engine import MarketEngine
from market_engine.exceptions import SignalProviderError
from market_engine.journal import JournalWriter
from market_engine.ledger.memory import InMemoryLedger
from market_engine.models import Market, MarketStatus, Outcome
from market_engine.monitor import preliminary_outcome_for
from market_engine.signals.base import ExternalSignalProvider, StaticSignalProvider
from market_engine.signals.models import ExternalSignal

START = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


class _Clock:
    def __init__(self, start: datetime) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **delta: float) -> None:
        self.current += timedelta(**delta)


class _FailingProvider(ExternalSignalProvider):
    def __init__(self, category: str) -> None:
        self.category = category
        self.calls = 0

    def fetch_signal(self, market: Market) -> ExternalSignal | None:
        self.calls += 1
        raise SignalProviderError("provider unavailable", category=self.category)

    def close(self) -> None:
        return None


class _RacingProvider(ExternalSignalProvider):
    """Resolves the market itself before answering, like a concurrent resolver would."""

    def __init__(self) -> None:
        self.engine: MarketEngine | None = None

    def fetch_signal(self, market: Market) -> ExternalSignal | None:
        assert self.engine is not None
        self.engine.lifecycle.preliminary_resolve(market.market_id, Outcome.YES, "resolver")
        return None

    def close(self) -> None:
        return None


class _CancelingProvider(ExternalSignalProvider):
    """Cancels the market mid-cycle, like an admin acting between scan and write."""

    def __init__(self) -> None:
        self.engine: MarketEngine | None = None

    def fetch_signal(self, market: Market) -> ExternalSignal | None:
        assert self.engine is not None
        self.engine.lifecycle.cancel_market(market.market_id, "admin", reason="withdrawn")
        return None

    def close(self) -> None:
        return None


def _engine(
    provider: ExternalSignalProvider | None = None,
    journal: JournalWriter | None = None,
    **overrides: Any,
) -> tuple[MarketEngine, _Clock]:
    payload: dict[str, Any] = {
        "amm_virtual_liquidity": 100,
        "admin_accounts": "admin",
        "resolver_account": "resolver",
        "treasury_account": "treasury",
        "retry_max_attempts": 3,
        "retry_base_ms": 0,
        "retry_jitter_ms": 0,
    }
    payload.update(overrides)
    clock = _Clock(START)
    engine = MarketEngine(
        Settings(**payload),
        InMemoryLedger(),
        logging.getLogger("test_monitor"),
        signal_provider=provider,
        journal=journal,
        now_provider=clock,
        sleep_fn=lambda _seconds: None,
    )
    engine.fund("alice", 10_000)
    engine.fund("bob", 1_000)
    return engine, clock


def _open_market(engine: MarketEngine, clock: _Clock, *, no_shares: int = 900) -> str:
    market = engine.create_market(
        "Will the referendum pass?",
        "carol",
        clock() + timedelta(days=5),
    )
    engine.lifecycle.approve_market(market.market_id, "admin")
    if no_shares:
        engine.buy(market.market_id, "alice", "no", no_shares, max_cost=10_000)
    return market.market_id


@pytest.mark.parametrize(
    ("yes_shares", "no_shares", "yes_score", "expected"),
    [
        (10, 5, None, Outcome.YES),
        (5, 10, 99.0, Outcome.NO),
        (7, 7, None, Outcome.NO),
        (0, 0, 70.0, Outcome.YES),
        (0, 0, 50.0, Outcome.NO),
        (0, 0, None, Outcome.NO),
    ],
)
def test_preliminary_outcome_rule(
    yes_shares: int,
    no_shares: int,
    yes_score: float | None,
    expected: Outcome,
) -> None:
    signal = None
    if yes_score is not None:
        signal = ExternalSignal(market_id="m1", yes_score=yes_score, source="t", fetched_at=START)
    assert preliminary_outcome_for(yes_shares, no_shares, signal) == expected


def test_full_cycle_from_expiry_to_redemption(tmp_path: Path) -> None:
    provider = StaticSignalProvider()
    journal = JournalWriter(journal_dir=tmp_path / "journal", session_id="monitor-test")
    engine, clock = _engine(provider, journal)
    market_id = _open_market(engine, clock)
    provider.set_score(market_id, 20.0)

    assert engine.monitor.run_cycle().scanned == 0

    clock.advance(days=5)
    report = engine.monitor.run_cycle()
    assert report.actions_for(market_id) == ["preliminary_resolved"]
    record = engine.lifecycle.get_record(market_id)
    assert record is not None
    assert record.preliminary_outcome == Outcome.NO
    assert record.external_source == "static"
    assert record.confidence == pytest.approx(79.4545, abs=1e-3)

    clock.advance(hours=1)
    report = engine.monitor.run_cycle()
    assert report.actions == []
    assert report.noops == [market_id]

    dispute_id = engine.submit_dispute(market_id, "bob", 100, "Audit confirms NO.", Outcome.NO)
    engine.disputes.validate_dispute(dispute_id, True, True, "admin")

    report = engine.monitor.run_cycle()
    assert report.actions_for(market_id) == ["finalized"]
    record = engine.lifecycle.get_record(market_id)
    assert record is not None
    assert record.final_outcome == Outcome.NO
    assert record.resolved_by == "automated"
    assert record.closed_early is True
    assert engine.disputes.get_dispute(dispute_id).status == DisputeStatus.ACCEPTED
    assert engine.balance("bob") == 1_000

    receipt = engine.redeem(market_id, "alice")
    assert receipt.payout == 819
    assert engine.monitor.run_cycle().scanned == 0

    actions = [event["payload"]["action"] for event in journal.read_events("monitor_action")]
    assert actions == ["preliminary_resolved", "finalized"]


def test_unreviewed_dispute_flags_for_review_then_extends() -> None:
    provider = StaticSignalProvider()
    engine, clock = _engine(provider)
    market_id = _open_market(engine, clock)
    provider.set_score(market_id, 20.0)
    clock.advance(days=5)
    engine.monitor.run_cycle()
    dispute_id = engine.submit_dispute(market_id, "bob", 100, "Counting error.")

    clock.advance(hours=168)
    report = engine.monitor.run_cycle()
    assert report.actions_for(market_id) == ["flagged_for_review"]
    record = engine.lifecycle.get_record(market_id)
    assert record is not None
    assert record.requires_review is True

    report = engine.monitor.run_cycle()
    assert report.actions == []
    assert report.noops == [market_id]

    engine.disputes.resolve_dispute(dispute_id, False, "admin")
    report = engine.monitor.run_cycle()
    assert report.actions_for(market_id) == ["window_extended"]
    record = engine.lifecycle.get_record(market_id)
    assert record is not None
    assert record.window_extensions == 1
    assert engine.lifecycle.get_market(market_id).status == MarketStatus.PENDING_RESOLUTION


def test_ceiling_forces_fallback_resolution() -> None:
    engine, clock = _engine()
    market_id = _open_market(engine, clock, no_shares=0)
    expires_at = engine.lifecycle.get_market(market_id).expires_at

    clock.advance(days=5)
    assert engine.monitor.run_cycle().actions_for(market_id) == ["preliminary_resolved"]
    clock.advance(hours=168)
    assert engine.monitor.run_cycle().actions_for(market_id) == ["window_extended"]

    clock.current = expires_at + timedelta(days=100)
    report = engine.monitor.run_cycle()
    assert report.actions_for(market_id) == ["fallback_finalized"]
    record = engine.lifecycle.get_record(market_id)
    assert record is not None
    assert record.final_outcome == Outcome.INVALID
    assert record.fallback_applied is True
    assert engine.lifecycle.get_market(market_id).status == MarketStatus.RESOLVED


def test_ceiling_expires_active_disputes_with_full_refund() -> None:
    engine, clock = _engine()
    market_id = _open_market(engine, clock)
    expires_at = engine.lifecycle.get_market(market_id).expires_at
    clock.advance(days=5)
    engine.monitor.run_cycle()
    dispute_id = engine.submit_dispute(market_id, "bob", 100, "Unreviewed challenge.")

    clock.current = expires_at + timedelta(days=100)
    report = engine.monitor.run_cycle()

    assert report.actions_for(market_id) == ["fallback_finalized"]
    dispute = engine.disputes.get_dispute(dispute_id)
    assert dispute.status == DisputeStatus.EXPIRED
    assert dispute.refunded_amount == 100
    assert engine.balance("bob") == 1_000


def test_transient_provider_failure_skips_market() -> None:
    provider = _FailingProvider("server")
    engine, clock = _engine(provider)
    market_id = _open_market(engine, clock)
    clock.advance(days=5)

    report = engine.monitor.run_cycle()

    assert report.skipped == [market_id]
    assert report.actions == []
    assert provider.calls == 3
    assert engine.lifecycle.get_market(market_id).status == MarketStatus.OPEN


def test_non_retryable_provider_failure_means_no_signal() -> None:
    provider = _FailingProvider("validation")
    engine, clock = _engine(provider)
    market_id = _open_market(engine, clock)
    clock.advance(days=5)

    report = engine.monitor.run_cycle()

    assert report.actions_for(market_id) == ["preliminary_resolved"]
    assert provider.calls == 1
    record = engine.lifecycle.get_record(market_id)
    assert record is not None
    assert record.external_yes_score is None


def test_concurrent_advance_is_a_noop() -> None:
    provider = _RacingProvider()
    engine, clock = _engine(provider)
    provider.engine = engine
    market_id = _open_market(engine, clock)
    clock.advance(days=5)

    report = engine.monitor.run_cycle()

    assert report.noops == [market_id]
    assert report.actions == []
    assert report.errors == []
    record = engine.lifecycle.get_record(market_id)
    assert record is not None
    assert record.preliminary_outcome == Outcome.YES


def test_invalid_transition_is_reported_as_error() -> None:
    provider = _CancelingProvider()
    engine, clock = _engine(provider)
    provider.engine = engine
    market_id = _open_market(engine, clock)
    clock.advance(days=5)

    report = engine.monitor.run_cycle()

    assert report.actions == []
    assert report.noops == []
    assert report.errors == [f"{market_id}: invalid transition CANCELED -> PENDING_RESOLUTION"]
    assert engine.lifecycle.get_market(market_id).status == MarketStatus.CANCELED
    assert engine.lifecycle.get_record(market_id) is None


def test_halted_markets_and_batch_size() -> None:
    engine, clock = _engine(monitor_batch_size=1)
    halted = _open_market(engine, clock, no_shares=0)
    engine.pricing.halt_market(halted, "manual test halt")
    clock.advance(seconds=1)
    first = engine.create_market("First live?", "carol", clock() + timedelta(days=5))
    clock.advance(seconds=1)
    second = engine.create_market("Second live?", "carol", clock() + timedelta(days=5))
    for market in (first, second):
        engine.lifecycle.approve_market(market.market_id, "admin")

    clock.advance(days=6)
    report = engine.monitor.run_cycle()

    assert report.scanned == 1
    assert report.actions_for(first.market_id) == ["preliminary_resolved"]
    assert engine.lifecycle.get_market(halted).status == MarketStatus.OPEN

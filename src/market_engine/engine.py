"""Facade wiring the ledger, pricing, lifecycle, disputes, monitor and synchronizer."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from .config import Settings
from .disputes.ledger import DisputeLedger
from .disputes.models import Evidence
from .journal import JournalWriter
from .ledger.gateway import LedgerGateway
from .ledger.memory import InMemoryLedger
from .lifecycle.machine import MarketLifecycle
from .lifecycle.models import ResolutionRecord
from .models import Market, Outcome, Side
from .monitor.resolution_monitor import ResolutionMonitor
from .pricing.engine import PricingEngine
from .pricing.models import RedemptionReceipt, TradeReceipt
from .scheduling import PeriodicTask, Scheduler
from .signals.base import ExternalSignalProvider
from .signals.http import HttpSignalProvider
from .sync.store import SecondaryStore
from .sync.synchronizer import StateSynchronizer


class MarketEngine:
    """One authoritative ledger plus every component that reads or writes it."""

    def __init__(
        self,
        settings: Settings,
        ledger: InMemoryLedger,
        logger: logging.Logger,
        *,
        store: SecondaryStore | None = None,
        signal_provider: ExternalSignalProvider | None = None,
        journal: JournalWriter | None = None,
        now_provider: Callable[[], datetime] | None = None,
        sleep_fn: Callable[[float], None] | None = None,
    ) -> None:
        self.settings = settings
        self.ledger = ledger
        self.logger = logger
        self.store = store
        self.signal_provider = signal_provider
        self.journal = journal
        self._now_provider = now_provider or (lambda: datetime.now(UTC))
        self._sleep = sleep_fn or time.sleep

        self.gateway = LedgerGateway(ledger, settings, logger, sleep_fn=self._sleep)
        common: dict[str, Any] = {
            "journal": journal,
            "now_provider": self._now_provider,
        }
        self.pricing = PricingEngine(settings, self.gateway, logger, **common)
        self.lifecycle = MarketLifecycle(settings, self.gateway, logger, **common)
        self.disputes = DisputeLedger(settings, self.gateway, logger, **common)
        self.synchronizer = (
            StateSynchronizer(settings, self.gateway, store, logger, **common)
            if store is not None
            else None
        )
        self.monitor = ResolutionMonitor(
            settings,
            self.lifecycle,
            self.disputes,
            self.pricing,
            logger,
            signal_provider=signal_provider,
            synchronizer=self.synchronizer,
            sleep_fn=self._sleep,
            **common,
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        logger: logging.Logger,
        *,
        journal: JournalWriter | None = None,
        signal_provider: ExternalSignalProvider | None = None,
        now_provider: Callable[[], datetime] | None = None,
    ) -> MarketEngine:
        """Load the ledger snapshot and open the secondary store named in settings."""
        ledger = InMemoryLedger.load(settings.ledger_state_path)
        store = SecondaryStore(settings.store_database_url, logger)
        store.init_schema()
        if signal_provider is None and settings.signal_api_base_url is not None:
            signal_provider = HttpSignalProvider(settings, logger)
        return cls(
            settings,
            ledger,
            logger,
            store=store,
            signal_provider=signal_provider,
            journal=journal,
            now_provider=now_provider,
        )

    def fund(self, account: str, amount: int) -> int:
        """Mint collateral to ``account`` and return its new balance."""
        balance = self.ledger.mint(account, amount)
        self.logger.info("Funded account=%s amount=%d balance=%d", account, amount, balance)
        return balance

    def balance(self, account: str) -> int:
        return self.gateway.read("balance", lambda state: state.balance_of(account))

    def create_market(
        self,
        question: str,
        creator: str,
        expires_at: datetime,
        *,
        fee_rate_bps: int | None = None,
        collateral_token: str | None = None,
    ) -> Market:
        market = self.lifecycle.create_market(
            question,
            creator,
            expires_at,
            fee_rate_bps=fee_rate_bps,
            collateral_token=collateral_token,
        )
        self.sync_market(market.market_id)
        return market

    def buy(
        self,
        market_id: str,
        account: str,
        side: Side,
        shares: int,
        max_cost: int,
    ) -> TradeReceipt:
        receipt = self.pricing.buy(market_id, account, side, shares, max_cost)
        self.sync_market(market_id)
        return receipt

    def preliminary_resolve(
        self,
        market_id: str,
        outcome: Outcome,
        actor: str,
    ) -> ResolutionRecord:
        record = self.lifecycle.preliminary_resolve(market_id, outcome, actor)
        self.sync_market(market_id)
        return record

    def submit_dispute(
        self,
        market_id: str,
        account: str,
        bond_amount: int,
        evidence: Evidence | str,
        declared_outcome: Outcome | None = None,
    ) -> str:
        dispute_id = self.disputes.submit_dispute(
            market_id,
            account,
            bond_amount,
            evidence,
            declared_outcome,
        )
        self.sync_market(market_id)
        return dispute_id

    def final_resolve(self, market_id: str, outcome: Outcome, actor: str) -> ResolutionRecord:
        record = self.lifecycle.final_resolve(market_id, outcome, actor)
        self.sync_market(market_id)
        return record

    def redeem(self, market_id: str, account: str) -> RedemptionReceipt:
        receipt = self.pricing.redeem(market_id, account)
        self.sync_market(market_id)
        return receipt

    def build_scheduler(self, *, persist: bool = False) -> Scheduler:
        """Monitor and reconciliation tasks on the configured intervals.

        With ``persist`` the ledger is saved after every tick that ran a task.
        """
        tasks = [
            PeriodicTask(
                name="resolution_monitor",
                interval_seconds=self.settings.monitor_interval_seconds,
                fn=self.monitor.run_cycle,
            )
        ]
        if self.synchronizer is not None:
            tasks.append(
                PeriodicTask(
                    name="state_reconcile",
                    interval_seconds=self.settings.sync_interval_seconds,
                    fn=self.synchronizer.reconcile,
                )
            )
        return Scheduler(
            tasks,
            self.logger,
            now_provider=self._now_provider,
            sleep_fn=self._sleep,
            on_tick=(lambda _ran: self.save()) if persist else None,
        )

    def save(self) -> None:
        self.ledger.save(self.settings.ledger_state_path)

    def close(self) -> None:
        if self.signal_provider is not None:
            self.signal_provider.close()
        if self.store is not None:
            self.store.close()

    def sync_market(self, market_id: str) -> None:
        """Project one market into the secondary store when one is attached."""
        if self.synchronizer is not None:
            self.synchronizer.sync_market(market_id)

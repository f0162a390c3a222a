"""Periodic, idempotent driver of preliminary and final resolution."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import UTC, datetime

from ..config import Settings
from ..disputes.ledger import DisputeLedger
from ..exceptions import (
    AlreadyResolved,
    EngineError,
    ExternalCallError,
    InvalidTransition,
    JournalError,
    NotDisputable,
    TransientChainError,
)
from ..journal import JournalWriter
from ..lifecycle.machine import MarketLifecycle
from ..lifecycle.resolution import ceiling_at, threshold_outcome
from ..models import Market, MarketStatus, Outcome
from ..pricing.engine import PricingEngine
from ..redaction import sanitize_text
from ..retry import call_with_retry
from ..signals.base import ExternalSignalProvider
from ..signals.models import ExternalSignal
from ..sync.synchronizer import StateSynchronizer
from .models import MonitorAction, MonitorCycleReport

# Raised when another actor advanced the market first; the goal state is reached.
_CONCURRENT_ADVANCE = (AlreadyResolved, NotDisputable)

REVIEW_REASON = "Active disputes await admin review at dispute window end."


def preliminary_outcome_for(
    yes_shares: int,
    no_shares: int,
    signal: ExternalSignal | None,
) -> Outcome:
    """Majority side by outstanding shares (ties resolve NO); oracle answer without trading."""
    if yes_shares > 0 or no_shares > 0:
        return Outcome.YES if yes_shares > no_shares else Outcome.NO
    if signal is not None and signal.yes_score > 50.0:
        return Outcome.YES
    return Outcome.NO


class ResolutionMonitor:
    """Scan expired and pending markets and advance each as far as it may go."""

    def __init__(
        self,
        settings: Settings,
        lifecycle: MarketLifecycle,
        disputes: DisputeLedger,
        pricing: PricingEngine,
        logger: logging.Logger,
        signal_provider: ExternalSignalProvider | None = None,
        synchronizer: StateSynchronizer | None = None,
        journal: JournalWriter | None = None,
        now_provider: Callable[[], datetime] | None = None,
        sleep_fn: Callable[[float], None] | None = None,
    ) -> None:
        self.settings = settings
        self.lifecycle = lifecycle
        self.disputes = disputes
        self.pricing = pricing
        self.logger = logger
        self.signal_provider = signal_provider
        self.synchronizer = synchronizer
        self.journal = journal
        self._now_provider = now_provider or (lambda: datetime.now(UTC))
        self._sleep = sleep_fn or time.sleep

    def run_cycle(self) -> MonitorCycleReport:
        """Run one pass; safe to repeat at any frequency."""
        report = MonitorCycleReport(started_at=self._now())
        now = self._now()
        candidates = [
            market
            for market in self.lifecycle.list_markets()
            if not market.halted
            and (
                (market.status == MarketStatus.OPEN and market.is_expired(now))
                or market.status == MarketStatus.PENDING_RESOLUTION
            )
        ][: self.settings.monitor_batch_size]

        for market in candidates:
            report.scanned += 1
            try:
                action = self._process(market.market_id)
            except _CONCURRENT_ADVANCE as exc:
                self.logger.info(
                    "Market already advanced by another actor market=%s (%s)",
                    market.market_id,
                    type(exc).__name__,
                )
                report.noops.append(market.market_id)
                continue
            except TransientChainError as exc:
                self.logger.warning(
                    "Skipping market this cycle after retries market=%s operation=%s",
                    market.market_id,
                    exc.operation,
                )
                report.skipped.append(market.market_id)
                continue
            except InvalidTransition as exc:
                self.logger.error(
                    "Monitor attempted an invalid transition market=%s current=%s target=%s",
                    market.market_id,
                    exc.current,
                    exc.target,
                )
                report.errors.append(
                    f"{market.market_id}: invalid transition {exc.current} -> {exc.target}"
                )
                continue
            except EngineError as exc:
                safe_msg = sanitize_text(str(exc))
                self.logger.error("Monitor failed market=%s: %s", market.market_id, safe_msg)
                report.errors.append(f"{market.market_id}: {safe_msg}")
                continue

            if action is None:
                report.noops.append(market.market_id)
                continue
            report.actions.append(action)
            self._write_event("monitor_action", action.model_dump(mode="json"))
            self._sync(market.market_id)

        report.finished_at = self._now()
        self.logger.info(
            "Monitor cycle scanned=%d actions=%d noops=%d skipped=%d errors=%d",
            report.scanned,
            len(report.actions),
            len(report.noops),
            len(report.skipped),
            len(report.errors),
        )
        return report

    def _process(self, market_id: str) -> MonitorAction | None:
        # Re-read right before acting; the candidate list may be stale.
        market = self.lifecycle.get_market(market_id)
        if market.halted:
            return None
        if market.status == MarketStatus.OPEN:
            return self._process_expired(market)
        if market.status == MarketStatus.PENDING_RESOLUTION:
            return self._process_pending(market)
        return None

    def _process_expired(self, market: Market) -> MonitorAction | None:
        now = self._now()
        if not market.is_expired(now):
            return None
        signal = self._fetch_signal(market)
        reserves = self.pricing.reserves(market.market_id)
        outcome = preliminary_outcome_for(reserves.yes_shares, reserves.no_shares, signal)
        record = self.lifecycle.preliminary_resolve(
            market.market_id,
            outcome,
            self.settings.resolver_account,
            external_yes_score=signal.yes_score if signal else None,
            external_source=signal.source if signal else None,
        )
        return MonitorAction(
            market_id=market.market_id,
            action="preliminary_resolved",
            detail=f"outcome={outcome.value} confidence={record.confidence:.2f}",
        )

    def _process_pending(self, market: Market) -> MonitorAction | None:
        record = self.lifecycle.get_record(market.market_id)
        if record is None or record.sealed:
            return None
        signal = self._fetch_signal(market)
        self.lifecycle.refresh_confidence(
            market.market_id,
            external_yes_score=signal.yes_score if signal else None,
            external_source=signal.source if signal else None,
        )
        record = self.lifecycle.get_record(market.market_id)
        if record is None:
            return None

        now = self._now()
        threshold = self.settings.confidence_threshold
        met = threshold_outcome(record, threshold)
        unreviewed = self.disputes.has_unreviewed_disputes(market.market_id)

        if now >= ceiling_at(market, self.settings):
            target = met if met is not None and not unreviewed else Outcome(
                self.settings.fallback_outcome
            )
            final = self.lifecycle.final_resolve(
                market.market_id,
                target,
                self.settings.resolver_account,
            )
            outcome = final.final_outcome.value if final.final_outcome else "unset"
            return MonitorAction(
                market_id=market.market_id,
                action="fallback_finalized" if final.fallback_applied else "finalized",
                detail=f"outcome={outcome} at resolution ceiling",
            )
        if not record.window_closed(now):
            return None
        if unreviewed:
            if record.requires_review:
                return None
            self.lifecycle.mark_requires_review(market.market_id, REVIEW_REASON)
            self.logger.warning("Market flagged for admin review market=%s", market.market_id)
            return MonitorAction(
                market_id=market.market_id,
                action="flagged_for_review",
                detail=REVIEW_REASON,
            )
        if met is not None:
            final = self.lifecycle.final_resolve(
                market.market_id,
                met,
                self.settings.resolver_account,
            )
            return MonitorAction(
                market_id=market.market_id,
                action="finalized",
                detail=f"outcome={met.value} confidence={final.confidence_for(met):.2f}",
            )
        extended = self.lifecycle.extend_dispute_window(market.market_id)
        return MonitorAction(
            market_id=market.market_id,
            action="window_extended",
            detail=f"new_end={extended.dispute_window_end.isoformat()}",
        )

    def _fetch_signal(self, market: Market) -> ExternalSignal | None:
        """Fetch the external signal with retries; non-retryable failures mean no signal."""
        if self.signal_provider is None:
            return None
        provider = self.signal_provider
        try:
            return call_with_retry(
                lambda: provider.fetch_signal(market),
                operation="fetch_signal",
                max_attempts=self.settings.retry_max_attempts,
                base_ms=self.settings.retry_base_ms,
                jitter_ms=self.settings.retry_jitter_ms,
                logger=self.logger,
                sleep_fn=self._sleep,
            )
        except ExternalCallError as exc:
            self.logger.warning(
                "External signal unavailable market=%s category=%s: %s",
                market.market_id,
                exc.category,
                sanitize_text(str(exc)),
            )
            return None

    def _sync(self, market_id: str) -> None:
        if self.synchronizer is None:
            return
        try:
            self.synchronizer.sync_market(market_id)
        except EngineError as exc:
            self.logger.error(
                "On-demand sync failed market=%s: %s",
                market_id,
                sanitize_text(str(exc)),
            )

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

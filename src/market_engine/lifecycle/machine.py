"""Market lifecycle state machine and two-phase resolution."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any, TypeVar

from ..config import Settings
from ..disputes.ledger import expire_active_disputes, settle_remaining_disputes
from ..exceptions import (
    AlreadyResolved,
    InvalidTransition,
    JournalError,
    MarketValidationError,
    ResolutionNotReady,
    UnauthorizedActionError,
)
from ..journal import JournalWriter
from ..ledger.gateway import LedgerGateway
from ..ledger.state import LedgerState
from ..models import Market, MarketStatus, Outcome, derive_market_id, ensure_utc
from ..pricing.engine import build_payout_snapshot, require_writable
from ..pricing.models import ShareReserves
from ..redaction import sanitize_text
from ..scoring.models import ConfidenceAssessment
from .models import LifecycleEvent, ResolutionRecord
from .resolution import (
    ceiling_at,
    has_unreviewed_disputes,
    refresh_confidence,
    threshold_outcome,
    window_length,
)

T = TypeVar("T")

_ALLOWED_TRANSITIONS: dict[MarketStatus, set[MarketStatus]] = {
    MarketStatus.SUBMITTED: {MarketStatus.OPEN, MarketStatus.CANCELED},
    MarketStatus.OPEN: {MarketStatus.PENDING_RESOLUTION, MarketStatus.CANCELED},
    MarketStatus.PENDING_RESOLUTION: {MarketStatus.RESOLVED},
    MarketStatus.RESOLVED: set(),
    MarketStatus.CANCELED: set(),
}

_RESOLVED_OR_LATER = {MarketStatus.RESOLVED}


def is_terminal_status(status: MarketStatus) -> bool:
    return not _ALLOWED_TRANSITIONS[status]


def transition(
    state: LedgerState,
    market: Market,
    target: MarketStatus,
    *,
    event: str,
    actor: str | None,
    now: datetime,
    note: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> None:
    """Move ``market`` to ``target`` and append the history event."""
    current = market.status
    if target not in _ALLOWED_TRANSITIONS[current]:
        raise InvalidTransition(
            f"Invalid market transition {current.name} -> {target.name} for {market.market_id}.",
            market_id=market.market_id,
            current=current.name,
            target=target.name,
        )
    market.status = target
    state.append_history(
        LifecycleEvent(
            market_id=market.market_id,
            event=event,
            from_status=current,
            to_status=target,
            actor=actor,
            ts=now,
            note=note,
            metadata=metadata or {},
        )
    )


class MarketLifecycle:
    """Drive markets from submission through final resolution."""

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

    def create_market(
        self,
        question: str,
        creator: str,
        expires_at: datetime,
        *,
        fee_rate_bps: int | None = None,
        collateral_token: str | None = None,
    ) -> Market:
        """Provision a market, its reserves and its resolver in one step."""
        now = self._now()
        question = " ".join(question.split())
        if not question:
            raise MarketValidationError("Market question must not be empty.")
        if not creator.strip():
            raise MarketValidationError("Market creator must not be empty.")
        expires_at = ensure_utc(expires_at)
        if expires_at <= now:
            raise MarketValidationError("Market expiry must be in the future.")
        fee = self.settings.default_fee_rate_bps if fee_rate_bps is None else fee_rate_bps
        if not (0 <= fee < 10_000):
            raise MarketValidationError("fee_rate_bps must be between 0 and 9999.")
        token = (collateral_token or self.settings.collateral_token).strip()
        if not token:
            raise MarketValidationError("collateral_token must not be empty.")

        market = Market(
            market_id=derive_market_id(
                creator=creator,
                question=question,
                expires_at=expires_at,
                created_at=now,
            ),
            question=question,
            creator=creator,
            created_at=now,
            expires_at=expires_at,
            collateral_token=token,
            fee_rate_bps=fee,
            resolver=self.settings.resolver_account,
        )

        def apply(state: LedgerState) -> Market:
            if market.market_id in state.markets:
                raise MarketValidationError(f"Market {market.market_id} already exists.")
            state.markets[market.market_id] = market
            state.reserves[market.market_id] = ShareReserves(market_id=market.market_id)
            state.append_history(
                LifecycleEvent(
                    market_id=market.market_id,
                    event="market_created",
                    to_status=MarketStatus.SUBMITTED,
                    actor=creator,
                    ts=now,
                    metadata={"resolver": market.resolver},
                )
            )
            return market

        created = self.gateway.execute("create_market", apply)
        self.logger.info(
            "Market created market=%s creator=%s expires_at=%s",
            created.market_id,
            creator,
            created.expires_at.isoformat(),
        )
        self._write_event("market_created", created.model_dump(mode="json"))
        return created

    def approve_market(self, market_id: str, actor: str) -> Market:
        self._require_admin(actor, "approve markets")
        now = self._now()

        def apply(state: LedgerState) -> Market:
            market = state.require_market(market_id)
            require_writable(market)
            transition(
                state,
                market,
                MarketStatus.OPEN,
                event="market_approved",
                actor=actor,
                now=now,
            )
            return market

        market = self._execute("approve_market", apply)
        self._write_event("market_approved", {"market_id": market_id, "actor": actor})
        return market

    def cancel_market(self, market_id: str, actor: str, reason: str | None = None) -> Market:
        """Cancel a market; holders redeem their cost basis."""
        self._require_admin(actor, "cancel markets")
        now = self._now()

        def apply(state: LedgerState) -> Market:
            market = state.require_market(market_id)
            require_writable(market)
            transition(
                state,
                market,
                MarketStatus.CANCELED,
                event="market_canceled",
                actor=actor,
                now=now,
                note=reason,
            )
            build_payout_snapshot(state, market_id, Outcome.INVALID, now)
            return market

        market = self._execute("cancel_market", apply)
        self._write_event(
            "market_canceled",
            {"market_id": market_id, "actor": actor, "reason": reason},
        )
        return market

    def preliminary_resolve(
        self,
        market_id: str,
        outcome: Outcome,
        actor: str,
        *,
        external_yes_score: float | None = None,
        external_source: str | None = None,
    ) -> ResolutionRecord:
        """Record a preliminary outcome and open the dispute window."""
        if outcome not in (Outcome.YES, Outcome.NO):
            raise MarketValidationError("Preliminary outcome must be yes or no.")
        now = self._now()

        def apply(state: LedgerState) -> ResolutionRecord:
            market = state.require_market(market_id)
            self._require_resolver(market, actor)
            require_writable(market)
            if market.status in (MarketStatus.PENDING_RESOLUTION, MarketStatus.RESOLVED):
                raise AlreadyResolved(
                    f"Market {market_id} already has a {market.status.name} resolution."
                )
            if market.status == MarketStatus.OPEN and not market.is_expired(now):
                raise ResolutionNotReady(
                    f"Market {market_id} does not expire until {market.expires_at}."
                )
            transition(
                state,
                market,
                MarketStatus.PENDING_RESOLUTION,
                event="preliminary_resolved",
                actor=actor,
                now=now,
                metadata={"outcome": outcome.value},
            )
            record = ResolutionRecord(
                market_id=market_id,
                preliminary_outcome=outcome,
                preliminary_at=now,
                dispute_window_end=min(
                    now + window_length(self.settings),
                    ceiling_at(market, self.settings),
                ),
            )
            state.resolutions[market_id] = record
            refresh_confidence(
                state,
                market_id,
                self.settings,
                now,
                allow_early_close=False,
                external_yes_score=external_yes_score,
                external_source=external_source,
            )
            return record

        record = self._execute("preliminary_resolve", apply)
        self.logger.info(
            "Preliminary resolution market=%s outcome=%s confidence=%.2f window_end=%s",
            market_id,
            outcome.value,
            record.confidence,
            record.dispute_window_end.isoformat(),
        )
        self._write_event("preliminary_resolved", record.model_dump(mode="json"))
        return record

    def final_resolve(self, market_id: str, outcome: Outcome, actor: str) -> ResolutionRecord:
        """Seal the resolution once the window and confidence allow it.

        Before the ceiling, ``outcome`` must meet the confidence threshold after the
        window closed and with every active dispute reviewed. At the ceiling an
        outcome still below threshold is replaced by the configured fallback.
        """
        if outcome not in (Outcome.YES, Outcome.NO, Outcome.INVALID):
            raise MarketValidationError("Final outcome must be yes, no or invalid.")
        now = self._now()

        def apply(state: LedgerState) -> ResolutionRecord:
            market = state.require_market(market_id)
            self._require_resolver(market, actor)
            require_writable(market)
            if market.status in _RESOLVED_OR_LATER:
                raise AlreadyResolved(f"Market {market_id} is already resolved.")
            if market.status != MarketStatus.PENDING_RESOLUTION:
                raise InvalidTransition(
                    f"Invalid market transition {market.status.name} -> RESOLVED for {market_id}.",
                    market_id=market_id,
                    current=market.status.name,
                    target=MarketStatus.RESOLVED.name,
                )
            record = state.resolutions[market_id]
            if record.sealed:
                raise AlreadyResolved(f"Market {market_id} resolution is already sealed.")

            threshold = self.settings.confidence_threshold
            met = threshold_outcome(record, threshold)
            unreviewed = has_unreviewed_disputes(state, market_id)
            at_ceiling = now >= ceiling_at(market, self.settings)
            final = outcome
            if at_ceiling and (met != outcome or unreviewed):
                final = Outcome(self.settings.fallback_outcome)
                record.fallback_applied = True
                expire_active_disputes(state, market_id, settings=self.settings, now=now)
            else:
                if not record.window_closed(now):
                    raise ResolutionNotReady(
                        f"Dispute window for {market_id} is open until {record.dispute_window_end}."
                    )
                if unreviewed:
                    raise ResolutionNotReady(
                        f"Market {market_id} has active disputes awaiting admin review."
                    )
                if record.confidence_for(outcome) < threshold:
                    raise ResolutionNotReady(
                        f"Confidence {record.confidence_for(outcome):.2f} for {outcome.value} "
                        f"is below threshold {threshold:.2f}."
                    )
                settle_remaining_disputes(state, market_id, final, settings=self.settings, now=now)

            transition(
                state,
                market,
                MarketStatus.RESOLVED,
                event="final_resolved",
                actor=actor,
                now=now,
                metadata={
                    "outcome": final.value,
                    "fallback_applied": record.fallback_applied,
                },
            )
            record.final_outcome = final
            record.resolved_by = (
                "admin"
                if actor in self.settings.admin_account_set and actor != market.resolver
                else "automated"
            )
            record.resolved_at = now
            record.requires_review = False
            record.sealed = True
            build_payout_snapshot(state, market_id, final, now)
            return record

        record = self._execute("final_resolve", apply)
        self.logger.info(
            "Final resolution market=%s outcome=%s resolved_by=%s fallback=%s",
            market_id,
            record.final_outcome.value if record.final_outcome else None,
            record.resolved_by,
            record.fallback_applied,
        )
        self._write_event("final_resolved", record.model_dump(mode="json"))
        return record

    def extend_dispute_window(self, market_id: str) -> ResolutionRecord:
        """Keep an under-confident market disputable for another window, up to the ceiling."""
        now = self._now()

        def apply(state: LedgerState) -> ResolutionRecord:
            market = state.require_market(market_id)
            require_writable(market)
            if market.status in _RESOLVED_OR_LATER:
                raise AlreadyResolved(f"Market {market_id} is already resolved.")
            if market.status != MarketStatus.PENDING_RESOLUTION:
                raise InvalidTransition(
                    f"Cannot extend dispute window for {market_id} in {market.status.name}.",
                    market_id=market_id,
                    current=market.status.name,
                    target=MarketStatus.PENDING_RESOLUTION.name,
                )
            record = state.resolutions[market_id]
            if record.sealed:
                raise AlreadyResolved(f"Market {market_id} resolution is already sealed.")
            if not record.window_closed(now):
                raise ResolutionNotReady(f"Dispute window for {market_id} is still open.")
            if threshold_outcome(record, self.settings.confidence_threshold) is not None:
                raise ResolutionNotReady(f"Market {market_id} already meets the threshold.")
            ceiling = ceiling_at(market, self.settings)
            if now >= ceiling:
                raise ResolutionNotReady(f"Market {market_id} reached its resolution ceiling.")
            previous_end = record.dispute_window_end
            record.dispute_window_end = min(now + window_length(self.settings), ceiling)
            record.window_extensions += 1
            record.closed_early = False
            state.append_history(
                LifecycleEvent(
                    market_id=market_id,
                    event="dispute_window_extended",
                    ts=now,
                    metadata={
                        "previous_end": previous_end.isoformat(),
                        "new_end": record.dispute_window_end.isoformat(),
                        "extensions": record.window_extensions,
                    },
                )
            )
            return record

        record = self._execute("extend_dispute_window", apply)
        self.logger.info(
            "Dispute window extended market=%s new_end=%s extensions=%d",
            market_id,
            record.dispute_window_end.isoformat(),
            record.window_extensions,
        )
        self._write_event("dispute_window_extended", record.model_dump(mode="json"))
        return record

    def refresh_confidence(
        self,
        market_id: str,
        *,
        external_yes_score: float | None = None,
        external_source: str | None = None,
    ) -> ConfidenceAssessment:
        now = self._now()

        def apply(state: LedgerState) -> ConfidenceAssessment:
            market = state.require_market(market_id)
            if market.status in _RESOLVED_OR_LATER:
                raise AlreadyResolved(f"Market {market_id} is already resolved.")
            if market.status != MarketStatus.PENDING_RESOLUTION:
                raise InvalidTransition(
                    f"Cannot rescore {market_id} in {market.status.name}.",
                    market_id=market_id,
                    current=market.status.name,
                    target=MarketStatus.PENDING_RESOLUTION.name,
                )
            return refresh_confidence(
                state,
                market_id,
                self.settings,
                now,
                allow_early_close=False,
                external_yes_score=external_yes_score,
                external_source=external_source,
            )

        return self._execute("refresh_confidence", apply)

    def mark_requires_review(self, market_id: str, reason: str) -> ResolutionRecord:
        """Flag a pending market for admin attention (idempotent)."""
        now = self._now()

        def apply(state: LedgerState) -> ResolutionRecord:
            record = state.resolutions.get(market_id)
            if record is None:
                raise ResolutionNotReady(f"Market {market_id} has no preliminary resolution.")
            if record.sealed:
                raise AlreadyResolved(f"Market {market_id} resolution is already sealed.")
            if not record.requires_review or record.review_reason != reason:
                record.requires_review = True
                record.review_reason = reason
                state.append_history(
                    LifecycleEvent(
                        market_id=market_id,
                        event="flagged_for_review",
                        ts=now,
                        note=reason,
                    )
                )
            return record

        return self._execute("mark_requires_review", apply)

    def get_market(self, market_id: str) -> Market:
        return self.gateway.read("get_market", lambda state: state.require_market(market_id))

    def get_record(self, market_id: str) -> ResolutionRecord | None:
        def read(state: LedgerState) -> ResolutionRecord | None:
            state.require_market(market_id)
            return state.resolutions.get(market_id)

        return self.gateway.read("get_record", read)

    def list_markets(self, status: MarketStatus | None = None) -> list[Market]:
        def read(state: LedgerState) -> list[Market]:
            markets = sorted(state.markets.values(), key=lambda market: market.created_at)
            if status is None:
                return markets
            return [market for market in markets if market.status == status]

        return self.gateway.read("list_markets", read)

    def history(self, market_id: str) -> list[LifecycleEvent]:
        def read(state: LedgerState) -> list[LifecycleEvent]:
            state.require_market(market_id)
            return list(state.history.get(market_id, []))

        return self.gateway.read("history", read)

    def _execute(self, operation: str, fn: Callable[[LedgerState], T]) -> T:
        try:
            return self.gateway.execute(operation, fn)
        except InvalidTransition as exc:
            self.logger.error(
                "Rejected lifecycle change operation=%s market=%s current=%s target=%s",
                operation,
                exc.market_id,
                exc.current,
                exc.target,
            )
            raise

    def _require_admin(self, actor: str, action: str) -> None:
        if actor not in self.settings.admin_account_set:
            raise UnauthorizedActionError(f"Account {actor} may not {action}.")

    def _require_resolver(self, market: Market, actor: str) -> None:
        if actor != market.resolver and actor not in self.settings.admin_account_set:
            raise UnauthorizedActionError(
                f"Account {actor} is not the resolver for {market.market_id}."
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

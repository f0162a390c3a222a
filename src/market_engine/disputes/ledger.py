"""Bonded dispute submissions, admin review and bond settlement."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime

from ..config import Settings
from ..exceptions import (
    AlreadyResolved,
    InsufficientBond,
    JournalError,
    NotDisputable,
    UnauthorizedActionError,
)
from ..journal import JournalWriter
from ..ledger.gateway import LedgerGateway
from ..ledger.state import LedgerState
from ..lifecycle.models import LifecycleEvent
from ..lifecycle.resolution import has_unreviewed_disputes, refresh_confidence
from ..models import MarketStatus, Outcome
from ..pricing.engine import require_writable
from ..redaction import sanitize_text
from .models import BondSettlement, Dispute, DisputeStatus, Evidence


def escrow_key(dispute_id: str) -> str:
    return f"dispute:{dispute_id}"


def settle_bond(
    state: LedgerState,
    dispute: Dispute,
    *,
    status: DisputeStatus,
    slash_percent: int,
    treasury_account: str,
    resolved_by: str,
    now: datetime,
) -> BondSettlement:
    """Release one bond from escrow: refund, slash to treasury, or both."""
    if not dispute.is_active:
        raise AlreadyResolved(f"Dispute {dispute.dispute_id} is already {dispute.status.value}.")
    amount = state.release_escrow(escrow_key(dispute.dispute_id))
    slashed = (amount * slash_percent) // 100 if status == DisputeStatus.REJECTED else 0
    refunded = amount - slashed
    state.credit(dispute.disputer, refunded)
    state.credit(treasury_account, slashed)
    dispute.status = status
    dispute.refunded_amount = refunded
    dispute.slashed_amount = slashed
    dispute.resolved_at = now
    dispute.resolved_by = resolved_by
    state.append_history(
        LifecycleEvent(
            market_id=dispute.market_id,
            event=f"dispute_{status.value}",
            actor=resolved_by,
            ts=now,
            metadata={
                "dispute_id": dispute.dispute_id,
                "refunded": refunded,
                "slashed": slashed,
            },
        )
    )
    return BondSettlement(
        dispute_id=dispute.dispute_id,
        status=status,
        refunded=refunded,
        slashed=slashed,
    )


def expire_active_disputes(
    state: LedgerState,
    market_id: str,
    *,
    settings: Settings,
    now: datetime,
) -> list[BondSettlement]:
    """Return every still-active bond in full."""
    return [
        settle_bond(
            state,
            dispute,
            status=DisputeStatus.EXPIRED,
            slash_percent=0,
            treasury_account=settings.treasury_account,
            resolved_by="automated",
            now=now,
        )
        for dispute in state.disputes_for(market_id)
        if dispute.is_active
    ]


def settle_remaining_disputes(
    state: LedgerState,
    market_id: str,
    final_outcome: Outcome,
    *,
    settings: Settings,
    now: datetime,
) -> list[BondSettlement]:
    """Resolve active disputes against the final outcome.

    A dispute that argued for the final outcome, or that an admin judged
    legitimate, is accepted; the rest are rejected and slashed.
    """
    settlements: list[BondSettlement] = []
    for dispute in state.disputes_for(market_id):
        if not dispute.is_active:
            continue
        accepted = dispute.declared_outcome == final_outcome or dispute.legitimate is True
        settlements.append(
            settle_bond(
                state,
                dispute,
                status=DisputeStatus.ACCEPTED if accepted else DisputeStatus.REJECTED,
                slash_percent=settings.bond_slash_percent,
                treasury_account=settings.treasury_account,
                resolved_by="automated",
                now=now,
            )
        )
    return settlements


class DisputeLedger:
    """Accept bonded disputes during the window and settle each bond exactly once."""

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

    def submit_dispute(
        self,
        market_id: str,
        account: str,
        bond_amount: int,
        evidence: Evidence | str,
        declared_outcome: Outcome | None = None,
    ) -> str:
        """Escrow ``bond_amount`` and open a dispute; returns the dispute id."""
        if bond_amount < self.settings.dispute_min_bond:
            raise InsufficientBond(
                f"Bond {bond_amount} is below the minimum {self.settings.dispute_min_bond}.",
                bond_amount=bond_amount,
                minimum=self.settings.dispute_min_bond,
            )
        if isinstance(evidence, str):
            evidence = Evidence(text=evidence)
        if declared_outcome == Outcome.UNSET:
            raise NotDisputable("A dispute must declare a concrete outcome.")
        now = self._now()

        def apply(state: LedgerState) -> Dispute:
            market = state.require_market(market_id)
            require_writable(market)
            record = state.resolutions.get(market_id)
            if market.status != MarketStatus.PENDING_RESOLUTION or record is None:
                raise NotDisputable(
                    f"Market {market_id} is {market.status.name}; disputes require "
                    "PENDING_RESOLUTION."
                )
            if record.window_closed(now):
                raise NotDisputable(
                    f"Dispute window for {market_id} closed at {record.dispute_window_end}."
                )
            outcome = declared_outcome or record.preliminary_outcome.opposite
            dispute_id = state.next_dispute_id(market_id)
            state.lock_escrow(account, escrow_key(dispute_id), bond_amount)
            dispute = Dispute(
                dispute_id=dispute_id,
                market_id=market_id,
                disputer=account,
                bond_amount=bond_amount,
                declared_outcome=outcome,
                evidence=evidence,
                evidence_hash=evidence.evidence_hash,
                created_at=now,
            )
            state.disputes[dispute_id] = dispute
            state.append_history(
                LifecycleEvent(
                    market_id=market_id,
                    event="dispute_submitted",
                    actor=account,
                    ts=now,
                    metadata={"dispute_id": dispute_id, "bond_amount": bond_amount},
                )
            )
            return dispute

        dispute = self.gateway.execute("submit_dispute", apply)
        self.logger.info(
            "Dispute submitted dispute=%s market=%s bond=%d declared=%s",
            dispute.dispute_id,
            market_id,
            bond_amount,
            dispute.declared_outcome.value,
        )
        self._write_event("dispute_submitted", dispute.model_dump(mode="json"))
        return dispute.dispute_id

    def validate_dispute(
        self,
        dispute_id: str,
        legitimate: bool,
        contradicts_consensus: bool,
        actor: str,
    ) -> Dispute:
        """Record admin review flags and recompute the market's confidence."""
        self._require_admin(actor, "validate disputes")
        now = self._now()

        def apply(state: LedgerState) -> Dispute:
            dispute = state.require_dispute(dispute_id)
            if not dispute.is_active:
                raise AlreadyResolved(f"Dispute {dispute_id} is already {dispute.status.value}.")
            market = state.require_market(dispute.market_id)
            require_writable(market)
            dispute.legitimate = legitimate
            dispute.contradicts_consensus = contradicts_consensus
            state.append_history(
                LifecycleEvent(
                    market_id=dispute.market_id,
                    event="dispute_validated",
                    actor=actor,
                    ts=now,
                    metadata={
                        "dispute_id": dispute_id,
                        "legitimate": legitimate,
                        "contradicts_consensus": contradicts_consensus,
                    },
                )
            )
            self._recompute(state, dispute.market_id, now)
            return dispute

        dispute = self.gateway.execute("validate_dispute", apply)
        self.logger.info(
            "Dispute validated dispute=%s legitimate=%s contradicts_consensus=%s",
            dispute_id,
            legitimate,
            contradicts_consensus,
        )
        self._write_event("dispute_validated", dispute.model_dump(mode="json"))
        return dispute

    def resolve_dispute(self, dispute_id: str, accepted: bool, actor: str) -> BondSettlement:
        """Accept (full refund) or reject (slash) a dispute exactly once."""
        self._require_admin(actor, "resolve disputes")
        now = self._now()

        def apply(state: LedgerState) -> BondSettlement:
            dispute = state.require_dispute(dispute_id)
            market = state.require_market(dispute.market_id)
            require_writable(market)
            settlement = settle_bond(
                state,
                dispute,
                status=DisputeStatus.ACCEPTED if accepted else DisputeStatus.REJECTED,
                slash_percent=self.settings.bond_slash_percent,
                treasury_account=self.settings.treasury_account,
                resolved_by=actor,
                now=now,
            )
            self._recompute(state, dispute.market_id, now)
            return settlement

        settlement = self.gateway.execute("resolve_dispute", apply)
        self.logger.info(
            "Dispute resolved dispute=%s status=%s refunded=%d slashed=%d",
            dispute_id,
            settlement.status.value,
            settlement.refunded,
            settlement.slashed,
        )
        self._write_event("dispute_resolved", settlement.model_dump(mode="json"))
        return settlement

    def expire_disputes(self, market_id: str) -> list[BondSettlement]:
        """Refund every still-active dispute on ``market_id`` in full."""
        now = self._now()
        settlements = self.gateway.execute(
            "expire_disputes",
            lambda state: expire_active_disputes(
                state,
                market_id,
                settings=self.settings,
                now=now,
            ),
        )
        for settlement in settlements:
            self._write_event("dispute_expired", settlement.model_dump(mode="json"))
        return settlements

    def settle_remaining(self, market_id: str, final_outcome: Outcome) -> list[BondSettlement]:
        now = self._now()
        settlements = self.gateway.execute(
            "settle_remaining_disputes",
            lambda state: settle_remaining_disputes(
                state,
                market_id,
                final_outcome,
                settings=self.settings,
                now=now,
            ),
        )
        for settlement in settlements:
            self._write_event("dispute_resolved", settlement.model_dump(mode="json"))
        return settlements

    def get_dispute(self, dispute_id: str) -> Dispute:
        return self.gateway.read("get_dispute", lambda state: state.require_dispute(dispute_id))

    def list_disputes(self, market_id: str) -> list[Dispute]:
        def read(state: LedgerState) -> list[Dispute]:
            state.require_market(market_id)
            return state.disputes_for(market_id)

        return self.gateway.read("list_disputes", read)

    def has_unreviewed_disputes(self, market_id: str) -> bool:
        return self.gateway.read(
            "has_unreviewed_disputes",
            lambda state: has_unreviewed_disputes(state, market_id),
        )

    def _recompute(self, state: LedgerState, market_id: str, now: datetime) -> None:
        market = state.require_market(market_id)
        record = state.resolutions.get(market_id)
        if market.status != MarketStatus.PENDING_RESOLUTION or record is None or record.sealed:
            return
        refresh_confidence(state, market_id, self.settings, now, allow_early_close=True)

    def _require_admin(self, actor: str, action: str) -> None:
        if actor not in self.settings.admin_account_set:
            raise UnauthorizedActionError(f"Account {actor} may not {action}.")

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

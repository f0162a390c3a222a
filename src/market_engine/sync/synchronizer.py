"""Reconcile the secondary store with the authoritative ledger.

The ledger always wins: drift is repaired by rewriting store rows from ledger
state, and this module never writes to the ledger.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from ..config import Settings
from ..exceptions import JournalError, StaleStateError, StoreError
from ..journal import JournalWriter
from ..ledger.gateway import LedgerGateway
from ..ledger.state import LedgerState
from ..redaction import sanitize_text
from .models import RepairRecord, SyncReport
from .projections import Projection, diff_row, project_state
from .store import TABLES, SecondaryStore


def check_row(
    table: str,
    key: str,
    expected: dict[str, Any] | None,
    actual: dict[str, Any] | None,
) -> None:
    """Raise ``StaleStateError`` when a store row disagrees with the ledger."""
    if expected is None and actual is None:
        return
    if expected is None:
        raise StaleStateError(
            f"{table} row {key} has no ledger counterpart.",
            table=table,
            key=key,
            drift="orphan",
        )
    if actual is None:
        raise StaleStateError(
            f"{table} row {key} is missing from the store.",
            table=table,
            key=key,
            drift="missing",
        )
    fields = diff_row(expected, actual)
    if fields:
        raise StaleStateError(
            f"{table} row {key} is stale in {len(fields)} column(s).",
            table=table,
            key=key,
            drift="stale",
            fields=fields,
        )


class StateSynchronizer:
    """Detect and repair drift between ledger state and the secondary store."""

    def __init__(
        self,
        settings: Settings,
        gateway: LedgerGateway,
        store: SecondaryStore,
        logger: logging.Logger,
        journal: JournalWriter | None = None,
        now_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self.settings = settings
        self.gateway = gateway
        self.store = store
        self.logger = logger
        self.journal = journal
        self._now_provider = now_provider or (lambda: datetime.now(UTC))

    def reconcile(self) -> SyncReport:
        """Compare every ledger market, dispute and position with the store."""
        return self._run(scope="all", market_id=None)

    def sync_market(self, market_id: str) -> SyncReport:
        """Reconcile only the rows belonging to ``market_id``."""
        return self._run(scope=market_id, market_id=market_id)

    def _run(self, *, scope: str, market_id: str | None) -> SyncReport:
        report = SyncReport(scope=scope, started_at=self._now())
        expected = self.gateway.read(
            "sync_snapshot",
            lambda state: self._project(state, market_id),
        )
        for table in TABLES:
            try:
                actual = self.store.rows(table, market_id=market_id)
            except StoreError as exc:
                report.errors.append(f"{table}: {sanitize_text(str(exc))}")
                self.logger.error("Failed reading store table=%s: %s", table, exc)
                continue
            wanted = expected[table]
            report.rows_checked[table] = len(set(wanted) | set(actual))
            for key in sorted(set(wanted) | set(actual)):
                try:
                    check_row(table, key, wanted.get(key), actual.get(key))
                except StaleStateError as drift:
                    self._repair(report, drift, wanted.get(key))
        report.finished_at = self._now()
        if report.repairs or report.errors:
            self.logger.info(
                "Reconciliation finished scope=%s repairs=%d errors=%d",
                scope,
                report.repaired_count,
                len(report.errors),
            )
        return report

    def _project(self, state: LedgerState, market_id: str | None) -> Projection:
        if market_id is not None:
            state.require_market(market_id)
        return project_state(state, self.settings.amm_virtual_liquidity, market_id=market_id)

    def _repair(
        self,
        report: SyncReport,
        drift: StaleStateError,
        expected: dict[str, Any] | None,
    ) -> None:
        try:
            if expected is None:
                self.store.delete(drift.table, drift.key)
            else:
                self.store.upsert(drift.table, drift.key, expected)
        except StoreError as exc:
            report.errors.append(f"{drift.table}/{drift.key}: {sanitize_text(str(exc))}")
            self.logger.error(
                "Failed repairing store row table=%s key=%s: %s",
                drift.table,
                drift.key,
                exc,
            )
            return

        record = RepairRecord(
            table=drift.table,
            key=drift.key,
            drift=drift.drift,
            fields={column: list(values) for column, values in drift.fields.items()},
        )
        report.repairs.append(record)
        self.logger.warning(
            "Repaired store drift table=%s key=%s drift=%s columns=%s",
            drift.table,
            drift.key,
            drift.drift,
            ",".join(sorted(drift.fields)) or "-",
        )
        self._write_event("store_repaired", record.model_dump(mode="json"))

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

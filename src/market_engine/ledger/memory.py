"""Settlement ledger backends.

``InMemoryLedger`` is the authoritative store: every write happens inside
``transaction()``, which works on a deep copy and swaps it in only when the
block exits cleanly. A nested ``transaction()`` on the owning thread joins the
outer one.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from pydantic import ValidationError

from ..exceptions import LedgerUnavailableError
from .state import LedgerState


class SettlementLedger(ABC):
    """Abstract authoritative ledger."""

    @abstractmethod
    def transaction(self) -> Iterator[LedgerState]:
        """Context manager yielding mutable state committed all-or-nothing."""

    @abstractmethod
    def snapshot(self) -> LedgerState:
        """Return a detached copy of the committed state."""

    @abstractmethod
    def mint(self, account: str, amount: int) -> int:
        """Credit new collateral to an account and return its balance."""


class InMemoryLedger(SettlementLedger):
    """Thread-safe in-process ledger with JSON snapshot persistence."""

    def __init__(self, state: LedgerState | None = None) -> None:
        self._state = state or LedgerState()
        self._lock = threading.RLock()
        self._working: LedgerState | None = None

    @contextmanager
    def transaction(self) -> Iterator[LedgerState]:
        with self._lock:
            if self._working is not None:
                yield self._working
                return
            working = self._state.model_copy(deep=True)
            self._working = working
            try:
                yield working
            finally:
                self._working = None
            self._state = working

    def snapshot(self) -> LedgerState:
        with self._lock:
            return self._state.model_copy(deep=True)

    def mint(self, account: str, amount: int) -> int:
        if amount <= 0:
            raise ValueError("mint amount must be > 0.")
        with self.transaction() as state:
            state.credit(account, amount)
            state.minted += amount
            return state.balance_of(account)

    def save(self, path: Path) -> None:
        """Write committed state to ``path`` atomically."""
        payload = self.snapshot().model_dump_json(indent=2)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        try:
            tmp_path.write_text(payload, encoding="utf-8")
            tmp_path.replace(path)
        except OSError as exc:
            raise LedgerUnavailableError(
                f"Failed writing ledger snapshot {path}: {exc}",
                category="storage",
            ) from exc

    @classmethod
    def load(cls, path: Path) -> InMemoryLedger:
        """Load a ledger snapshot; a missing file yields an empty ledger."""
        if not path.exists():
            return cls()
        try:
            state = LedgerState.model_validate_json(path.read_text(encoding="utf-8"))
        except OSError as exc:
            raise LedgerUnavailableError(
                f"Failed reading ledger snapshot {path}: {exc}",
                category="storage",
            ) from exc
        except ValidationError as exc:
            raise LedgerUnavailableError(
                f"Ledger snapshot {path} is corrupt: {exc}",
                category="validation",
            ) from exc
        return cls(state)

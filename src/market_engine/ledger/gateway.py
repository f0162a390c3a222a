"""Retrying access path from components to the settlement ledger."""

from __future__ import annotations

import copy
import logging
import time
from collections.abc import Callable
from typing import Any, TypeVar

from ..retry import call_with_retry
from .memory import SettlementLedger
from .state import LedgerState

T = TypeVar("T")


class LedgerGateway:
    """Run ledger reads and transactions through ``call_with_retry``."""

    def __init__(
        self,
        ledger: SettlementLedger,
        settings: Any,
        logger: logging.Logger,
        *,
        sleep_fn: Callable[[float], None] = time.sleep,
    ) -> None:
        self.ledger = ledger
        self.settings = settings
        self.logger = logger
        self._sleep_fn = sleep_fn

    def execute(self, operation: str, fn: Callable[[LedgerState], T]) -> T:
        """Apply ``fn`` inside one all-or-nothing ledger transaction.

        The result is deep-copied so callers never hold references into committed state.
        """

        def attempt() -> T:
            with self.ledger.transaction() as state:
                return copy.deepcopy(fn(state))

        return self._with_retry(operation, attempt)

    def read(self, operation: str, fn: Callable[[LedgerState], T]) -> T:
        """Evaluate ``fn`` against a detached snapshot."""
        return self._with_retry(operation, lambda: fn(self.ledger.snapshot()))

    def _with_retry(self, operation: str, fn: Callable[[], T]) -> T:
        return call_with_retry(
            fn,
            operation=operation,
            max_attempts=self.settings.retry_max_attempts,
            base_ms=self.settings.retry_base_ms,
            jitter_ms=self.settings.retry_jitter_ms,
            logger=self.logger,
            sleep_fn=self._sleep_fn,
        )

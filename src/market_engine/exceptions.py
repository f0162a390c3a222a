"""Application exception classes."""

from __future__ import annotations

from typing import Any


class EngineError(Exception):
    """Base class for all market engine failures."""


class ConfigError(EngineError):
    """Raised when configuration is invalid or incomplete."""


class JournalError(EngineError):
    """Raised when writing to the audit journal fails."""


class StoreError(EngineError):
    """Raised when the secondary store cannot be read or written."""


class ExternalCallError(EngineError):
    """Raised for settlement-layer or signal-provider call failures with category metadata."""

    def __init__(
        self,
        message: str,
        *,
        category: str = "unknown",
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.category = category
        self.status_code = status_code


class LedgerUnavailableError(ExternalCallError):
    """Raised when one settlement-layer call could not be completed."""


class SignalProviderError(ExternalCallError):
    """Raised when the external confidence-signal provider fails."""


class TransientChainError(EngineError):
    """Raised after retries against an external dependency are exhausted."""

    def __init__(self, message: str, *, operation: str, attempts: int) -> None:
        super().__init__(message)
        self.operation = operation
        self.attempts = attempts


class InvalidTransition(EngineError):
    """Raised when a lifecycle change is attempted from the wrong source state."""

    def __init__(self, message: str, *, market_id: str, current: str, target: str) -> None:
        super().__init__(message)
        self.market_id = market_id
        self.current = current
        self.target = target


class AlreadyResolved(EngineError):
    """Raised when a market or dispute has already been advanced past the requested step."""


class NotDisputable(EngineError):
    """Raised when a dispute is submitted outside an open dispute window."""


class ResolutionNotReady(EngineError):
    """Raised when final resolution preconditions (window, confidence, reviews) are unmet."""


class InsufficientBond(EngineError):
    """Raised when a dispute bond is below the configured minimum."""

    def __init__(self, message: str, *, bond_amount: int, minimum: int) -> None:
        super().__init__(message)
        self.bond_amount = bond_amount
        self.minimum = minimum


class SlippageExceeded(EngineError):
    """Raised when the executed price is worse than the caller's limit."""

    def __init__(self, message: str, *, actual: int, limit: int) -> None:
        super().__init__(message)
        self.actual = actual
        self.limit = limit


class InvalidTradeError(EngineError):
    """Raised for malformed trade requests or trades against non-trading markets."""


class InsufficientBalanceError(EngineError):
    """Raised when an account lacks the collateral for a debit."""


class InsufficientSharesError(EngineError):
    """Raised when an account sells or transfers more shares than it holds."""


class MarketNotFoundError(EngineError):
    """Raised when a market id is unknown to the ledger."""


class DisputeNotFoundError(EngineError):
    """Raised when a dispute id is unknown to the ledger."""


class MarketValidationError(EngineError):
    """Raised when market creation input is invalid."""


class UnauthorizedActionError(EngineError):
    """Raised when an actor lacks the role required for an operation."""


class StaleStateError(EngineError):
    """Raised when the secondary store diverges from ledger state."""

    def __init__(
        self,
        message: str,
        *,
        table: str,
        key: str,
        drift: str,
        fields: dict[str, tuple[Any, Any]] | None = None,
    ) -> None:
        super().__init__(message)
        self.table = table
        self.key = key
        self.drift = drift
        self.fields = fields or {}


class ReserveInvariantError(EngineError):
    """Raised when market reserve accounting is violated; the market is halted."""


class MarketHaltedError(EngineError):
    """Raised for any write against a market halted by an invariant violation."""

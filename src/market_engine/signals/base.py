"""Provider-agnostic external signal interface."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from datetime import UTC, datetime

from ..models import Market
from .models import ExternalSignal


class ExternalSignalProvider(ABC):
    """Base contract for providers of an independent YES estimate."""

    provider_name = "base"

    @abstractmethod
    def fetch_signal(self, market: Market) -> ExternalSignal | None:
        """Return the provider's estimate, or None when it has no opinion."""

    @abstractmethod
    def close(self) -> None:
        """Release provider resources."""


class StaticSignalProvider(ExternalSignalProvider):
    """Serve fixed YES scores keyed by market id; used offline and in tests."""

    provider_name = "static"

    def __init__(
        self,
        scores: Mapping[str, float] | None = None,
        now_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._scores = dict(scores or {})
        self._now_provider = now_provider or (lambda: datetime.now(UTC))

    def set_score(self, market_id: str, yes_score: float | None) -> None:
        if yes_score is None:
            self._scores.pop(market_id, None)
        else:
            self._scores[market_id] = yes_score

    def fetch_signal(self, market: Market) -> ExternalSignal | None:
        score = self._scores.get(market.market_id)
        if score is None:
            return None
        return ExternalSignal(
            market_id=market.market_id,
            yes_score=score,
            source=self.provider_name,
            fetched_at=self._now_provider(),
        )

    def close(self) -> None:
        return None

"""Typed models for resolution records and lifecycle history."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator

from ..models import MarketStatus, Outcome, ResolvedBy, utc_validator


class LifecycleEvent(BaseModel):
    """One applied lifecycle transition or resolution-record change."""

    market_id: str
    event: str
    from_status: MarketStatus | None = None
    to_status: MarketStatus | None = None
    actor: str | None = None
    ts: datetime
    note: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("ts", mode="before")
    @classmethod
    def ensure_utc(cls, value: Any) -> Any:
        return utc_validator(value)


class ResolutionRecord(BaseModel):
    """Preliminary/final resolution state for one market."""

    market_id: str
    preliminary_outcome: Outcome = Outcome.UNSET
    preliminary_at: datetime
    confidence: float = Field(default=0.0, ge=0.0, le=100.0)
    opposite_confidence: float = Field(default=0.0, ge=0.0, le=100.0)
    confidence_updated_at: datetime | None = None
    external_yes_score: float | None = Field(default=None, ge=0.0, le=100.0)
    external_source: str | None = None
    final_outcome: Outcome | None = None
    resolved_by: ResolvedBy | None = None
    resolved_at: datetime | None = None
    dispute_window_end: datetime
    window_extensions: int = 0
    closed_early: bool = False
    requires_review: bool = False
    review_reason: str | None = None
    fallback_applied: bool = False
    sealed: bool = False

    @field_validator(
        "preliminary_at",
        "confidence_updated_at",
        "resolved_at",
        "dispute_window_end",
        mode="before",
    )
    @classmethod
    def ensure_optional_utc(cls, value: Any) -> Any:
        return utc_validator(value)

    def window_closed(self, now: datetime) -> bool:
        return self.closed_early or now >= self.dispute_window_end

    def confidence_for(self, outcome: Outcome) -> float:
        if outcome == self.preliminary_outcome:
            return self.confidence
        if outcome == self.preliminary_outcome.opposite:
            return self.opposite_confidence
        return 0.0

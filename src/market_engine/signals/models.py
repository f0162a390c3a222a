"""Typed external confidence signal."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator

from ..models import utc_validator


class ExternalSignal(BaseModel):
    """Independent estimate that a market resolves YES, on a 0-100 scale."""

    market_id: str
    yes_score: float = Field(ge=0.0, le=100.0)
    source: str
    fetched_at: datetime
    raw_payload: dict[str, Any] = Field(default_factory=dict)

    @field_validator("fetched_at", mode="before")
    @classmethod
    def ensure_utc(cls, value: Any) -> Any:
        return utc_validator(value)

    @property
    def yes_probability(self) -> float:
        return self.yes_score / 100.0

"""Shared domain types: sides, outcomes, lifecycle status and the market record."""

from __future__ import annotations

import hashlib
from datetime import UTC, datetime
from enum import Enum, IntEnum
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

Side = Literal["yes", "no"]
ResolvedBy = Literal["automated", "admin"]


class MarketStatus(IntEnum):
    """Lifecycle status; integer values match the settlement layer's encoding."""

    SUBMITTED = 0
    OPEN = 1
    PENDING_RESOLUTION = 2
    RESOLVED = 3
    CANCELED = 4


class Outcome(str, Enum):
    UNSET = "unset"
    YES = "yes"
    NO = "no"
    INVALID = "invalid"

    @property
    def opposite(self) -> Outcome:
        if self is Outcome.YES:
            return Outcome.NO
        if self is Outcome.NO:
            return Outcome.YES
        raise ValueError(f"Outcome {self.value} has no opposite.")

    @property
    def side(self) -> Side:
        if self is Outcome.YES:
            return "yes"
        if self is Outcome.NO:
            return "no"
        raise ValueError(f"Outcome {self.value} does not map to a share side.")


def ensure_utc(value: datetime) -> datetime:
    return value.astimezone(UTC) if value.tzinfo else value.replace(tzinfo=UTC)


def utc_validator(value: Any) -> Any:
    if isinstance(value, datetime):
        return ensure_utc(value)
    return value


def derive_market_id(
    *,
    creator: str,
    question: str,
    expires_at: datetime,
    created_at: datetime,
) -> str:
    """Content-derived market identifier."""
    material = "|".join(
        [
            creator,
            " ".join(question.split()).lower(),
            ensure_utc(expires_at).isoformat(),
            ensure_utc(created_at).isoformat(),
        ]
    )
    return "mkt-" + hashlib.sha256(material.encode("utf-8")).hexdigest()[:20]


class Market(BaseModel):
    """One binary claim; owned by the lifecycle component."""

    market_id: str
    question: str
    creator: str
    created_at: datetime
    expires_at: datetime
    status: MarketStatus = MarketStatus.SUBMITTED
    collateral_token: str
    fee_rate_bps: int = Field(ge=0, lt=10_000)
    resolver: str
    halted: bool = False
    halted_reason: str | None = None

    @field_validator("created_at", "expires_at", mode="before")
    @classmethod
    def ensure_timezone_aware(cls, value: Any) -> Any:
        return utc_validator(value)

    def is_expired(self, now: datetime) -> bool:
        return ensure_utc(now) >= self.expires_at

"""Typed results of a resolution monitor cycle."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

MonitorActionKind = Literal[
    "preliminary_resolved",
    "finalized",
    "fallback_finalized",
    "window_extended",
    "flagged_for_review",
]


class MonitorAction(BaseModel):
    market_id: str
    action: MonitorActionKind
    detail: str | None = None


class MonitorCycleReport(BaseModel):
    """What one pass over expired and pending markets did."""

    started_at: datetime
    finished_at: datetime | None = None
    scanned: int = 0
    actions: list[MonitorAction] = Field(default_factory=list)
    noops: list[str] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)

    def actions_for(self, market_id: str) -> list[str]:
        return [action.action for action in self.actions if action.market_id == market_id]

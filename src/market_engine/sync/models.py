"""Typed reconciliation results."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

DriftKind = Literal["missing", "stale", "orphan"]


class RepairRecord(BaseModel):
    table: str
    key: str
    drift: DriftKind
    fields: dict[str, list[Any]] = Field(default_factory=dict)


class SyncReport(BaseModel):
    """Outcome of one reconciliation pass."""

    scope: str = "all"
    started_at: datetime
    finished_at: datetime | None = None
    rows_checked: dict[str, int] = Field(default_factory=dict)
    repairs: list[RepairRecord] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)

    @property
    def repaired_count(self) -> int:
        return len(self.repairs)

    @property
    def in_sync(self) -> bool:
        return not self.repairs and not self.errors

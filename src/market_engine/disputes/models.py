"""Typed models for bonded dispute submissions."""

from __future__ import annotations

import hashlib
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator

from ..models import Outcome, utc_validator


class DisputeStatus(str, Enum):
    ACTIVE = "active"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"


class Evidence(BaseModel):
    """Evidence text plus supporting links."""

    text: str = Field(min_length=1)
    links: list[str] = Field(default_factory=list)

    @property
    def evidence_hash(self) -> str:
        material = "\n".join([self.text.strip(), *sorted(link.strip() for link in self.links)])
        return "sha256:" + hashlib.sha256(material.encode("utf-8")).hexdigest()


class Dispute(BaseModel):
    """Bonded challenge against a preliminary outcome."""

    dispute_id: str
    market_id: str
    disputer: str
    bond_amount: int = Field(gt=0)
    declared_outcome: Outcome
    evidence: Evidence
    evidence_hash: str
    legitimate: bool | None = None
    contradicts_consensus: bool | None = None
    status: DisputeStatus = DisputeStatus.ACTIVE
    created_at: datetime
    resolved_at: datetime | None = None
    resolved_by: str | None = None
    refunded_amount: int = 0
    slashed_amount: int = 0

    @field_validator("created_at", "resolved_at", mode="before")
    @classmethod
    def ensure_optional_utc(cls, value: Any) -> Any:
        return utc_validator(value)

    @property
    def is_active(self) -> bool:
        return self.status == DisputeStatus.ACTIVE

    @property
    def is_reviewed(self) -> bool:
        return self.legitimate is not None


class BondSettlement(BaseModel):
    """How one dispute bond was released."""

    dispute_id: str
    status: DisputeStatus
    refunded: int
    slashed: int

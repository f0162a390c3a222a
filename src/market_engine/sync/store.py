"""SQLAlchemy-backed secondary store of queryable market projections."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Float,
    Integer,
    String,
    Text,
    create_engine,
    delete,
    select,
)
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from ..exceptions import StoreError


def utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    pass


class MarketRow(Base):
    __tablename__ = "markets"

    market_id: Mapped[str] = mapped_column(String, primary_key=True)
    question: Mapped[str] = mapped_column(Text, nullable=False)
    creator: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, index=True)
    status_code: Mapped[int] = mapped_column(Integer, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    fee_rate_bps: Mapped[int] = mapped_column(Integer, nullable=False)
    collateral_token: Mapped[str] = mapped_column(String(20), nullable=False)
    resolver: Mapped[str] = mapped_column(String, nullable=False)
    halted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    yes_shares: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    no_shares: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    reserve: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    price_yes: Mapped[int] = mapped_column(BigInteger, nullable=False)
    price_no: Mapped[int] = mapped_column(BigInteger, nullable=False)
    preliminary_outcome: Mapped[str | None] = mapped_column(String, nullable=True)
    final_outcome: Mapped[str | None] = mapped_column(String, nullable=True)
    confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    dispute_window_end: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    requires_review: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    synced_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class DisputeRow(Base):
    __tablename__ = "disputes"

    dispute_id: Mapped[str] = mapped_column(String, primary_key=True)
    market_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    disputer: Mapped[str] = mapped_column(String, nullable=False)
    bond_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    declared_outcome: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False)
    legitimate: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    contradicts_consensus: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    evidence_hash: Mapped[str] = mapped_column(String(71), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    refunded_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    slashed_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    synced_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class PositionRow(Base):
    __tablename__ = "positions"

    position_key: Mapped[str] = mapped_column(String, primary_key=True)
    market_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    account: Mapped[str] = mapped_column(String, nullable=False, index=True)
    yes_shares: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    no_shares: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    cost_basis: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    redeemed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    redeemed_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    synced_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


TABLES: dict[str, type[Base]] = {
    "markets": MarketRow,
    "disputes": DisputeRow,
    "positions": PositionRow,
}

_PRIMARY_KEYS = {
    "markets": "market_id",
    "disputes": "dispute_id",
    "positions": "position_key",
}

# Bookkeeping columns that are never compared against the ledger.
IGNORED_COLUMNS = frozenset({"synced_at"})


def _ensure_sqlite_path(url: str) -> None:
    if not url.startswith("sqlite"):
        return
    database = make_url(url).database
    if not database or database == ":memory:":
        return
    Path(database).parent.mkdir(parents=True, exist_ok=True)


def _row_to_dict(row: Base) -> dict[str, Any]:
    return {
        column.key: getattr(row, column.key)
        for column in row.__table__.columns
        if column.key not in IGNORED_COLUMNS
    }


class SecondaryStore:
    """Queryable projection of ledger state; never authoritative."""

    def __init__(self, database_url: str, logger: logging.Logger | None = None) -> None:
        self.database_url = database_url
        self.logger = logger or logging.getLogger("market_engine.store")
        engine_kwargs: dict[str, Any] = {"future": True, "pool_pre_ping": True}
        if make_url(database_url).get_backend_name() == "sqlite":
            engine_kwargs["connect_args"] = {"check_same_thread": False}
            _ensure_sqlite_path(database_url)
        try:
            self.engine = create_engine(database_url, **engine_kwargs)
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed creating store engine: {exc}") from exc
        self._session_factory = sessionmaker(bind=self.engine, autoflush=True, future=True)

    def init_schema(self) -> None:
        try:
            Base.metadata.create_all(bind=self.engine)
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed creating store schema: {exc}") from exc

    def close(self) -> None:
        self.engine.dispose()

    @contextmanager
    def session(self) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            raise StoreError(f"Secondary store operation failed: {exc}") from exc
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def get_row(self, table: str, key: str) -> dict[str, Any] | None:
        with self.session() as session:
            row = session.get(TABLES[table], key)
            return _row_to_dict(row) if row is not None else None

    def rows(self, table: str, *, market_id: str | None = None) -> dict[str, dict[str, Any]]:
        """Return ``{primary_key: row}`` for a table, optionally scoped to one market."""
        model = TABLES[table]
        pk = _PRIMARY_KEYS[table]
        query = select(model)
        if market_id is not None:
            query = query.where(model.market_id == market_id)
        with self.session() as session:
            return {
                getattr(row, pk): _row_to_dict(row) for row in session.execute(query).scalars()
            }

    def upsert(self, table: str, key: str, values: dict[str, Any]) -> None:
        model = TABLES[table]
        with self.session() as session:
            row = session.get(model, key)
            if row is None:
                row = model(**{_PRIMARY_KEYS[table]: key})
                session.add(row)
            for column, value in values.items():
                setattr(row, column, value)
            row.synced_at = utcnow()

    def delete(self, table: str, key: str) -> None:
        model = TABLES[table]
        pk_column = getattr(model, _PRIMARY_KEYS[table])
        with self.session() as session:
            session.execute(delete(model).where(pk_column == key))

    def positions_for_account(self, account: str) -> list[dict[str, Any]]:
        with self.session() as session:
            query = (
                select(PositionRow)
                .where(PositionRow.account == account)
                .order_by(PositionRow.market_id)
            )
            return [_row_to_dict(row) for row in session.execute(query).scalars()]

    def markets_by_status(self, status: str) -> list[dict[str, Any]]:
        with self.session() as session:
            query = (
                select(MarketRow)
                .where(MarketRow.status == status)
                .order_by(MarketRow.expires_at)
            )
            return [_row_to_dict(row) for row in session.execute(query).scalars()]

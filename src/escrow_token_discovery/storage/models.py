"""SQLAlchemy models for persistent storage.

This module defines the database schema for indexer configurations (scan
progress), discovered tokens, and per-escrow token balances.
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    BigInteger,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.engine import Dialect
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator, TypeEngine

UINT256_DIGITS = 78


class Uint256(TypeDecorator[Decimal]):
    """Exact unsigned 256-bit integer.

    `NUMERIC(78, 0)` on PostgreSQL. SQLite has no exact wide numeric type
    (its NUMERIC affinity rounds through a double), so values are stored as
    decimal text there.
    """

    impl = Numeric(UINT256_DIGITS, 0)
    cache_ok = True

    def load_dialect_impl(self, dialect: Dialect) -> TypeEngine[Any]:
        if dialect.name == "sqlite":
            return dialect.type_descriptor(String(UINT256_DIGITS))
        return dialect.type_descriptor(Numeric(UINT256_DIGITS, 0))

    def process_bind_param(self, value: Any, dialect: Dialect) -> Any:
        if value is None:
            return None
        units = int(value)
        if dialect.name == "sqlite":
            return str(units)
        return Decimal(units)

    def process_result_value(self, value: Any, dialect: Dialect) -> Decimal | None:  # noqa: ARG002
        if value is None:
            return None
        return Decimal(value)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class IndexerConfigurationModel(Base):
    """Progress row for one configuration of one indexer.

    `id` is a content digest of the configuration's identity, so identical
    configurations collapse to a single row.
    """

    __tablename__ = "indexer_configurations"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    indexer_id: Mapped[str] = mapped_column(String(200), nullable=False)
    properties: Mapped[str] = mapped_column(Text, nullable=False)
    current_height: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    min_height: Mapped[int] = mapped_column(BigInteger, nullable=False)
    max_height: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    __table_args__ = (Index("idx_indexer_configurations_indexer_id", "indexer_id"),)


class DiscoveredTokenModel(Base):
    """A token seen flowing into a monitored escrow.

    The surrogate `id` preserves discovery order across runs.
    """

    __tablename__ = "discovered_tokens"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    chain: Mapped[str] = mapped_column(String(64), nullable=False)
    address: Mapped[str] = mapped_column(String(42), nullable=False)
    external_id: Mapped[str | None] = mapped_column(String(200), nullable=True)
    symbol: Mapped[str | None] = mapped_column(String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (UniqueConstraint("chain", "address", name="uq_discovered_tokens_chain_address"),)


class EscrowBalanceModel(Base):
    """Latest observed balance of one token in one escrow (overwritten, not accumulated)."""

    __tablename__ = "escrow_balances"

    chain: Mapped[str] = mapped_column(String(64), primary_key=True)
    token_address: Mapped[str] = mapped_column(String(42), primary_key=True)
    escrow_address: Mapped[str] = mapped_column(String(42), primary_key=True)

    # Raw token units (uint256) and the token's decimals at read time.
    balance_units: Mapped[Decimal] = mapped_column(Uint256(), nullable=False)
    decimals: Mapped[int] = mapped_column(Integer, nullable=False)
    project_id: Mapped[str] = mapped_column(String(200), nullable=False)

    __table_args__ = (Index("idx_escrow_balances_escrow", "chain", "escrow_address"),)

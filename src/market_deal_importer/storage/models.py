"""SQLAlchemy models for persistent storage.

This module defines the database schema for market deals, resolved
client addresses, owner aliases and the derived per-deal tags.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    false,
)
from sqlalchemy.engine import Dialect
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator, TypeEngine


class TokenAmount(TypeDecorator[Decimal]):
    """Exact unbounded integer amount (token amounts, piece sizes).

    Stored as NUMERIC(78, 0) on PostgreSQL. SQLite binds NUMERIC through
    float, so there the digits are kept as text instead.
    """

    impl = Numeric(78, 0)
    cache_ok = True

    def load_dialect_impl(self, dialect: Dialect) -> TypeEngine[Any]:
        if dialect.name == "sqlite":
            return dialect.type_descriptor(String(80))
        return dialect.type_descriptor(Numeric(78, 0))

    def process_bind_param(self, value: Any, dialect: Dialect) -> Any:
        if value is None or dialect.name != "sqlite":
            return value
        return str(int(value))

    def process_result_value(self, value: Any, dialect: Dialect) -> Decimal | None:
        if value is None:
            return None
        return Decimal(str(value))


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


# Lifecycle columns rewritten when a deal_id is ingested again.
MUTABLE_DEAL_FIELDS: tuple[str, ...] = (
    "sector_start_epoch",
    "last_updated_epoch",
    "slash_epoch",
)

# Columns holding arbitrary-precision integers.
BIG_INT_DEAL_FIELDS: tuple[str, ...] = (
    "piece_size",
    "storage_price_per_epoch",
    "provider_collateral",
    "client_collateral",
)


class DealModel(Base):
    """Current state of one storage market deal.

    Proposal terms are write-once; only the lifecycle epochs change when a
    deal is ingested again.
    """

    __tablename__ = "deals"

    deal_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    piece_cid: Mapped[str] = mapped_column(Text, nullable=False)
    piece_size: Mapped[Decimal] = mapped_column(TokenAmount, nullable=False)
    verified_deal: Mapped[bool] = mapped_column(Boolean, nullable=False)
    client: Mapped[str] = mapped_column(Text, nullable=False)
    provider: Mapped[str] = mapped_column(Text, nullable=False)
    label: Mapped[str] = mapped_column(Text, nullable=False)
    start_epoch: Mapped[int] = mapped_column(Integer, nullable=False)
    end_epoch: Mapped[int] = mapped_column(Integer, nullable=False)
    storage_price_per_epoch: Mapped[Decimal] = mapped_column(TokenAmount, nullable=False)
    provider_collateral: Mapped[Decimal] = mapped_column(TokenAmount, nullable=False)
    client_collateral: Mapped[Decimal] = mapped_column(TokenAmount, nullable=False)

    # Lifecycle; -1 means the event has not happened yet.
    sector_start_epoch: Mapped[int] = mapped_column(Integer, nullable=False)
    last_updated_epoch: Mapped[int] = mapped_column(Integer, nullable=False)
    slash_epoch: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        Index("idx_deals_piece_cid", "piece_cid"),
        Index("idx_deals_client", "client"),
        Index("idx_deals_provider", "provider"),
    )


class ClientMappingModel(Base):
    """Resolved account address for a client identifier (append-only)."""

    __tablename__ = "client_mappings"

    client: Mapped[str] = mapped_column(Text, primary_key=True)
    client_address: Mapped[str] = mapped_column(Text, nullable=False)


class OwnerAliasModel(Base):
    """Curated grouping of account addresses under one logical owner.

    Maintained outside the importer; an address without an alias is its own
    owner.
    """

    __tablename__ = "owner_aliases"

    client_address: Mapped[str] = mapped_column(Text, primary_key=True)
    owner_id: Mapped[str] = mapped_column(Text, nullable=False)

    __table_args__ = (Index("idx_owner_aliases_owner_id", "owner_id"),)


class DealTagModel(Base):
    """Per-deal classification flags derived from deals and client mappings."""

    __tablename__ = "deal_tags"

    deal_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("deals.deal_id"), primary_key=True, autoincrement=False
    )
    cid_overreplicated: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=false()
    )
    cid_shared: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=false()
    )
    cid_unique: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=false()
    )
    sector_start: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    piece_size: Mapped[Decimal | None] = mapped_column(TokenAmount, nullable=True)

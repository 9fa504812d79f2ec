"""Repository pattern implementations for data access.

This module provides data access abstractions for deals, client
mappings, owner aliases and deal tags.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from market_deal_importer.storage.models import (
    BIG_INT_DEAL_FIELDS,
    MUTABLE_DEAL_FIELDS,
    ClientMappingModel,
    DealModel,
    DealTagModel,
    OwnerAliasModel,
)

if TYPE_CHECKING:
    from sqlalchemy.dialects.postgresql import Insert as PgInsert
    from sqlalchemy.dialects.sqlite import Insert as SqliteInsert
    from sqlalchemy.ext.asyncio import AsyncSession

    from market_deal_importer.ingestor.models import DealRow

logger = logging.getLogger(__name__)


def dialect_insert(session: AsyncSession, model: type[Any]) -> PgInsert | SqliteInsert:
    """Return an ``INSERT`` construct supporting ``ON CONFLICT`` for the bound dialect."""
    bind = session.get_bind()
    dialect = bind.dialect.name
    if dialect == "postgresql":
        return pg_insert(model)
    if dialect == "sqlite":
        return sqlite_insert(model)
    raise NotImplementedError(f"Upserts are not supported on dialect {dialect!r}")


@dataclass
class DealDTO:
    """Data transfer object for a persisted deal."""

    deal_id: int
    piece_cid: str
    piece_size: int
    verified_deal: bool
    client: str
    provider: str
    label: str
    start_epoch: int
    end_epoch: int
    storage_price_per_epoch: int
    provider_collateral: int
    client_collateral: int
    sector_start_epoch: int
    last_updated_epoch: int
    slash_epoch: int

    @classmethod
    def from_model(cls, model: DealModel) -> DealDTO:
        return cls(
            deal_id=model.deal_id,
            piece_cid=model.piece_cid,
            piece_size=int(model.piece_size),
            verified_deal=model.verified_deal,
            client=model.client,
            provider=model.provider,
            label=model.label,
            start_epoch=model.start_epoch,
            end_epoch=model.end_epoch,
            storage_price_per_epoch=int(model.storage_price_per_epoch),
            provider_collateral=int(model.provider_collateral),
            client_collateral=int(model.client_collateral),
            sector_start_epoch=model.sector_start_epoch,
            last_updated_epoch=model.last_updated_epoch,
            slash_epoch=model.slash_epoch,
        )


def _deal_values(row: DealRow) -> dict[str, Any]:
    values = row._asdict()
    for name in BIG_INT_DEAL_FIELDS:
        values[name] = Decimal(values[name])
    return values


class DealRepository:
    """Repository for the deals table."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, deal_id: int) -> DealDTO | None:
        result = await self.session.execute(select(DealModel).where(DealModel.deal_id == deal_id))
        model = result.scalar_one_or_none()
        return DealDTO.from_model(model) if model else None

    async def count(self) -> int:
        result = await self.session.execute(select(func.count()).select_from(DealModel))
        return int(result.scalar_one())

    async def upsert_many(self, rows: Sequence[DealRow]) -> int:
        """Insert a batch of deals in one statement.

        Existing deals keep their proposal terms; only the lifecycle epochs
        are overwritten.

        Returns:
            Number of distinct deals sent to the database.
        """
        if not rows:
            return 0

        # A single INSERT cannot touch the same conflict key twice; last one wins.
        unique_by_id: dict[int, DealRow] = {}
        for row in rows:
            unique_by_id[row.deal_id] = row
        if len(unique_by_id) != len(rows):
            logger.warning(
                "Dropped %d duplicate deal ids from batch", len(rows) - len(unique_by_id)
            )

        stmt = dialect_insert(self.session, DealModel).values(
            [_deal_values(row) for row in unique_by_id.values()]
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["deal_id"],
            set_={name: stmt.excluded[name] for name in MUTABLE_DEAL_FIELDS},
        )
        await self.session.execute(stmt)
        await self.session.flush()
        return len(unique_by_id)

    async def list_unmapped_clients(self) -> list[str]:
        """Distinct deal clients that have no resolved address yet."""
        result = await self.session.execute(
            select(DealModel.client)
            .distinct()
            .outerjoin(ClientMappingModel, ClientMappingModel.client == DealModel.client)
            .where(ClientMappingModel.client.is_(None))
            .order_by(DealModel.client)
        )
        return [row[0] for row in result.all()]


@dataclass
class ClientMappingDTO:
    client: str
    client_address: str

    @classmethod
    def from_model(cls, model: ClientMappingModel) -> ClientMappingDTO:
        return cls(client=model.client, client_address=model.client_address)


class ClientMappingRepository:
    """Repository for resolved client addresses."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, client: str) -> ClientMappingDTO | None:
        result = await self.session.execute(
            select(ClientMappingModel).where(ClientMappingModel.client == client)
        )
        model = result.scalar_one_or_none()
        return ClientMappingDTO.from_model(model) if model else None

    async def get_all(self) -> dict[str, str]:
        result = await self.session.execute(
            select(ClientMappingModel.client, ClientMappingModel.client_address)
        )
        return {client: address for client, address in result.all()}

    async def insert_if_absent(self, dto: ClientMappingDTO) -> bool:
        """Insert a mapping; an existing mapping for the client is left untouched.

        Returns:
            True if a row was inserted.
        """
        stmt = dialect_insert(self.session, ClientMappingModel).values(
            client=dto.client,
            client_address=dto.client_address,
        )
        stmt = stmt.on_conflict_do_nothing(index_elements=["client"])
        result = await self.session.execute(stmt)
        await self.session.flush()
        return bool(result.rowcount)


class OwnerAliasRepository:
    """Repository for curated owner aliases."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def upsert(self, *, client_address: str, owner_id: str) -> None:
        stmt = dialect_insert(self.session, OwnerAliasModel).values(
            client_address=client_address,
            owner_id=owner_id,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["client_address"],
            set_={"owner_id": stmt.excluded.owner_id},
        )
        await self.session.execute(stmt)
        await self.session.flush()


@dataclass
class DealTagDTO:
    deal_id: int
    cid_overreplicated: bool
    cid_shared: bool
    cid_unique: bool
    sector_start: datetime | None
    piece_size: int | None

    @classmethod
    def from_model(cls, model: DealTagModel) -> DealTagDTO:
        sector_start = model.sector_start
        # SQLite hands timestamps back naive; they are stored as UTC.
        if sector_start is not None and sector_start.tzinfo is None:
            sector_start = sector_start.replace(tzinfo=UTC)
        return cls(
            deal_id=model.deal_id,
            cid_overreplicated=bool(model.cid_overreplicated),
            cid_shared=bool(model.cid_shared),
            cid_unique=bool(model.cid_unique),
            sector_start=sector_start,
            piece_size=int(model.piece_size) if model.piece_size is not None else None,
        )


class DealTagRepository:
    """Read access to derived deal tags (writes happen in tagging passes)."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, deal_id: int) -> DealTagDTO | None:
        result = await self.session.execute(
            select(DealTagModel).where(DealTagModel.deal_id == deal_id)
        )
        model = result.scalar_one_or_none()
        return DealTagDTO.from_model(model) if model else None

    async def list_all(self) -> list[DealTagDTO]:
        result = await self.session.execute(select(DealTagModel).order_by(DealTagModel.deal_id))
        return [DealTagDTO.from_model(model) for model in result.scalars().all()]

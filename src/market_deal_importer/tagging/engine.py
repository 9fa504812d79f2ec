"""Deal classification passes.

Each pass is a single ``INSERT ... SELECT ... ON CONFLICT DO UPDATE`` into
``deal_tags`` computed entirely by the database. Only verified deals whose
sector has started take part. A pass writes its own flag together with
``sector_start`` and ``piece_size``, so the passes can run in any order
and be re-run without changing the result.

Owner of a deal:
    COALESCE(owner_aliases.owner_id, client_mappings.client_address, deals.client)

Flags:
    cid_overreplicated
        Not the first deal for its piece with the same provider.
    cid_shared
        Not the first deal for its piece with the same owner, and the piece
        is stored by more than one owner.
    cid_unique
        The first deal for its piece by an eligible owner. An owner is
        eligible once it has stored more than ``min_total_piece_size``
        bytes and its latest sector started at least ``min_age_weeks``
        weeks ago.

"First" is by ``sector_start_epoch`` with ``deal_id`` as tie-break.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from sqlalchemy import Numeric, and_, distinct, func, select

from market_deal_importer.config import TIB
from market_deal_importer.storage.models import (
    ClientMappingModel,
    DealModel,
    DealTagModel,
    OwnerAliasModel,
)
from market_deal_importer.storage.repos import dialect_insert

from .epochs import datetime_to_epoch, epoch_to_datetime_sql

if TYPE_CHECKING:
    from sqlalchemy import Subquery
    from sqlalchemy.ext.asyncio import AsyncSession
    from sqlalchemy.sql.expression import ColumnElement, Select

    from market_deal_importer.config import TaggingSettings

logger = logging.getLogger(__name__)

DEFAULT_MIN_AGE_WEEKS = 6


@dataclass
class TagPassResult:
    """Rows written and deals flagged by each pass."""

    rows_overreplicated_pass: int = 0
    rows_shared_pass: int = 0
    rows_unique_pass: int = 0
    overreplicated: int = 0
    shared: int = 0
    unique: int = 0


def _owned_deals() -> Subquery:
    """Verified, started deals with their resolved owner."""
    address = func.coalesce(ClientMappingModel.client_address, DealModel.client)
    owner = func.coalesce(OwnerAliasModel.owner_id, address)
    return (
        select(
            DealModel.deal_id,
            DealModel.piece_cid,
            DealModel.provider,
            DealModel.piece_size,
            DealModel.sector_start_epoch,
            owner.label("owner"),
        )
        .select_from(DealModel)
        .outerjoin(ClientMappingModel, ClientMappingModel.client == DealModel.client)
        .outerjoin(OwnerAliasModel, OwnerAliasModel.client_address == address)
        .where(DealModel.verified_deal.is_(True), DealModel.sector_start_epoch > 0)
        .subquery("owned")
    )


def _first_seen_rank(owned: Subquery, *partition_by: ColumnElement[Any]) -> ColumnElement[int]:
    return (
        func.row_number()
        .over(
            partition_by=partition_by,
            order_by=(owned.c.sector_start_epoch, owned.c.deal_id),
        )
        .label("seq")
    )


class DealClassifier:
    """Runs the tagging passes over ``deals``.

    Example:
        ```python
        classifier = DealClassifier(settings.tagging)
        async with db.get_async_session() as session:
            result = await classifier.run_all(session)
        ```
    """

    def __init__(self, config: TaggingSettings | None = None) -> None:
        if config is None:
            self.min_total_piece_size = TIB
            self.min_age = timedelta(weeks=DEFAULT_MIN_AGE_WEEKS)
        else:
            self.min_total_piece_size = config.min_total_piece_size
            self.min_age = timedelta(weeks=config.min_age_weeks)

    def cutoff_epoch(self, now: datetime | None = None) -> int:
        """Latest sector start epoch that is old enough at ``now``."""
        if now is None:
            now = datetime.now(UTC)
        return datetime_to_epoch(now - self.min_age)

    async def _upsert(self, session: AsyncSession, flag: str, source: Select[Any]) -> int:
        columns = ["deal_id", flag, "sector_start", "piece_size"]
        stmt = dialect_insert(session, DealTagModel).from_select(columns, source)
        stmt = stmt.on_conflict_do_update(
            index_elements=["deal_id"],
            set_={name: stmt.excluded[name] for name in columns[1:]},
        )
        result = await session.execute(stmt)
        await session.flush()
        return max(result.rowcount, 0)

    async def tag_overreplicated(self, session: AsyncSession) -> int:
        """Flag repeat deals of a piece with the same provider."""
        owned = _owned_deals()
        ranked = select(
            owned.c.deal_id,
            owned.c.sector_start_epoch,
            owned.c.piece_size,
            _first_seen_rank(owned, owned.c.piece_cid, owned.c.provider),
        ).subquery("ranked")

        # SQLite needs a WHERE before ON CONFLICT in INSERT ... SELECT.
        source = select(
            ranked.c.deal_id,
            (ranked.c.seq > 1).label("cid_overreplicated"),
            epoch_to_datetime_sql(ranked.c.sector_start_epoch).label("sector_start"),
            ranked.c.piece_size,
        ).where(ranked.c.deal_id.is_not(None))

        rows = await self._upsert(session, "cid_overreplicated", source)
        logger.info("Over-replication pass wrote %d tag rows", rows)
        return rows

    async def tag_shared(self, session: AsyncSession) -> int:
        """Flag repeat deals of a piece by one owner when other owners hold it too."""
        owned = _owned_deals()
        owner_counts = (
            select(owned.c.piece_cid, func.count(distinct(owned.c.owner)).label("owner_count"))
            .group_by(owned.c.piece_cid)
            .subquery("owner_counts")
        )
        ranked = select(
            owned.c.deal_id,
            owned.c.piece_cid,
            owned.c.sector_start_epoch,
            owned.c.piece_size,
            _first_seen_rank(owned, owned.c.piece_cid, owned.c.owner),
        ).subquery("ranked")

        source = (
            select(
                ranked.c.deal_id,
                and_(ranked.c.seq > 1, owner_counts.c.owner_count > 1).label("cid_shared"),
                epoch_to_datetime_sql(ranked.c.sector_start_epoch).label("sector_start"),
                ranked.c.piece_size,
            )
            .select_from(ranked.join(owner_counts, owner_counts.c.piece_cid == ranked.c.piece_cid))
            .where(ranked.c.deal_id.is_not(None))
        )

        rows = await self._upsert(session, "cid_shared", source)
        logger.info("Sharing pass wrote %d tag rows", rows)
        return rows

    async def tag_unique(self, session: AsyncSession, *, now: datetime | None = None) -> int:
        """Flag the first deal of each piece for owners that are eligible at ``now``."""
        cutoff = self.cutoff_epoch(now)
        owned = _owned_deals()
        # Plain NUMERIC so the threshold binds as a number on every backend.
        total_size = func.sum(owned.c.piece_size, type_=Numeric(78, 0))
        eligible = (
            select(owned.c.owner)
            .group_by(owned.c.owner)
            .having(
                and_(
                    total_size > Decimal(self.min_total_piece_size),
                    func.max(owned.c.sector_start_epoch) <= cutoff,
                )
            )
            .subquery("eligible")
        )
        ranked = select(
            owned.c.deal_id,
            owned.c.owner,
            owned.c.sector_start_epoch,
            owned.c.piece_size,
            _first_seen_rank(owned, owned.c.owner, owned.c.piece_cid),
        ).subquery("ranked")

        source = (
            select(
                ranked.c.deal_id,
                and_(ranked.c.seq == 1, eligible.c.owner.is_not(None)).label("cid_unique"),
                epoch_to_datetime_sql(ranked.c.sector_start_epoch).label("sector_start"),
                ranked.c.piece_size,
            )
            .select_from(ranked.outerjoin(eligible, eligible.c.owner == ranked.c.owner))
            .where(ranked.c.deal_id.is_not(None))
        )

        rows = await self._upsert(session, "cid_unique", source)
        logger.info("Uniqueness pass wrote %d tag rows (cutoff epoch %d)", rows, cutoff)
        return rows

    async def _count_flagged(self, session: AsyncSession, flag: str) -> int:
        column = getattr(DealTagModel, flag)
        result = await session.execute(
            select(func.count()).select_from(DealTagModel).where(column.is_(True))
        )
        return int(result.scalar_one())

    async def run_all(self, session: AsyncSession, *, now: datetime | None = None) -> TagPassResult:
        """Run the three passes in one transaction."""
        result = TagPassResult(
            rows_overreplicated_pass=await self.tag_overreplicated(session),
            rows_shared_pass=await self.tag_shared(session),
            rows_unique_pass=await self.tag_unique(session, now=now),
        )
        result.overreplicated = await self._count_flagged(session, "cid_overreplicated")
        result.shared = await self._count_flagged(session, "cid_shared")
        result.unique = await self._count_flagged(session, "cid_unique")
        logger.info(
            "Tagged deals: %d over-replicated, %d shared, %d unique",
            result.overreplicated,
            result.shared,
            result.unique,
        )
        return result

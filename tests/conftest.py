"""Pytest configuration and fixtures."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator, Callable
from pathlib import Path
from typing import Any

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from market_deal_importer.ingestor.models import DealRow
from market_deal_importer.storage.database import DatabaseManager


def market_deal(
    *,
    piece_cid: str = "baga6ea4seaqpiece",
    piece_size: int | str = 34359738368,
    verified: bool = True,
    client: str = "f01000",
    provider: str = "f02000",
    label: str = "mAXCg5AIg",
    start_epoch: int = 1_000_000,
    end_epoch: int = 2_500_000,
    storage_price_per_epoch: int | str = "0",
    provider_collateral: int | str = "5040000000000000",
    client_collateral: int | str = "0",
    sector_start_epoch: int = 1_000_100,
    last_updated_epoch: int = -1,
    slash_epoch: int = -1,
) -> dict[str, Any]:
    """A MarketDeal value as it appears in StateMarketDeals."""
    return {
        "Proposal": {
            "PieceCID": {"/": piece_cid},
            "PieceSize": piece_size,
            "VerifiedDeal": verified,
            "Client": client,
            "Provider": provider,
            "Label": label,
            "StartEpoch": start_epoch,
            "EndEpoch": end_epoch,
            "StoragePricePerEpoch": storage_price_per_epoch,
            "ProviderCollateral": provider_collateral,
            "ClientCollateral": client_collateral,
        },
        "State": {
            "SectorStartEpoch": sector_start_epoch,
            "LastUpdatedEpoch": last_updated_epoch,
            "SlashEpoch": slash_epoch,
        },
    }


def deal_row(deal_id: int, **overrides: Any) -> DealRow:
    """A transcoded deal with sensible defaults."""
    values: dict[str, Any] = {
        "deal_id": deal_id,
        "piece_cid": "baga6ea4seaqpiece",
        "piece_size": 1024,
        "verified_deal": True,
        "client": "f01000",
        "provider": "f02000",
        "label": "",
        "start_epoch": 1_000_000,
        "end_epoch": 2_500_000,
        "storage_price_per_epoch": 0,
        "provider_collateral": 100,
        "client_collateral": 0,
        "sector_start_epoch": 1_000_100,
        "last_updated_epoch": -1,
        "slash_epoch": -1,
    }
    values.update(overrides)
    return DealRow(**values)


@pytest.fixture
def make_deal() -> Callable[..., dict[str, Any]]:
    """Factory for raw MarketDeal values."""
    return market_deal


@pytest.fixture
def make_row() -> Callable[..., DealRow]:
    """Factory for DealRow values."""
    return deal_row


@pytest.fixture
def write_deals_file(tmp_path: Path) -> Callable[..., Path]:
    """Write a StateMarketDeals JSON object to a temporary file."""

    def write(deals: dict[str, Any] | str, name: str = "StateMarketDeals.json") -> Path:
        path = tmp_path / name
        path.write_text(deals if isinstance(deals, str) else json.dumps(deals))
        return path

    return write


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    """File-backed SQLite so concurrent sessions see each other's commits."""
    return f"sqlite+aiosqlite:///{tmp_path / 'deals.db'}"


@pytest.fixture
async def db(database_url: str) -> AsyncIterator[DatabaseManager]:
    """Database manager with the schema created."""
    manager = DatabaseManager(database_url, pool_size=5, max_overflow=5)
    await manager.init_schema_async()
    yield manager
    await manager.dispose_async()


@pytest.fixture
async def async_session(db: DatabaseManager) -> AsyncIterator[AsyncSession]:
    """Create an async session for testing."""
    async with db.get_async_session() as session:
        yield session

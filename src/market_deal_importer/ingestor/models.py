"""Data models for the ingestor module."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, NamedTuple


@dataclass(frozen=True)
class RawDealEntry:
    """One ``deal_id -> MarketDeal`` pair as read from the source object."""

    key: str
    value: Any


class DealRow(NamedTuple):
    """A transcoded deal, in ``deals`` column order."""

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

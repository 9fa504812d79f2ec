"""Deal classification - replication, sharing and uniqueness tags."""

from market_deal_importer.tagging.engine import DealClassifier, TagPassResult
from market_deal_importer.tagging.epochs import (
    EPOCH_DURATION_SECONDS,
    GENESIS_TIMESTAMP,
    datetime_to_epoch,
    epoch_to_datetime,
    epoch_to_timestamp,
    timestamp_to_epoch,
)

__all__ = [
    "DealClassifier",
    "EPOCH_DURATION_SECONDS",
    "GENESIS_TIMESTAMP",
    "TagPassResult",
    "datetime_to_epoch",
    "epoch_to_datetime",
    "epoch_to_timestamp",
    "timestamp_to_epoch",
]

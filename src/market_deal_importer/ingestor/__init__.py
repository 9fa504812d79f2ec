"""Data ingestion layer - streaming StateMarketDeals import."""

from market_deal_importer.ingestor.batching import batched
from market_deal_importer.ingestor.models import DealRow, RawDealEntry
from market_deal_importer.ingestor.scheduler import BoundedScheduler, SchedulerClosed
from market_deal_importer.ingestor.source import (
    DealSourceError,
    DealStream,
    MalformedStream,
    SourceUnavailable,
)
from market_deal_importer.ingestor.transcode import (
    TranscodeError,
    client_of,
    transcode_batch,
    transcode_entry,
)
from market_deal_importer.ingestor.writer import DealBatchWriter, WriteFailure

__all__ = [
    "BoundedScheduler",
    "DealBatchWriter",
    "DealRow",
    "DealSourceError",
    "DealStream",
    "MalformedStream",
    "RawDealEntry",
    "SchedulerClosed",
    "SourceUnavailable",
    "TranscodeError",
    "WriteFailure",
    "batched",
    "client_of",
    "transcode_batch",
    "transcode_entry",
]

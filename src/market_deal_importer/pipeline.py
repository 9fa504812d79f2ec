"""Import pipeline orchestrator.

This module wires the deal stream, the batch writer, the client resolver
and the classifier together and owns the database and RPC resources for a
run.

Pipeline flow:
    DealStream → batched → BoundedScheduler(DealBatchWriter)
    observed clients → ClientMappingResolver.feed → same BoundedScheduler
    → drain → DealClassifier
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from functools import partial
from typing import TYPE_CHECKING, Any

from market_deal_importer.config import Settings, get_settings
from market_deal_importer.ingestor.batching import batched
from market_deal_importer.ingestor.scheduler import BoundedScheduler, SchedulerClosed
from market_deal_importer.ingestor.source import DealSourceError, DealStream
from market_deal_importer.ingestor.transcode import TranscodeError, client_of
from market_deal_importer.ingestor.writer import DealBatchWriter, WriteFailure
from market_deal_importer.resolver.lotus import LotusClient
from market_deal_importer.resolver.resolver import ClientMappingResolver
from market_deal_importer.storage.database import DatabaseManager
from market_deal_importer.tagging.engine import DealClassifier, TagPassResult

if TYPE_CHECKING:
    from collections.abc import Sequence

    from market_deal_importer.ingestor.models import RawDealEntry

logger = logging.getLogger(__name__)


class PipelineState(str, Enum):
    """Pipeline lifecycle states."""

    IDLE = "idle"
    INGESTING = "ingesting"
    DRAINING = "draining"
    TAGGING = "tagging"
    STOPPED = "stopped"
    ERROR = "error"


class StoreUnavailable(Exception):
    """Raised when too many consecutive batch writes have failed."""

    pass


@dataclass
class PipelineStats:
    """Statistics for the pipeline."""

    started_at: datetime | None = None
    finished_at: datetime | None = None
    deals_read: int = 0
    deals_written: int = 0
    batches_submitted: int = 0
    batches_written: int = 0
    transcode_failures: int = 0
    write_failures: int = 0
    consecutive_write_failures: int = 0
    task_failures: int = 0
    clients_scheduled: int = 0
    clients_resolved: int = 0
    resolve_failures: int = 0
    tag_result: TagPassResult | None = None
    last_error: str | None = None


class ImportPipeline:
    """Runs the ingest and tag phases against one database.

    Example:
        ```python
        from market_deal_importer.pipeline import ImportPipeline

        async with ImportPipeline() as pipeline:
            await pipeline.run()
            print(pipeline.stats.deals_written)
        ```
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        db: DatabaseManager | None = None,
        lotus: LotusClient | None = None,
    ) -> None:
        """Initialize the pipeline.

        Args:
            settings: Application settings. If not provided, uses get_settings().
            db: Database manager to use instead of one built from settings.
                A provided manager is not disposed by close().
            lotus: RPC client to use instead of one built from settings.
                A provided client is not closed by close().
        """
        self._settings = settings or get_settings()
        self._db = db
        self._owns_db = db is None
        self._lotus = lotus
        self._owns_lotus = lotus is None

        self._state = PipelineState.IDLE
        self._stats = PipelineStats()
        self._schema_ready = False
        self._scheduler: BoundedScheduler | None = None
        self._fatal: Exception | None = None

    @property
    def state(self) -> PipelineState:
        """Current pipeline state."""
        return self._state

    @property
    def stats(self) -> PipelineStats:
        """Current pipeline statistics."""
        return self._stats

    def _get_db(self) -> DatabaseManager:
        if self._db is None:
            database = self._settings.database
            self._db = DatabaseManager(
                database.url,
                pool_size=database.pool_size,
                max_overflow=database.max_overflow,
                pool_timeout=database.pool_timeout_seconds,
            )
        return self._db

    def _get_lotus(self) -> LotusClient | None:
        if not self._settings.lotus.resolve_clients:
            return None
        if self._lotus is None:
            self._lotus = LotusClient.from_settings(self._settings.lotus)
        return self._lotus

    async def _ensure_schema(self) -> None:
        if self._schema_ready or not self._settings.database.create_schema:
            return
        await self._get_db().init_schema_async()
        self._schema_ready = True

    def _fail(self, error: Exception) -> None:
        """Record the first fatal error and stop accepting new work."""
        if self._fatal is None:
            self._fatal = error
            self._stats.last_error = str(error)
            logger.error("Aborting ingest: %s", error)
        if self._scheduler is not None:
            self._scheduler.close()

    async def _write_batch(self, writer: DealBatchWriter, batch: Sequence[RawDealEntry]) -> None:
        try:
            written = await writer.write(batch)
        except TranscodeError as e:
            self._stats.transcode_failures += 1
            self._stats.last_error = str(e)
            return
        except WriteFailure as e:
            self._stats.write_failures += 1
            self._stats.consecutive_write_failures += 1
            self._stats.last_error = str(e)
            threshold = self._settings.ingest.max_consecutive_write_failures
            if self._stats.consecutive_write_failures >= threshold:
                self._fail(
                    StoreUnavailable(
                        f"{self._stats.consecutive_write_failures} consecutive batch writes failed; "
                        f"last error: {e.cause}"
                    )
                )
            return

        self._stats.consecutive_write_failures = 0
        self._stats.deals_written += written
        self._stats.batches_written += 1

    async def ingest(self, locator: str | None = None) -> PipelineStats:
        """Stream deals from ``locator`` into the database and resolve new clients.

        Returns once every submitted write and lookup has finished.

        Raises:
            DealSourceError: If the source could not be read to the end.
            StoreUnavailable: If the database kept rejecting batches.
        """
        settings = self._settings.ingest
        locator = locator or settings.input_url
        db = self._get_db()
        await self._ensure_schema()

        self._state = PipelineState.INGESTING
        self._fatal = None
        self._stats.started_at = datetime.now(UTC)
        logger.info(
            "Ingesting deals from %s (batch_size=%d, queue_size=%d)",
            locator,
            settings.batch_size,
            settings.queue_size,
        )

        scheduler = BoundedScheduler(settings.queue_size, name="ingest")
        self._scheduler = scheduler
        writer = DealBatchWriter(db.get_async_session)
        resolver: ClientMappingResolver | None = None
        feeder: asyncio.Task[None] | None = None
        lotus = self._get_lotus()
        stream_done = False

        try:
            if lotus is not None:
                resolver = ClientMappingResolver(db.get_async_session, lotus, scheduler)
                await resolver.prime()
                feeder = asyncio.create_task(resolver.feed(), name="resolver-feed")

            async with DealStream(locator, timeout=settings.http_timeout_seconds) as stream:
                async for batch in batched(stream, settings.batch_size):
                    if self._fatal is not None:
                        break
                    previous = self._stats.deals_read
                    self._stats.deals_read += len(batch)
                    if resolver is not None:
                        resolver.observe(client_of(entry) for entry in batch)

                    await scheduler.submit(
                        partial(self._write_batch, writer, batch),
                        label=f"deals-{batch[0].key}-{batch[-1].key}",
                    )
                    self._stats.batches_submitted += 1

                    every = settings.progress_every
                    if self._stats.deals_read // every > previous // every:
                        logger.info(
                            "Processed %d deals (%d batches written, %d in flight)",
                            self._stats.deals_read,
                            self._stats.batches_written,
                            scheduler.in_flight,
                        )
            stream_done = True
        except SchedulerClosed:
            # Closed by a failing write; that error is raised below.
            pass
        except DealSourceError as e:
            self._fail(e)
        finally:
            if resolver is not None and feeder is not None:
                abort = not stream_done or self._fatal is not None
                await self._stop_feeder(resolver, feeder, abort=abort)
            scheduler.close()
            self._state = PipelineState.DRAINING
            await scheduler.drain()
            self._scheduler = None
            self._stats.task_failures += scheduler.failed
            if resolver is not None:
                self._stats.clients_scheduled += resolver.stats.scheduled
                self._stats.clients_resolved += resolver.stats.resolved
                self._stats.resolve_failures += resolver.stats.failed

        self._stats.finished_at = datetime.now(UTC)
        self._log_ingest_summary()
        if self._fatal is not None:
            self._state = PipelineState.ERROR
            raise self._fatal

        self._state = PipelineState.IDLE
        return self._stats

    async def _stop_feeder(
        self, resolver: ClientMappingResolver, feeder: asyncio.Task[None], *, abort: bool
    ) -> None:
        """Wait for queued lookups to be submitted, or drop them when ``abort`` is set."""
        resolver.stop()
        if abort:
            feeder.cancel()
        await asyncio.wait([feeder])
        if not feeder.cancelled() and feeder.exception() is not None:
            logger.error("Client resolution stopped early: %s", feeder.exception())

    def _log_ingest_summary(self) -> None:
        stats = self._stats
        logger.info(
            "Total processed %d deals: %d written in %d batches, "
            "%d transcode failures, %d write failures, %d other task failures",
            stats.deals_read,
            stats.deals_written,
            stats.batches_written,
            stats.transcode_failures,
            stats.write_failures,
            stats.task_failures,
        )
        if stats.clients_scheduled:
            logger.info(
                "Client resolution: %d looked up, %d resolved, %d failed",
                stats.clients_scheduled,
                stats.clients_resolved,
                stats.resolve_failures,
            )

    async def tag(self, *, now: datetime | None = None) -> TagPassResult:
        """Run the classification passes over everything ingested so far."""
        db = self._get_db()
        await self._ensure_schema()

        self._state = PipelineState.TAGGING
        classifier = DealClassifier(self._settings.tagging)
        try:
            async with db.get_async_session() as session:
                result = await classifier.run_all(session, now=now)
        except Exception as e:
            self._state = PipelineState.ERROR
            self._stats.last_error = str(e)
            logger.error("Tagging failed: %s", e)
            raise

        self._stats.tag_result = result
        self._state = PipelineState.IDLE
        return result

    async def run(self, locator: str | None = None, *, now: datetime | None = None) -> PipelineStats:
        """Ingest, then tag. Tagging only starts after ingestion has fully drained."""
        await self.ingest(locator)
        await self.tag(now=now)
        return self._stats

    async def close(self) -> None:
        """Release the RPC client and database pool owned by this pipeline."""
        if self._owns_lotus and self._lotus is not None:
            await self._lotus.aclose()
            self._lotus = None
        if self._owns_db and self._db is not None:
            await self._db.dispose_async()
            self._db = None
        self._state = PipelineState.STOPPED

    async def __aenter__(self) -> ImportPipeline:
        """Async context manager entry."""
        return self

    async def __aexit__(self, *args: Any) -> None:
        """Async context manager exit."""
        await self.close()

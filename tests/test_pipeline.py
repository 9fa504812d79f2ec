"""Tests for the import pipeline orchestrator."""

from __future__ import annotations

import asyncio
import logging
from typing import Any
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.exc import OperationalError

from market_deal_importer.config import (
    DatabaseSettings,
    IngestSettings,
    LotusSettings,
    Settings,
    TaggingSettings,
)
from market_deal_importer.ingestor.source import MalformedStream, SourceUnavailable
from market_deal_importer.ingestor.writer import DealBatchWriter
from market_deal_importer.pipeline import ImportPipeline, PipelineState, StoreUnavailable
from market_deal_importer.storage.repos import (
    ClientMappingRepository,
    DealRepository,
    DealTagRepository,
)
from market_deal_importer.tagging.epochs import epoch_to_datetime


def _settings(database_url: str, *, resolve: bool = False, **ingest: Any) -> Settings:
    ingest_values = {"BATCH_SIZE": 2, "QUEUE_SIZE": 2, **ingest}
    return Settings(
        database=DatabaseSettings(DATABASE_URL=database_url),
        ingest=IngestSettings(**ingest_values),
        lotus=LotusSettings(LOTUS_RESOLVE_CLIENTS=resolve, LOTUS_AUTH_TOKEN="tok"),
        tagging=TaggingSettings(TAGGING_MIN_TOTAL_PIECE_SIZE=1000, TAGGING_MIN_AGE_WEEKS=6),
        LOG_LEVEL="INFO",
    )


async def _deal_count(db) -> int:
    async with db.get_async_session() as session:
        return await DealRepository(session).count()


class TestPipelineState:
    """Tests for pipeline state management."""

    def test_initial_state_is_idle(self, database_url) -> None:
        pipeline = ImportPipeline(_settings(database_url))
        assert pipeline.state == PipelineState.IDLE

    @pytest.mark.asyncio
    async def test_close_stops(self, db, database_url) -> None:
        async with ImportPipeline(_settings(database_url), db=db) as pipeline:
            await pipeline.tag()
            assert pipeline.state == PipelineState.IDLE
        assert pipeline.state == PipelineState.STOPPED


class TestIngest:
    """Tests for the ingest phase."""

    @pytest.mark.asyncio
    async def test_ingests_every_deal(self, db, database_url, make_deal, write_deals_file) -> None:
        path = write_deals_file({str(i): make_deal() for i in range(5)})
        pipeline = ImportPipeline(_settings(database_url), db=db)

        stats = await pipeline.ingest(str(path))

        assert stats.deals_read == 5
        assert stats.deals_written == 5
        assert stats.batches_submitted == 3
        assert stats.batches_written == 3
        assert stats.transcode_failures == 0
        assert pipeline.state == PipelineState.IDLE
        assert await _deal_count(db) == 5

    @pytest.mark.asyncio
    async def test_input_url_from_settings(self, db, database_url, make_deal, write_deals_file) -> None:
        path = write_deals_file({"7": make_deal()})
        pipeline = ImportPipeline(_settings(database_url, INPUT_URL=str(path)), db=db)

        await pipeline.ingest()

        assert await _deal_count(db) == 1

    @pytest.mark.asyncio
    async def test_reingest_updates_mutable_fields(
        self, db, database_url, make_deal, write_deals_file
    ) -> None:
        pipeline = ImportPipeline(_settings(database_url), db=db)
        await pipeline.ingest(str(write_deals_file({"1": make_deal()}, "first.json")))
        await pipeline.ingest(str(write_deals_file({"1": make_deal(slash_epoch=2_000_000)}, "second.json")))

        async with db.get_async_session() as session:
            repo = DealRepository(session)
            deal = await repo.get(1)
            assert await repo.count() == 1
        assert deal is not None
        assert deal.slash_epoch == 2_000_000

    @pytest.mark.asyncio
    async def test_malformed_deal_fails_only_its_batch(
        self, db, database_url, make_deal, write_deals_file
    ) -> None:
        deals = {"1": make_deal(), "2": {"Proposal": {}}, "3": make_deal()}
        pipeline = ImportPipeline(_settings(database_url, BATCH_SIZE=1), db=db)

        stats = await pipeline.ingest(str(write_deals_file(deals)))

        assert stats.transcode_failures == 1
        assert stats.deals_written == 2
        assert stats.last_error is not None and "'2'" in stats.last_error
        assert pipeline.state == PipelineState.IDLE

    @pytest.mark.asyncio
    async def test_malformed_stream_is_fatal(
        self, db, database_url, make_deal, write_deals_file
    ) -> None:
        path = write_deals_file('{"1": {"Proposal": {"PieceCID": ')
        pipeline = ImportPipeline(_settings(database_url), db=db)

        with pytest.raises(MalformedStream):
            await pipeline.ingest(str(path))

        assert pipeline.state == PipelineState.ERROR
        assert pipeline.stats.last_error is not None

    @pytest.mark.asyncio
    async def test_missing_source(self, db, database_url, tmp_path) -> None:
        pipeline = ImportPipeline(_settings(database_url), db=db)

        with pytest.raises(SourceUnavailable):
            await pipeline.ingest(str(tmp_path / "missing.json"))

        assert pipeline.state == PipelineState.ERROR

    @pytest.mark.asyncio
    async def test_consecutive_write_failures_abort(
        self, db, database_url, make_deal, write_deals_file, monkeypatch
    ) -> None:
        async def failing_upsert(self, rows):
            raise OperationalError("INSERT INTO deals", {}, ConnectionRefusedError("down"))

        monkeypatch.setattr(DealRepository, "upsert_many", failing_upsert)
        path = write_deals_file({str(i): make_deal() for i in range(10)})
        settings = _settings(
            database_url, BATCH_SIZE=1, QUEUE_SIZE=1, INGEST_MAX_CONSECUTIVE_WRITE_FAILURES=2
        )
        pipeline = ImportPipeline(settings, db=db)

        with pytest.raises(StoreUnavailable):
            await pipeline.ingest(str(path))

        assert pipeline.state == PipelineState.ERROR
        assert pipeline.stats.write_failures >= 2
        assert pipeline.stats.deals_written == 0
        # Submission stopped early.
        assert pipeline.stats.batches_submitted < 10

    @pytest.mark.asyncio
    async def test_logs_progress(
        self, db, database_url, make_deal, write_deals_file, caplog
    ) -> None:
        path = write_deals_file({str(i): make_deal() for i in range(5)})
        settings = _settings(database_url, BATCH_SIZE=1, INGEST_PROGRESS_EVERY=2)
        pipeline = ImportPipeline(settings, db=db)

        with caplog.at_level(logging.INFO, logger="market_deal_importer.pipeline"):
            await pipeline.ingest(str(path))

        assert "Processed 2 deals" in caplog.text
        assert "Processed 4 deals" in caplog.text
        assert "Total processed 5 deals" in caplog.text

    @pytest.mark.asyncio
    async def test_unexpected_write_errors_are_counted(
        self, db, database_url, make_deal, write_deals_file, monkeypatch, caplog
    ) -> None:
        async def broken_write(self, batch):
            raise RuntimeError("writer bug")

        monkeypatch.setattr(DealBatchWriter, "write", broken_write)
        path = write_deals_file({str(i): make_deal() for i in range(3)})
        pipeline = ImportPipeline(_settings(database_url, BATCH_SIZE=1), db=db)

        with caplog.at_level(logging.INFO, logger="market_deal_importer.pipeline"):
            stats = await pipeline.ingest(str(path))

        assert stats.task_failures == 3
        assert stats.deals_written == 0
        assert "3 other task failures" in caplog.text


class TestClientResolution:
    """Tests for client resolution during ingest."""

    @pytest.mark.asyncio
    async def test_new_clients_are_resolved(
        self, db, database_url, make_deal, write_deals_file
    ) -> None:
        lotus = AsyncMock()
        lotus.state_account_key = AsyncMock(side_effect=lambda client: f"f1{client[2:]}key")
        deals = {
            "1": make_deal(client="f0100"),
            "2": make_deal(client="f0200"),
            "3": make_deal(client="f0100"),
        }
        pipeline = ImportPipeline(_settings(database_url, resolve=True), db=db, lotus=lotus)

        stats = await pipeline.ingest(str(write_deals_file(deals)))
        await pipeline.close()

        async with db.get_async_session() as session:
            mappings = await ClientMappingRepository(session).get_all()
        assert mappings == {"f0100": "f1100key", "f0200": "f1200key"}
        assert stats.clients_scheduled == 2
        assert stats.clients_resolved == 2
        assert lotus.state_account_key.await_count == 2
        # A borrowed client is left for its owner to close.
        lotus.aclose.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_resolution_disabled(self, db, database_url, make_deal, write_deals_file) -> None:
        lotus = AsyncMock()
        pipeline = ImportPipeline(_settings(database_url, resolve=False), db=db, lotus=lotus)

        await pipeline.ingest(str(write_deals_file({"1": make_deal(client="f0100")})))

        lotus.state_account_key.assert_not_awaited()
        assert pipeline.stats.clients_scheduled == 0

    @pytest.mark.asyncio
    async def test_lookup_backlog_does_not_hold_up_deal_writes(
        self, db, database_url, make_deal, make_row, write_deals_file, monkeypatch
    ) -> None:
        # Twenty clients left unmapped by an earlier run.
        async with db.get_async_session() as session:
            await DealRepository(session).upsert_many(
                [make_row(100 + i, client=f"f09{i:02d}") for i in range(20)]
            )

        lookups_done = 0

        async def slow_lookup(client: str) -> str:
            nonlocal lookups_done
            await asyncio.sleep(0.05)
            lookups_done += 1
            return f"f1{client}"

        lotus = AsyncMock()
        lotus.state_account_key = AsyncMock(side_effect=slow_lookup)

        lookups_done_at_write: list[int] = []
        upsert_many = DealRepository.upsert_many

        async def recording_upsert(self, rows):
            lookups_done_at_write.append(lookups_done)
            return await upsert_many(self, rows)

        monkeypatch.setattr(DealRepository, "upsert_many", recording_upsert)
        deals = {str(i): make_deal(client="f01000") for i in range(6)}
        settings = _settings(database_url, resolve=True, BATCH_SIZE=2, QUEUE_SIZE=2)
        pipeline = ImportPipeline(settings, db=db, lotus=lotus)

        stats = await pipeline.ingest(str(write_deals_file(deals)))

        assert len(lookups_done_at_write) == 3
        # Every deal batch was written long before the lookups caught up.
        assert lookups_done_at_write[-1] < 5
        assert stats.deals_written == 6
        assert stats.clients_scheduled == 21
        assert stats.clients_resolved == 21

    @pytest.mark.asyncio
    async def test_fatal_error_drops_queued_lookups(
        self, db, database_url, make_row, tmp_path
    ) -> None:
        async with db.get_async_session() as session:
            await DealRepository(session).upsert_many(
                [make_row(100 + i, client=f"f09{i:02d}") for i in range(20)]
            )

        async def slow_lookup(client: str) -> str:
            await asyncio.sleep(0.05)
            return f"f1{client}"

        lotus = AsyncMock()
        lotus.state_account_key = AsyncMock(side_effect=slow_lookup)
        pipeline = ImportPipeline(_settings(database_url, resolve=True), db=db, lotus=lotus)

        with pytest.raises(SourceUnavailable):
            await pipeline.ingest(str(tmp_path / "missing.json"))

        # Unsubmitted clients stay unmapped for the next run.
        assert pipeline.stats.clients_scheduled < 20


class TestRun:
    """Tests for the full ingest-then-tag run."""

    @pytest.mark.asyncio
    async def test_run_tags_after_ingest(self, db, database_url, make_deal, write_deals_file) -> None:
        deals = {
            "1": make_deal(piece_size=2048, sector_start_epoch=1000),
            "2": make_deal(piece_size=2048, sector_start_epoch=2000),
            "3": make_deal(piece_size=2048, sector_start_epoch=-1),
        }
        pipeline = ImportPipeline(_settings(database_url), db=db)

        stats = await pipeline.run(str(write_deals_file(deals)), now=epoch_to_datetime(200_000))

        assert stats.deals_written == 3
        assert stats.tag_result is not None
        assert stats.tag_result.overreplicated == 1
        assert stats.tag_result.shared == 0
        assert stats.tag_result.unique == 1

        async with db.get_async_session() as session:
            tags = await DealTagRepository(session).list_all()
        assert [tag.deal_id for tag in tags] == [1, 2]
        assert tags[1].cid_overreplicated
        assert tags[0].cid_unique

    @pytest.mark.asyncio
    async def test_run_stops_before_tagging_on_fatal_error(self, db, database_url, tmp_path) -> None:
        pipeline = ImportPipeline(_settings(database_url), db=db)

        with pytest.raises(SourceUnavailable):
            await pipeline.run(str(tmp_path / "missing.json"))

        assert pipeline.stats.tag_result is None

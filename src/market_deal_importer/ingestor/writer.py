"""Transactional batch writer for deals."""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence

from sqlalchemy.exc import SQLAlchemyError

from market_deal_importer.storage.database import SessionScope
from market_deal_importer.storage.repos import DealRepository

from .models import RawDealEntry
from .transcode import TranscodeError, transcode_batch

logger = logging.getLogger(__name__)


class WriteFailure(Exception):
    """Raised when a batch could not be persisted."""

    def __init__(self, first_key: str, last_key: str, cause: BaseException) -> None:
        super().__init__(f"Failed to write deals {first_key}..{last_key}: {cause}")
        self.first_key = first_key
        self.last_key = last_key
        self.cause = cause


def _dump_batch(batch: Sequence[RawDealEntry]) -> str:
    return json.dumps({entry.key: entry.value for entry in batch}, default=str)


class DealBatchWriter:
    """Writes one batch per session so a batch lands fully or not at all."""

    def __init__(self, session_scope: SessionScope) -> None:
        self._session_scope = session_scope

    async def write(self, batch: Sequence[RawDealEntry]) -> int:
        """Transcode and upsert a batch.

        Returns:
            Number of distinct deals written.

        Raises:
            TranscodeError: If any entry in the batch is malformed.
            WriteFailure: If the database rejected the batch.
        """
        if not batch:
            return 0

        try:
            rows = transcode_batch(batch)
        except TranscodeError as e:
            logger.error("Malformed deal %s (%s) in batch: %s", e.key, e.reason, _dump_batch(batch))
            raise

        first_key, last_key = batch[0].key, batch[-1].key
        try:
            async with self._session_scope() as session:
                written = await DealRepository(session).upsert_many(rows)
        except (SQLAlchemyError, OSError) as e:
            logger.error("Error inserting deals with keys from %s to %s: %s", first_key, last_key, e)
            raise WriteFailure(first_key, last_key, e) from e

        logger.debug("Wrote %d deals (%s..%s)", written, first_key, last_key)
        return written

"""Client identifier to account address resolution.

Deals name their client by ID address (``f0...``). Grouping deals by real
owner needs the account key address behind it, which only a chain node
knows. Newly seen clients are looked up once per run and the answers are
stored in ``client_mappings``.

Lookups share the ingest scheduler but never hold more than
``max_in_flight`` of its slots, and ``feed()`` submits them from its own
task. Deal writes therefore keep flowing while resolution lags behind.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from functools import partial
from typing import TYPE_CHECKING

from sqlalchemy.exc import SQLAlchemyError

from market_deal_importer.ingestor.scheduler import SchedulerClosed
from market_deal_importer.storage.repos import (
    ClientMappingDTO,
    ClientMappingRepository,
    DealRepository,
)

from .lotus import LotusClientError

if TYPE_CHECKING:
    from market_deal_importer.ingestor.scheduler import BoundedScheduler
    from market_deal_importer.storage.database import SessionScope

    from .lotus import LotusClient

logger = logging.getLogger(__name__)


class ResolveFailure(Exception):
    """A single client could not be resolved; it stays pending for the next run."""

    def __init__(self, client: str, cause: BaseException) -> None:
        super().__init__(f"Could not resolve client {client}: {cause}")
        self.client = client
        self.cause = cause


@dataclass
class ResolverStats:
    """Counters for one run of the resolver."""

    scheduled: int = 0
    resolved: int = 0
    failed: int = 0


class ClientMappingResolver:
    """Tracks unseen clients and resolves them through the shared scheduler."""

    def __init__(
        self,
        session_scope: SessionScope,
        lotus: LotusClient,
        scheduler: BoundedScheduler,
        *,
        max_in_flight: int | None = None,
    ) -> None:
        """Initialize the resolver.

        Args:
            session_scope: Opens one session per lookup.
            lotus: RPC client used for lookups.
            scheduler: Scheduler shared with the deal writes.
            max_in_flight: Scheduler slots lookups may hold at once.
                Defaults to half the scheduler's concurrency (at least 1).
        """
        if max_in_flight is None:
            max_in_flight = max(1, scheduler.concurrency // 2)
        if max_in_flight < 1:
            raise ValueError(f"max_in_flight must be at least 1, got {max_in_flight}")
        self._session_scope = session_scope
        self._lotus = lotus
        self._scheduler = scheduler
        self._slots = asyncio.Semaphore(max_in_flight)
        self.max_in_flight = max_in_flight

        self._known: set[str] = set()
        self._attempted: set[str] = set()
        self._pending: set[str] = set()
        self._wakeup = asyncio.Event()
        self._stopping = False
        self.stats = ResolverStats()

    @property
    def pending(self) -> frozenset[str]:
        return frozenset(self._pending)

    def is_known(self, client: str) -> bool:
        return client in self._known

    async def prime(self) -> None:
        """Load stored mappings and queue clients left unresolved by earlier runs."""
        async with self._session_scope() as session:
            mappings = await ClientMappingRepository(session).get_all()
            unmapped = await DealRepository(session).list_unmapped_clients()
        self._known.update(mappings)
        queued = self.observe(unmapped)
        logger.info("Loaded %d client mappings, %d stored clients unmapped", len(mappings), queued)

    def observe(self, clients: Iterable[str | None]) -> int:
        """Queue clients that are neither mapped nor already tried this run.

        Returns:
            Number of clients newly queued.
        """
        added = 0
        for client in clients:
            if not client or client in self._known or client in self._attempted or client in self._pending:
                continue
            self._pending.add(client)
            added += 1
        if added:
            self._wakeup.set()
        return added

    async def schedule_pending(self) -> int:
        """Submit one lookup per queued client, in sorted order.

        Waits for a lookup slot before each submission, so this can take as
        long as the lookups themselves; run it off the producer's path.

        Returns:
            Number of lookups submitted.

        Raises:
            SchedulerClosed: If the scheduler stopped accepting work.
        """
        submitted = 0
        for client in sorted(self._pending):
            await self._slots.acquire()
            try:
                await self._scheduler.submit(partial(self._resolve_one, client), label=f"resolve-{client}")
            except BaseException:
                self._slots.release()
                raise
            self._attempted.add(client)
            self._pending.discard(client)
            self.stats.scheduled += 1
            submitted += 1
        return submitted

    async def feed(self) -> None:
        """Submit lookups as clients are observed until stop() empties the queue.

        Returns early, leaving queued clients for the next run, once the
        scheduler is closed.
        """
        try:
            while True:
                if self._pending:
                    await self.schedule_pending()
                    continue
                if self._stopping:
                    return
                self._wakeup.clear()
                await self._wakeup.wait()
        except SchedulerClosed:
            logger.info("Scheduler closed, %d clients left for the next run", len(self._pending))

    def stop(self) -> None:
        """Let feed() return once the queued clients have been submitted."""
        self._stopping = True
        self._wakeup.set()

    async def _resolve_one(self, client: str) -> None:
        try:
            address = await self._lotus.state_account_key(client)
            async with self._session_scope() as session:
                await ClientMappingRepository(session).insert_if_absent(
                    ClientMappingDTO(client=client, client_address=address)
                )
        except (LotusClientError, SQLAlchemyError, OSError) as e:
            self.stats.failed += 1
            logger.warning("%s", ResolveFailure(client, e))
            return
        finally:
            self._slots.release()

        self._known.add(client)
        self.stats.resolved += 1
        logger.info("Mapped client %s to %s", client, address)

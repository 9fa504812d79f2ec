"""Group a stream of entries into fixed-size batches."""

from __future__ import annotations

from collections.abc import AsyncIterable, AsyncIterator
from typing import TypeVar

T = TypeVar("T")

DEFAULT_BATCH_SIZE = 100


async def batched(entries: AsyncIterable[T], size: int = DEFAULT_BATCH_SIZE) -> AsyncIterator[list[T]]:
    """Yield lists of ``size`` items in arrival order.

    The last list may be shorter; an empty list is never yielded.

    Raises:
        ValueError: If size is less than 1.
    """
    if size < 1:
        raise ValueError(f"Batch size must be at least 1, got {size}")

    batch: list[T] = []
    async for entry in entries:
        batch.append(entry)
        if len(batch) == size:
            yield batch
            batch = []
    if batch:
        yield batch

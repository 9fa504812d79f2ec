"""Incremental reader for the StateMarketDeals JSON object.

The source is one very large JSON object mapping deal ids to deals. It is
parsed with ijson as bytes arrive, so only the entry currently being built
is held in memory.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import AsyncExitStack
from pathlib import Path
from typing import IO, Any

import httpx
import ijson

from .models import RawDealEntry

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 64 * 1024
DEFAULT_HTTP_TIMEOUT_SECONDS = 60.0


class DealSourceError(Exception):
    """Base exception for unrecoverable source errors."""

    pass


class SourceUnavailable(DealSourceError):
    """Raised when the source cannot be opened or the transport fails mid-stream."""

    pass


class MalformedStream(DealSourceError):
    """Raised when the payload is not a well-formed JSON object."""

    pass


def is_http_locator(locator: str) -> bool:
    return locator.startswith(("http://", "https://"))


class _FileReader:
    """Async ``read`` over a blocking file handle."""

    def __init__(self, handle: IO[bytes], locator: str) -> None:
        self._handle = handle
        self._locator = locator

    async def read(self, size: int = -1) -> bytes:
        try:
            return await asyncio.to_thread(self._handle.read, size)
        except OSError as e:
            raise SourceUnavailable(f"Failed reading {self._locator}: {e}") from e


class _ResponseReader:
    """Async ``read`` over a streaming HTTP response body."""

    def __init__(self, chunks: AsyncIterator[bytes], locator: str) -> None:
        self._chunks = chunks
        self._locator = locator

    async def read(self, size: int = -1) -> bytes:
        # Chunk sizes are decided by the transport; b"" means end of body.
        try:
            while True:
                chunk = await anext(self._chunks)
                if chunk:
                    return chunk
        except StopAsyncIteration:
            return b""
        except httpx.HTTPError as e:
            raise SourceUnavailable(f"Transport error while streaming {self._locator}: {e}") from e


_UTF8_BOM = b"\xef\xbb\xbf"
_JSON_WHITESPACE = b" \t\r\n"


class _ObjectReader:
    """Replays the bytes read while checking that the payload opens a JSON object.

    ijson's ``kvitems`` yields nothing for a top-level array or scalar, so the
    first significant byte is checked before parsing starts.
    """

    def __init__(self, reader: _FileReader | _ResponseReader, locator: str) -> None:
        self._reader = reader
        self._locator = locator
        self._head = b""

    async def check(self, size: int) -> None:
        """Read until the first significant byte and require it to be ``{``.

        Raises:
            MalformedStream: If the payload is empty or not a JSON object.
        """
        while True:
            chunk = await self._reader.read(size)
            if not chunk:
                raise MalformedStream(f"{self._locator} is empty")
            self._head += chunk
            significant = self._head.removeprefix(_UTF8_BOM).lstrip(_JSON_WHITESPACE)
            if significant:
                break
        if not significant.startswith(b"{"):
            raise MalformedStream(
                f"Expected a JSON object at the top level of {self._locator}, "
                f"found {significant[:1].decode('latin-1')!r}"
            )

    async def read(self, size: int = -1) -> bytes:
        if self._head:
            head, self._head = self._head, b""
            return head
        return await self._reader.read(size)


class DealStream:
    """One-shot async iterator of ``RawDealEntry`` items.

    Example:
        ```python
        async with DealStream("StateMarketDeals.json") as stream:
            async for entry in stream:
                print(entry.key)
        ```
    """

    def __init__(
        self,
        locator: str,
        *,
        http_client: httpx.AsyncClient | None = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        timeout: float = DEFAULT_HTTP_TIMEOUT_SECONDS,
    ) -> None:
        """Initialize the stream.

        Args:
            locator: HTTP(S) URL or local file path.
            http_client: Optional client to stream with; one is created
                (and closed) by the stream otherwise.
            chunk_size: Bytes requested per read.
            timeout: Timeout for a stream-owned HTTP client.
        """
        if chunk_size < 1:
            raise ValueError("chunk_size must be positive")
        self.locator = locator
        self._http_client = http_client
        self._chunk_size = chunk_size
        self._timeout = timeout
        self._stack = AsyncExitStack()
        self._started = False
        self.entries_read = 0

    async def __aenter__(self) -> DealStream:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    def __aiter__(self) -> AsyncIterator[RawDealEntry]:
        if self._started:
            raise RuntimeError(f"DealStream for {self.locator} can only be iterated once")
        self._started = True
        return self._iterate()

    async def aclose(self) -> None:
        """Stop streaming and release the file handle or HTTP connection."""
        await self._stack.aclose()

    async def _iterate(self) -> AsyncIterator[RawDealEntry]:
        try:
            reader = _ObjectReader(await self._open(), self.locator)
            await reader.check(self._chunk_size)
            async for key, value in ijson.kvitems_async(reader, "", buf_size=self._chunk_size):
                self.entries_read += 1
                yield RawDealEntry(key=key, value=value)
        except ijson.JSONError as e:
            raise MalformedStream(
                f"Invalid JSON in {self.locator} after {self.entries_read} entries: {e}"
            ) from e
        finally:
            await self.aclose()
        logger.debug("Finished reading %d entries from %s", self.entries_read, self.locator)

    async def _open(self) -> _FileReader | _ResponseReader:
        if is_http_locator(self.locator):
            return await self._open_http()
        return await self._open_file()

    async def _open_file(self) -> _FileReader:
        path = Path(self.locator)
        try:
            handle = await asyncio.to_thread(path.open, "rb")
        except OSError as e:
            raise SourceUnavailable(f"Cannot open {self.locator}: {e}") from e
        self._stack.callback(handle.close)
        logger.info("Reading deals from file %s", path)
        return _FileReader(handle, self.locator)

    async def _open_http(self) -> _ResponseReader:
        client = self._http_client
        if client is None:
            client = await self._stack.enter_async_context(
                httpx.AsyncClient(timeout=self._timeout, follow_redirects=True)
            )
        try:
            response = await self._stack.enter_async_context(client.stream("GET", self.locator))
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise SourceUnavailable(f"Cannot fetch {self.locator}: {e}") from e
        logger.info(
            "Streaming deals from %s (content-length=%s)",
            self.locator,
            response.headers.get("content-length", "unknown"),
        )
        return _ResponseReader(response.aiter_bytes(self._chunk_size), self.locator)

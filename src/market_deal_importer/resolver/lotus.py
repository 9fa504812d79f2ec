"""Filecoin Lotus JSON-RPC client.

Only the calls needed to resolve client identifiers are wrapped. Requests
are rate limited client-side and never retried; a failed lookup is simply
attempted again on the next run.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from typing import TYPE_CHECKING, Any

import httpx

if TYPE_CHECKING:
    from market_deal_importer.config import LotusSettings

logger = logging.getLogger(__name__)

DEFAULT_RPC_URL = "https://api.node.glif.io/rpc/v0"
DEFAULT_TIMEOUT_SECONDS = 30.0
MAX_REQUESTS_PER_SECOND = 10.0

STATE_ACCOUNT_KEY = "Filecoin.StateAccountKey"


class LotusClientError(Exception):
    """Base exception for Lotus client errors."""

    pass


class RPCError(LotusClientError):
    """Raised when an RPC call fails or returns an error object."""

    def __init__(self, method: str, message: str, *, code: int | None = None) -> None:
        super().__init__(f"{method} failed: {message}" + (f" (code {code})" if code is not None else ""))
        self.method = method
        self.message = message
        self.code = code


class RateLimiter:
    """Spaces RPC requests at least ``1 / max_requests_per_second`` apart.

    There is no burst allowance; the first request goes out immediately.
    """

    def __init__(self, max_requests_per_second: float = MAX_REQUESTS_PER_SECOND) -> None:
        """Initialize the rate limiter.

        Args:
            max_requests_per_second: Maximum requests allowed per second.
        """
        self._min_interval = 1.0 / max_requests_per_second
        self._last_request_time: float = 0.0
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        """Wait until a request slot is available."""
        async with self._lock:
            now = time.monotonic()
            elapsed = now - self._last_request_time
            if elapsed < self._min_interval:
                await asyncio.sleep(self._min_interval - elapsed)
            self._last_request_time = time.monotonic()


class LotusClient:
    """Async JSON-RPC 2.0 client for a Lotus-compatible node.

    Example:
        ```python
        async with LotusClient(auth_token="...") as lotus:
            address = await lotus.state_account_key("f01234")
        ```
    """

    def __init__(
        self,
        rpc_url: str = DEFAULT_RPC_URL,
        *,
        auth_token: str | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        max_requests_per_second: float = MAX_REQUESTS_PER_SECOND,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            rpc_url: JSON-RPC endpoint URL.
            auth_token: Bearer token sent with every request.
            timeout: Per-request timeout in seconds.
            max_requests_per_second: Client-side rate limit.
            http_client: Optional pre-configured client (closed by the caller).
        """
        self._rpc_url = rpc_url
        self._headers = {"Content-Type": "application/json"}
        if auth_token:
            self._headers["Authorization"] = f"Bearer {auth_token}"
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self._rate_limiter = RateLimiter(max_requests_per_second)
        self._request_ids = itertools.count(1)

    @classmethod
    def from_settings(cls, settings: LotusSettings) -> LotusClient:
        token = settings.auth_token.get_secret_value() if settings.auth_token else None
        return cls(
            settings.rpc_url,
            auth_token=token,
            timeout=settings.timeout_seconds,
            max_requests_per_second=settings.max_requests_per_second,
        )

    async def __aenter__(self) -> LotusClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def call(self, method: str, params: list[Any]) -> Any:
        """Invoke an RPC method and return its ``result``.

        Raises:
            RPCError: On transport failure, an error object, or a response
                without a result.
        """
        await self._rate_limiter.acquire()
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._request_ids),
            "method": method,
            "params": params,
        }
        try:
            response = await self._client.post(self._rpc_url, json=payload, headers=self._headers)
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPError as e:
            raise RPCError(method, f"transport error: {e}") from e
        except ValueError as e:
            raise RPCError(method, f"invalid JSON response: {e}") from e

        if not isinstance(body, dict):
            raise RPCError(method, f"unexpected response {body!r}")
        error = body.get("error")
        if error is not None:
            if isinstance(error, dict):
                raise RPCError(method, str(error.get("message", error)), code=error.get("code"))
            raise RPCError(method, str(error))
        if "result" not in body:
            raise RPCError(method, "response has no result")
        return body["result"]

    async def state_account_key(self, address: str) -> str:
        """Resolve an ID address (``f0...``) to its account key address."""
        result = await self.call(STATE_ACCOUNT_KEY, [address, None])
        if not isinstance(result, str) or not result:
            raise RPCError(STATE_ACCOUNT_KEY, f"unexpected result {result!r} for {address}")
        return result

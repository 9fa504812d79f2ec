"""Client address resolution over Lotus JSON-RPC."""

from market_deal_importer.resolver.lotus import LotusClient, LotusClientError, RateLimiter, RPCError
from market_deal_importer.resolver.resolver import (
    ClientMappingResolver,
    ResolveFailure,
    ResolverStats,
)

__all__ = [
    "ClientMappingResolver",
    "LotusClient",
    "LotusClientError",
    "RPCError",
    "RateLimiter",
    "ResolveFailure",
    "ResolverStats",
]

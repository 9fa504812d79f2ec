"""Storage layer - Database schemas and repositories."""

from market_deal_importer.storage.database import (
    DatabaseManager,
    SessionScope,
    create_async_db_engine,
    create_async_session_factory,
    init_async_db,
)
from market_deal_importer.storage.models import (
    Base,
    ClientMappingModel,
    DealModel,
    DealTagModel,
    OwnerAliasModel,
)
from market_deal_importer.storage.repos import (
    ClientMappingDTO,
    ClientMappingRepository,
    DealDTO,
    DealRepository,
    DealTagDTO,
    DealTagRepository,
    OwnerAliasRepository,
    dialect_insert,
)

__all__ = [
    "Base",
    "ClientMappingDTO",
    "ClientMappingModel",
    "ClientMappingRepository",
    "DatabaseManager",
    "DealDTO",
    "DealModel",
    "DealRepository",
    "DealTagDTO",
    "DealTagModel",
    "DealTagRepository",
    "OwnerAliasModel",
    "OwnerAliasRepository",
    "SessionScope",
    "create_async_db_engine",
    "create_async_session_factory",
    "dialect_insert",
    "init_async_db",
]

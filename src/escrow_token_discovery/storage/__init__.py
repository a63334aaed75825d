"""Storage layer - Database schemas and repositories."""

from escrow_token_discovery.storage.database import (
    DatabaseManager,
    create_async_db_engine,
    create_async_session_factory,
    init_async_db,
)
from escrow_token_discovery.storage.models import (
    Base,
    DiscoveredTokenModel,
    EscrowBalanceModel,
    IndexerConfigurationModel,
)
from escrow_token_discovery.storage.repos import (
    DiscoveredTokenDTO,
    DiscoveredTokenRepository,
    EscrowBalanceDTO,
    EscrowBalanceRepository,
    IndexerConfiguration,
    IndexerConfigurationRepository,
)

__all__ = [
    "Base",
    "DatabaseManager",
    "DiscoveredTokenDTO",
    "DiscoveredTokenModel",
    "DiscoveredTokenRepository",
    "EscrowBalanceDTO",
    "EscrowBalanceModel",
    "EscrowBalanceRepository",
    "IndexerConfiguration",
    "IndexerConfigurationModel",
    "IndexerConfigurationRepository",
    "create_async_db_engine",
    "create_async_session_factory",
    "init_async_db",
]

"""Persistence provider factory."""

import logging

from schemas.database import DatabaseConfig, ProviderName

from .base import DatabaseProvider
from .dynamodb_provider import DynamoDBProvider
from .errors import DatabaseError
from .sqlite_provider import SQLiteProvider

logger = logging.getLogger(__name__)


def create_database_provider(config: DatabaseConfig) -> DatabaseProvider:
    """
    Create an unconnected provider for the configured backend.

    The caller owns the returned handle and must `connect()` it before
    use and `disconnect()` it when done.

    Args:
        config: Validated database configuration

    Returns:
        Provider instance

    Raises:
        DatabaseError: If the backend is recognized but not available
    """
    if config.provider == ProviderName.EMBEDDED_FILE:
        return SQLiteProvider(config.connection, timeout=config.timeout)
    elif config.provider == ProviderName.MANAGED_KV:
        return DynamoDBProvider(config.connection, timeout=config.timeout)
    elif config.provider == ProviderName.RELATIONAL:
        raise DatabaseError("Relational provider is not available yet", config.provider.value)
    else:
        raise DatabaseError(f"Unsupported database provider: {config.provider}", str(config.provider))


async def connect_database(config: DatabaseConfig) -> DatabaseProvider:
    """Create a provider and connect it."""
    provider = create_database_provider(config)
    await provider.connect()
    logger.info(f"Database provider ready: {config.provider.value}")
    return provider

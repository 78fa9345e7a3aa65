"""Tests for the provider factory."""

import asyncio

import pytest

from database.dynamodb_provider import DynamoDBProvider
from database.errors import DatabaseError
from database.factory import connect_database, create_database_provider
from database.sqlite_provider import SQLiteProvider
from schemas.database import DatabaseConfig


class TestCreateDatabaseProvider:
    """Test backend selection."""

    def test_embedded_file(self):
        """Test embedded-file selects SQLite with the configured timeout."""
        provider = create_database_provider(DatabaseConfig(
            provider="embedded-file",
            connection={"type": "sqlite", "filename": ":memory:"},
            timeout=2.5,
        ))

        assert isinstance(provider, SQLiteProvider)
        assert provider.timeout == 2.5
        assert not provider.is_connected()

    def test_managed_kv(self):
        """Test managed-kv selects DynamoDB without connecting."""
        provider = create_database_provider(DatabaseConfig(
            provider="managed-kv",
            connection={"type": "dynamodb", "table_name": "assistant-main", "region": "ap-southeast-2"},
        ))

        assert isinstance(provider, DynamoDBProvider)
        assert provider.config.region == "ap-southeast-2"
        assert not provider.is_connected()

    def test_relational_not_available(self):
        """Test the relational provider is recognized but rejected."""
        config = DatabaseConfig(
            provider="relational",
            connection={
                "type": "postgresql",
                "host": "localhost",
                "database": "assistant",
                "username": "app",
                "password": "secret",
            },
        )

        with pytest.raises(DatabaseError, match="not available"):
            create_database_provider(config)

    def test_connect_database(self):
        """Test the connect helper returns a ready provider."""
        async def scenario():
            provider = await connect_database(DatabaseConfig(
                provider="embedded-file",
                connection={"type": "sqlite", "filename": ":memory:"},
            ))
            try:
                return provider.is_connected()
            finally:
                await provider.disconnect()

        assert asyncio.run(scenario())

"""Tests for the DynamoDB provider."""

import asyncio
import socket
import time
from decimal import Decimal

import boto3
import pytest
from boto3.dynamodb.types import Binary

from database.dynamodb_provider import (
    DynamoDBProvider,
    _memory_sort_key,
    _set_expression,
    from_dynamo,
    to_dynamo,
)
from database.errors import DatabaseConnectionError, DatabaseError, OperationTimeoutError
from schemas.credentials import OAuthTokens
from schemas.database import DynamoDBConnectionConfig
from schemas.memory import Milestone, NewExtendedMemory
from schemas.session import NewSession, SessionUpdate
from tests.conftest import TEST_TABLE, dynamodb_provider


def raw_items():
    table = boto3.resource("dynamodb", region_name="us-east-1").Table(TEST_TABLE)
    return {item["SK"]: item for item in table.scan()["Items"]}


class TestValueConversion:
    """Test Python <-> DynamoDB value conversion."""

    def test_floats_become_decimals(self):
        """Test nested floats convert for boto3 and come back unchanged."""
        value = {"score": 0.5, "count": 3, "flags": [True, None, 1.25], "name": "x"}

        converted = to_dynamo(value)

        assert converted["score"] == Decimal("0.5")
        assert converted["flags"] == [True, None, Decimal("1.25")]
        assert from_dynamo(converted) == value

    def test_integral_decimals_become_ints(self):
        """Test whole-number decimals read back as int."""
        assert from_dynamo(Decimal("1700000000000")) == 1700000000000
        assert isinstance(from_dynamo(Decimal("3")), int)

    def test_binary_becomes_bytes(self):
        """Test binary attributes read back as bytes."""
        assert from_dynamo(Binary(b"\x00\x01")) == b"\x00\x01"

    def test_memory_sort_key_orders_numerically(self):
        """Test zero padding keeps string order equal to time order."""
        assert _memory_sort_key(999, "b") < _memory_sort_key(1000, "a")

    def test_set_expression_with_defaults(self):
        """Test defaults are guarded by if_not_exists."""
        expression, names, values = _set_expression({"updatedAt": 5}, {"createdAt": 5})

        assert expression == "SET #v0 = :v0, #d0 = if_not_exists(#d0, :d0)"
        assert names == {"#v0": "updatedAt", "#d0": "createdAt"}
        assert values == {":v0": 5, ":d0": 5}


class TestDynamoDBProvider:
    """Test DynamoDB-specific behavior against moto."""

    def test_missing_table_without_create(self, aws):
        """Test connecting to a missing table fails unless creation is allowed."""
        provider = DynamoDBProvider(DynamoDBConnectionConfig(table_name="absent"))

        async def scenario():
            with pytest.raises(DatabaseConnectionError):
                await provider.connect()

        asyncio.run(scenario())
        assert not provider.is_connected()

    def test_single_table_key_layout(self, aws):
        """Test entities share the user's partition under distinct sort keys."""
        async def scenario():
            async with dynamodb_provider() as provider:
                await provider.create_session(NewSession(session_id="s1", user_id="u1", expires_at=1_700_000_000_999))
                memory = await provider.create_extended_memory(NewExtendedMemory(
                    user_id="u1", conversation_summary="x", embedding=[0.5, 0.25], ttl=1_800_000_000_000
                ))
                await provider.append_milestone("u1", Milestone(type="first_invoice", description="x", timestamp=1))
                await provider.save_oauth_tokens(OAuthTokens(
                    user_id="u1", access_token="a", refresh_token="r", expires_at=1, created_at=1, updated_at=1
                ))
                return memory

        memory = asyncio.run(scenario())
        items = raw_items()

        session = items["SESSION#s1"]
        assert session["PK"] == "USER#u1"
        assert session["EntityType"] == "Session"
        assert session["TTL"] == 1_700_000_000

        extended = items[_memory_sort_key(memory.created_at, memory.memory_id)]
        assert extended["memoryId"] == memory.memory_id
        assert extended["TTL"] == 1_800_000_000
        assert bytes(extended["embedding"].value) == b"\x00\x00\x00?\x00\x00\x80>"
        assert "emotionalContext" not in extended

        assert items["MEMORY#CORE"]["keyMilestones"][0]["type"] == "first_invoice"
        assert items["OAUTH#xero"]["accessToken"] == "a"

    def test_session_ttl_follows_expiry_updates(self, aws):
        """Test changing expiresAt moves the native TTL attribute too."""
        async def scenario():
            async with dynamodb_provider() as provider:
                await provider.create_session(NewSession(session_id="s1", user_id="u1", expires_at=1_000_000))
                await provider.update_session("u1", "s1", SessionUpdate(expires_at=5_000_000))

        asyncio.run(scenario())
        assert raw_items()["SESSION#s1"]["TTL"] == 5_000

    def test_client_timeouts_follow_operation_deadline(self, aws):
        """Test botocore socket timeouts are bounded by the provider timeout."""
        async def scenario():
            async with dynamodb_provider(timeout=3.0) as provider:
                return provider._resource.meta.client.meta.config

        config = asyncio.run(scenario())
        assert config.connect_timeout == 3.0
        assert config.read_timeout == 3.0

    def test_unresponsive_endpoint_fails_within_deadline(self):
        """Test connect gives up when the endpoint accepts but never answers."""
        # Listening socket that never accepts or replies
        server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        server.bind(("127.0.0.1", 0))
        server.listen(1)
        endpoint = f"http://127.0.0.1:{server.getsockname()[1]}"
        provider = DynamoDBProvider(
            DynamoDBConnectionConfig(table_name="assistant-test", endpoint=endpoint),
            timeout=0.5,
        )

        async def scenario():
            start = time.monotonic()
            with pytest.raises(DatabaseError) as exc_info:
                await provider.connect()
            return time.monotonic() - start, exc_info.value

        try:
            elapsed, error = asyncio.run(scenario())
        finally:
            server.close()

        assert elapsed < 5
        assert isinstance(error, (OperationTimeoutError, DatabaseConnectionError))
        assert not provider.is_connected()

"""Shared fixtures: providers for both storage backends."""

import os

import pytest
from moto import mock_aws

from database.dynamodb_provider import DynamoDBProvider
from database.sqlite_provider import MEMORY_DATABASE, SQLiteProvider
from schemas.database import DynamoDBConnectionConfig, SQLiteConnectionConfig

# Never reach a real AWS account from the test suite
os.environ["AWS_ACCESS_KEY_ID"] = "testing"
os.environ["AWS_SECRET_ACCESS_KEY"] = "testing"
os.environ["AWS_SESSION_TOKEN"] = "testing"
os.environ["AWS_DEFAULT_REGION"] = "us-east-1"

TEST_TABLE = "assistant-test"


def sqlite_provider(**kwargs) -> SQLiteProvider:
    return SQLiteProvider(SQLiteConnectionConfig(filename=MEMORY_DATABASE), **kwargs)


def dynamodb_provider(**kwargs) -> DynamoDBProvider:
    return DynamoDBProvider(
        DynamoDBConnectionConfig(table_name=TEST_TABLE, region="us-east-1", create_table=True),
        **kwargs
    )


@pytest.fixture
def aws():
    with mock_aws():
        yield


@pytest.fixture(params=["sqlite", "dynamodb"])
def make_provider(request):
    """Factory for an unconnected provider of each backend.

    SQLite providers each get a private in-memory database; DynamoDB
    providers share one mocked table for the duration of the test.
    """
    if request.param == "sqlite":
        yield sqlite_provider
    else:
        with mock_aws():
            yield dynamodb_provider

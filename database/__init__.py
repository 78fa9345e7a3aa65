"""Persistence providers for sessions, memory and OAuth tokens."""

from .base import DatabaseProvider
from .dynamodb_provider import DynamoDBProvider
from .errors import (
    DatabaseConnectionError,
    DatabaseError,
    InvalidRequestError,
    NotConnectedError,
    OperationTimeoutError,
    RecordNotFoundError,
)
from .factory import connect_database, create_database_provider
from .sqlite_provider import SQLiteProvider

__all__ = [
    "DatabaseProvider",
    "DynamoDBProvider",
    "SQLiteProvider",
    "DatabaseError",
    "DatabaseConnectionError",
    "InvalidRequestError",
    "NotConnectedError",
    "OperationTimeoutError",
    "RecordNotFoundError",
    "connect_database",
    "create_database_provider",
]

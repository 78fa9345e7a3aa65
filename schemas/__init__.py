"""Pydantic schemas for sessions, memory, credentials and database config."""

from .base import now_ms
from .session import Message, MessageRole, NewSession, Session, SessionFilter, SessionUpdate, SortOrder
from .memory import (
    CoreMemory,
    CoreMemoryUpdate,
    ExtendedMemory,
    MemoryFilter,
    Milestone,
    NewExtendedMemory,
    Preferences,
    RelationshipStage,
)
from .credentials import OAuthTokens, OAuthTokensUpdate
from .database import (
    DatabaseConfig,
    DynamoDBConnectionConfig,
    ProviderName,
    RelationalConnectionConfig,
    SQLiteConnectionConfig,
)

__all__ = [
    "now_ms",
    "Message",
    "MessageRole",
    "NewSession",
    "Session",
    "SessionFilter",
    "SessionUpdate",
    "SortOrder",
    "CoreMemory",
    "CoreMemoryUpdate",
    "ExtendedMemory",
    "MemoryFilter",
    "Milestone",
    "NewExtendedMemory",
    "Preferences",
    "RelationshipStage",
    "OAuthTokens",
    "OAuthTokensUpdate",
    "DatabaseConfig",
    "DynamoDBConnectionConfig",
    "ProviderName",
    "RelationalConnectionConfig",
    "SQLiteConnectionConfig",
]

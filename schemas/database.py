"""Database provider configuration schemas."""

from enum import Enum
from typing import Literal, Optional, Union

from pydantic import BaseModel, Field, model_validator


class ProviderName(str, Enum):
    """Supported persistence backends."""
    EMBEDDED_FILE = "embedded-file"
    MANAGED_KV = "managed-kv"
    RELATIONAL = "relational"


class SQLiteConnectionConfig(BaseModel):
    """Single-file SQLite database."""
    type: Literal["sqlite"] = "sqlite"
    filename: str = Field(min_length=1)  # ":memory:" for a private in-process database
    readonly: bool = False


class DynamoDBConnectionConfig(BaseModel):
    """DynamoDB single-table deployment."""
    type: Literal["dynamodb"] = "dynamodb"
    table_name: str = Field(min_length=1)
    region: str = "us-east-1"
    endpoint: Optional[str] = None  # local DynamoDB
    create_table: bool = False


class RelationalConnectionConfig(BaseModel):
    """PostgreSQL connection parameters."""
    type: Literal["postgresql"] = "postgresql"
    host: str
    port: int = 5432
    database: str
    username: str
    password: str
    ssl: bool = False


ConnectionConfig = Union[SQLiteConnectionConfig, DynamoDBConnectionConfig, RelationalConnectionConfig]

_CONNECTION_TYPES = {
    ProviderName.EMBEDDED_FILE: "sqlite",
    ProviderName.MANAGED_KV: "dynamodb",
    ProviderName.RELATIONAL: "postgresql",
}


class DatabaseConfig(BaseModel):
    """Selects and parameterizes the persistence provider."""
    provider: ProviderName
    connection: ConnectionConfig = Field(discriminator="type")
    timeout: float = Field(10.0, gt=0)  # seconds per operation

    @model_validator(mode="after")
    def _check_connection_type(self) -> "DatabaseConfig":
        expected = _CONNECTION_TYPES[self.provider]
        if self.connection.type != expected:
            raise ValueError(
                f"provider '{self.provider.value}' requires a '{expected}' connection, "
                f"got '{self.connection.type}'"
            )
        return self

"""DynamoDB persistence provider for hosted multi-tenant deployments.

Single-table design:

    Sessions:         PK USER#<userId>  SK SESSION#<sessionId>
    Core memory:      PK USER#<userId>  SK MEMORY#CORE
    Extended memory:  PK USER#<userId>  SK MEMORY#CONVERSATION#<createdAt:015d>#<memoryId>
    OAuth tokens:     PK USER#<userId>  SK OAUTH#<provider>

Item attributes use the camelCase wire names. `TTL` (seconds) mirrors
expiresAt/ttl for DynamoDB's native expiry; the millisecond values stay
authoritative.
"""

import asyncio
import functools
import logging
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, Type

import boto3
from boto3.dynamodb.conditions import Attr, Key
from boto3.dynamodb.types import Binary
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError
from pydantic import BaseModel
from pydantic_core import to_jsonable_python

from schemas.credentials import OAuthTokens
from schemas.database import DynamoDBConnectionConfig, ProviderName
from schemas.memory import CoreMemory, ExtendedMemory, MemoryFilter, Milestone
from schemas.session import Session, SessionFilter, SortOrder

from .base import DEFAULT_TIMEOUT, DatabaseProvider, new_core_memory
from .errors import DatabaseConnectionError, DatabaseError, OperationTimeoutError, RecordNotFoundError
from .similarity import decode_embedding, encode_embedding

logger = logging.getLogger(__name__)

SESSION_PREFIX = "SESSION#"
CORE_MEMORY_KEY = "MEMORY#CORE"
EXTENDED_MEMORY_PREFIX = "MEMORY#CONVERSATION#"
OAUTH_PREFIX = "OAUTH#"

CREATE_TABLE_TIMEOUT = 300.0  # seconds; creation polls until the table is active

# Table-level attributes that are not part of an entity
_KEY_ATTRIBUTES = {"PK", "SK", "EntityType", "TTL"}


def _user_key(user_id: str) -> str:
    return f"USER#{user_id}"


def _memory_sort_key(created_at: int, memory_id: str) -> str:
    # Zero padding keeps lexicographic order equal to numeric order
    return f"{EXTENDED_MEMORY_PREFIX}{created_at:015d}#{memory_id}"


def _ttl_seconds(millis: int) -> int:
    return millis // 1000


def to_dynamo(value: Any) -> Any:
    """Convert Python values to types boto3 can serialize (floats become Decimal)."""
    if isinstance(value, bool) or value is None:
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, dict):
        return {k: to_dynamo(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_dynamo(v) for v in value]
    return value


def from_dynamo(value: Any) -> Any:
    """Convert boto3 values back to plain Python (Decimal to int/float, Binary to bytes)."""
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, Binary):
        return bytes(value.value)
    if isinstance(value, dict):
        return {k: from_dynamo(v) for k, v in value.items()}
    if isinstance(value, list):
        return [from_dynamo(v) for v in value]
    return value


def wire_changes(model: Type[BaseModel], changes: Dict[str, Any]) -> Dict[str, Any]:
    """Map changed attributes to their camelCase wire names and JSON-ready values."""
    return {
        model.model_fields[name].alias or name: to_jsonable_python(value, by_alias=True)
        for name, value in changes.items()
    }


def _is_condition_failure(error: ClientError) -> bool:
    return error.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException"


def _set_expression(values: Dict[str, Any], defaults: Optional[Dict[str, Any]] = None) -> Tuple[str, dict, dict]:
    """
    Build an UpdateExpression.

    Args:
        values: Attributes to overwrite
        defaults: Attributes written only when absent (if_not_exists)

    Returns:
        (expression, ExpressionAttributeNames, ExpressionAttributeValues)
    """
    clauses = []
    names = {}
    expression_values = {}

    for i, (attribute, value) in enumerate(values.items()):
        names[f"#v{i}"] = attribute
        expression_values[f":v{i}"] = to_dynamo(value)
        clauses.append(f"#v{i} = :v{i}")

    for i, (attribute, value) in enumerate((defaults or {}).items()):
        names[f"#d{i}"] = attribute
        expression_values[f":d{i}"] = to_dynamo(value)
        clauses.append(f"#d{i} = if_not_exists(#d{i}, :d{i})")

    return "SET " + ", ".join(clauses), names, expression_values


class DynamoDBProvider(DatabaseProvider):
    """
    Single-table DynamoDB provider.

    Capabilities the table lacks natively are emulated client-side:
    sessions are sorted by createdAt after the query, and similarity
    search scores embeddings in process.
    """

    name = ProviderName.MANAGED_KV
    native_errors = (ClientError, BotoCoreError)

    def __init__(self, config: DynamoDBConnectionConfig, timeout: float = DEFAULT_TIMEOUT):
        """
        Initialize DynamoDB provider.

        Args:
            config: Table name, region and optional local endpoint
            timeout: Deadline in seconds for each operation
        """
        super().__init__(timeout=timeout)
        self.config = config
        self._resource = None
        self._table = None
        self._executor: Optional[ThreadPoolExecutor] = None

    # ------------------------------------------------------------------
    # Connection management
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        if self.is_connected():
            return

        # Table creation waits for the table to become active
        deadline = CREATE_TABLE_TIMEOUT if self.config.create_table else self.timeout
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="dynamodb-provider")
        loop = asyncio.get_running_loop()
        try:
            self._resource, self._table = await asyncio.wait_for(
                loop.run_in_executor(executor, self._open), timeout=deadline
            )
        except asyncio.TimeoutError as e:
            executor.shutdown(wait=False)
            raise OperationTimeoutError(self.name.value, f"connect to {self.config.table_name}", deadline) from e
        except DatabaseConnectionError:
            executor.shutdown(wait=False)
            raise
        except (ClientError, BotoCoreError) as e:
            executor.shutdown(wait=False)
            raise DatabaseConnectionError(
                self.name.value,
                f"Failed to connect to DynamoDB table: {self.config.table_name}",
                e
            ) from e

        self._executor = executor
        logger.info(f"DynamoDB connected: {self.config.table_name} ({self.config.region})")

    async def disconnect(self) -> None:
        if self._executor is None:
            return

        executor, resource = self._executor, self._resource
        self._executor = None
        self._resource = None
        self._table = None
        if resource is not None:
            await asyncio.get_running_loop().run_in_executor(executor, resource.meta.client.close)
        executor.shutdown(wait=True)
        logger.info(f"DynamoDB disconnected: {self.config.table_name}")

    def is_connected(self) -> bool:
        return self._table is not None and self._executor is not None

    async def _execute(self, fn: Callable[..., Any], *args: Any) -> Any:
        # One worker: calls complete in the order they were issued
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, functools.partial(fn, *args))

    def _client_config(self) -> BotoConfig:
        """Socket timeouts bounded by the operation deadline; retries are left to the caller."""
        return BotoConfig(
            connect_timeout=self.timeout,
            read_timeout=self.timeout,
            retries={"max_attempts": 0},
        )

    def _open(self):
        resource = boto3.resource(
            "dynamodb",
            region_name=self.config.region,
            endpoint_url=self.config.endpoint,
            config=self._client_config(),
        )
        table = resource.Table(self.config.table_name)

        try:
            table.load()
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") != "ResourceNotFoundException":
                raise
            if not self.config.create_table:
                raise DatabaseConnectionError(
                    self.name.value,
                    f"Table does not exist: {self.config.table_name}",
                    e
                ) from e
            table = self._create_table(resource)

        return resource, table

    def _create_table(self, resource):
        """Create the single table with on-demand billing and TTL enabled."""
        logger.info(f"Creating DynamoDB table: {self.config.table_name}")
        table = resource.create_table(
            TableName=self.config.table_name,
            KeySchema=[
                {"AttributeName": "PK", "KeyType": "HASH"},
                {"AttributeName": "SK", "KeyType": "RANGE"},
            ],
            AttributeDefinitions=[
                {"AttributeName": "PK", "AttributeType": "S"},
                {"AttributeName": "SK", "AttributeType": "S"},
            ],
            BillingMode="PAY_PER_REQUEST",
        )
        table.wait_until_exists()
        resource.meta.client.update_time_to_live(
            TableName=self.config.table_name,
            TimeToLiveSpecification={"Enabled": True, "AttributeName": "TTL"},
        )
        return table

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _query_all(self, **params: Any) -> Iterator[dict]:
        """Yield items across every page of a query."""
        while True:
            response = self._table.query(**params)
            yield from response.get("Items", [])
            last_key = response.get("LastEvaluatedKey")
            if not last_key:
                return
            params["ExclusiveStartKey"] = last_key

    def _update_item(self, key: dict, expression: Tuple[str, dict, dict], condition: Optional[str] = None) -> dict:
        update_expression, names, values = expression
        params = {
            "Key": key,
            "UpdateExpression": update_expression,
            "ExpressionAttributeNames": names,
            "ExpressionAttributeValues": values,
            "ReturnValues": "ALL_NEW",
        }
        if condition:
            params["ConditionExpression"] = condition
        return self._table.update_item(**params)["Attributes"]

    @staticmethod
    def _entity(item: dict) -> dict:
        return {k: from_dynamo(v) for k, v in item.items() if k not in _KEY_ATTRIBUTES}

    def _item_to_extended_memory(self, item: dict) -> ExtendedMemory:
        data = self._entity(item)
        if data.get("embedding") is not None:
            data["embedding"] = decode_embedding(data["embedding"])
        return ExtendedMemory.model_validate(data)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def _insert_session(self, session: Session) -> None:
        item = {
            "PK": _user_key(session.user_id),
            "SK": f"{SESSION_PREFIX}{session.session_id}",
            "EntityType": "Session",
            **session.to_wire(),
            "TTL": _ttl_seconds(session.expires_at),
        }
        try:
            self._table.put_item(
                Item=to_dynamo(item),
                ConditionExpression="attribute_not_exists(PK)",
            )
        except ClientError as e:
            if _is_condition_failure(e):
                raise DatabaseError(f"Session already exists: {session.session_id}", self.name.value, e) from e
            raise

    def _fetch_session(self, user_id: str, session_id: str) -> Optional[Session]:
        response = self._table.get_item(
            Key={"PK": _user_key(user_id), "SK": f"{SESSION_PREFIX}{session_id}"}
        )
        item = response.get("Item")
        return Session.model_validate(self._entity(item)) if item else None

    def _update_session(self, user_id: str, session_id: str, changes: dict, updated_at: int) -> Session:
        values = wire_changes(Session, {**changes, "updated_at": updated_at})
        if "expires_at" in changes:
            values["TTL"] = _ttl_seconds(changes["expires_at"])

        try:
            attributes = self._update_item(
                {"PK": _user_key(user_id), "SK": f"{SESSION_PREFIX}{session_id}"},
                _set_expression(values),
                condition="attribute_exists(PK)",
            )
        except ClientError as e:
            if _is_condition_failure(e):
                raise RecordNotFoundError(self.name.value, "Session", session_id) from e
            raise
        return Session.model_validate(self._entity(attributes))

    def _remove_session(self, user_id: str, session_id: str) -> None:
        self._table.delete_item(
            Key={"PK": _user_key(user_id), "SK": f"{SESSION_PREFIX}{session_id}"}
        )

    def _query_sessions(self, filter: SessionFilter) -> List[Session]:
        if filter.session_id:
            condition = Key("PK").eq(_user_key(filter.user_id)) & Key("SK").eq(f"{SESSION_PREFIX}{filter.session_id}")
        else:
            condition = Key("PK").eq(_user_key(filter.user_id)) & Key("SK").begins_with(SESSION_PREFIX)

        # Sort keys order sessions by id, so ordering by createdAt happens here
        sessions = [
            Session.model_validate(self._entity(item))
            for item in self._query_all(KeyConditionExpression=condition)
        ]
        sessions.sort(
            key=lambda s: (s.created_at, s.session_id),
            reverse=filter.sort_order == SortOrder.DESC,
        )
        return sessions[:filter.limit] if filter.limit else sessions

    # ------------------------------------------------------------------
    # Core memory
    # ------------------------------------------------------------------

    def _core_memory_key(self, user_id: str) -> dict:
        return {"PK": _user_key(user_id), "SK": CORE_MEMORY_KEY}

    def _core_memory_defaults(self, user_id: str, now: int, exclude: set) -> dict:
        """Wire defaults for a first write, skipping attributes being set explicitly."""
        defaults = new_core_memory(user_id, now).to_wire()
        defaults.pop("updatedAt")
        defaults["EntityType"] = "CoreMemory"
        return {k: v for k, v in defaults.items() if k not in exclude}

    def _fetch_core_memory(self, user_id: str) -> Optional[CoreMemory]:
        item = self._table.get_item(Key=self._core_memory_key(user_id)).get("Item")
        return CoreMemory.model_validate(self._entity(item)) if item else None

    def _upsert_core_memory(self, user_id: str, changes: dict, now: int) -> CoreMemory:
        # Single UpdateItem: unnamed attributes keep their value or get a first-write default
        values = wire_changes(CoreMemory, {**changes, "updated_at": now})
        defaults = self._core_memory_defaults(user_id, now, exclude=set(values))
        attributes = self._update_item(self._core_memory_key(user_id), _set_expression(values, defaults))
        return CoreMemory.model_validate(self._entity(attributes))

    def _append_milestone(self, user_id: str, milestone: Milestone, now: int) -> CoreMemory:
        update_expression, names, values = _set_expression(
            {"updatedAt": now},
            self._core_memory_defaults(user_id, now, exclude={"keyMilestones"}),
        )
        names["#milestones"] = "keyMilestones"
        values[":milestone"] = to_dynamo([milestone.to_wire()])
        values[":empty"] = []
        update_expression += ", #milestones = list_append(if_not_exists(#milestones, :empty), :milestone)"

        attributes = self._update_item(
            self._core_memory_key(user_id),
            (update_expression, names, values),
        )
        return CoreMemory.model_validate(self._entity(attributes))

    def _remove_core_memory(self, user_id: str) -> None:
        self._table.delete_item(Key=self._core_memory_key(user_id))

    # ------------------------------------------------------------------
    # Extended memory
    # ------------------------------------------------------------------

    def _insert_extended_memory(self, memory: ExtendedMemory) -> None:
        item = {
            "PK": _user_key(memory.user_id),
            "SK": _memory_sort_key(memory.created_at, memory.memory_id),
            "EntityType": "ExtendedMemory",
            **memory.to_wire(exclude_none=True),
        }
        if memory.embedding is not None:
            item["embedding"] = Binary(encode_embedding(memory.embedding))
        if memory.ttl is not None:
            item["TTL"] = _ttl_seconds(memory.ttl)
        self._table.put_item(Item=to_dynamo(item))

    def _find_extended_memory_item(self, user_id: str, memory_id: str) -> Optional[dict]:
        # The sort key embeds createdAt, so lookups by id filter the user's partition
        items = self._query_all(
            KeyConditionExpression=Key("PK").eq(_user_key(user_id)) & Key("SK").begins_with(EXTENDED_MEMORY_PREFIX),
            FilterExpression=Attr("memoryId").eq(memory_id),
        )
        return next(items, None)

    def _fetch_extended_memory(self, user_id: str, memory_id: str) -> Optional[ExtendedMemory]:
        item = self._find_extended_memory_item(user_id, memory_id)
        return self._item_to_extended_memory(item) if item else None

    def _query_extended_memories(self, filter: MemoryFilter) -> List[ExtendedMemory]:
        params = {
            "KeyConditionExpression": (
                Key("PK").eq(_user_key(filter.user_id)) & Key("SK").begins_with(EXTENDED_MEMORY_PREFIX)
            ),
            "ScanIndexForward": filter.sort_order == SortOrder.ASC,
        }
        if filter.topics:
            condition = Attr("topics").contains(filter.topics[0])
            for topic in filter.topics[1:]:
                condition = condition | Attr("topics").contains(topic)
            params["FilterExpression"] = condition

        # Query Limit counts items before filtering, so the limit is applied while paging
        memories = []
        for item in self._query_all(**params):
            memories.append(self._item_to_extended_memory(item))
            if filter.limit and len(memories) >= filter.limit:
                break
        return memories

    def _remove_extended_memory(self, user_id: str, memory_id: str) -> None:
        item = self._find_extended_memory_item(user_id, memory_id)
        if item is None:
            return
        self._table.delete_item(Key={"PK": item["PK"], "SK": item["SK"]})

    def _remove_extended_memories(self, user_id: str) -> int:
        keys = [
            {"PK": item["PK"], "SK": item["SK"]}
            for item in self._query_all(
                KeyConditionExpression=Key("PK").eq(_user_key(user_id)) & Key("SK").begins_with(EXTENDED_MEMORY_PREFIX),
                ProjectionExpression="PK, SK",
            )
        ]
        with self._table.batch_writer() as batch:
            for key in keys:
                batch.delete_item(Key=key)
        return len(keys)

    def _fetch_embedded_memories(self, user_id: str) -> List[ExtendedMemory]:
        items = self._query_all(
            KeyConditionExpression=Key("PK").eq(_user_key(user_id)) & Key("SK").begins_with(EXTENDED_MEMORY_PREFIX),
            FilterExpression=Attr("embedding").exists(),
        )
        return [self._item_to_extended_memory(item) for item in items]

    # ------------------------------------------------------------------
    # OAuth tokens
    # ------------------------------------------------------------------

    def _oauth_key(self, user_id: str, provider: str) -> dict:
        return {"PK": _user_key(user_id), "SK": f"{OAUTH_PREFIX}{provider}"}

    def _put_oauth_tokens(self, tokens: OAuthTokens) -> None:
        item = {
            **self._oauth_key(tokens.user_id, tokens.provider),
            "EntityType": "OAuthTokens",
            **tokens.to_wire(exclude_none=True),
        }
        self._table.put_item(Item=to_dynamo(item))

    def _fetch_oauth_tokens(self, user_id: str, provider: str) -> Optional[OAuthTokens]:
        item = self._table.get_item(Key=self._oauth_key(user_id, provider)).get("Item")
        return OAuthTokens.model_validate(self._entity(item)) if item else None

    def _update_oauth_tokens(self, user_id: str, provider: str, changes: dict, updated_at: int) -> OAuthTokens:
        # One conditional UpdateItem: DynamoDB applies every attribute or none
        values = wire_changes(OAuthTokens, {**changes, "updated_at": updated_at})
        try:
            attributes = self._update_item(
                self._oauth_key(user_id, provider),
                _set_expression(values),
                condition="attribute_exists(PK)",
            )
        except ClientError as e:
            if _is_condition_failure(e):
                raise RecordNotFoundError(self.name.value, "OAuthTokens", f"{user_id}:{provider}") from e
            raise
        return OAuthTokens.model_validate(self._entity(attributes))

    def _remove_oauth_tokens(self, user_id: str, provider: str) -> None:
        self._table.delete_item(Key=self._oauth_key(user_id, provider))

"""Persistence provider contract.

Every backend implements the same observable behavior: identical field
values, identical ordering and identical absent/error signaling. The
public coroutines live here; backends supply the blocking primitives
(`_insert_session`, `_fetch_session`, ...) which run off the event loop
under a per-operation timeout.
"""

import asyncio
import logging
import math
import uuid
from abc import ABC, abstractmethod
from typing import Any, Callable, List, Optional, Tuple, Type

from schemas.base import now_ms
from schemas.credentials import OAuthTokens, OAuthTokensUpdate
from schemas.database import ProviderName
from schemas.memory import (
    CoreMemory,
    CoreMemoryUpdate,
    ExtendedMemory,
    MemoryFilter,
    Milestone,
    NewExtendedMemory,
)
from schemas.session import NewSession, Session, SessionFilter, SessionUpdate

from .errors import DatabaseError, InvalidRequestError, NotConnectedError, OperationTimeoutError
from .similarity import normalize_embedding, rank_by_similarity

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0


class DatabaseProvider(ABC):
    """Abstract base class for persistence providers."""

    name: ProviderName
    # Backend-native exceptions wrapped into DatabaseError
    native_errors: Tuple[Type[BaseException], ...] = ()

    def __init__(self, timeout: float = DEFAULT_TIMEOUT):
        """
        Initialize provider.

        Args:
            timeout: Deadline in seconds for each storage operation
        """
        self.timeout = timeout
        self._last_timestamp = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @abstractmethod
    async def connect(self) -> None:
        """Open the backend. Raises DatabaseConnectionError if unreachable."""
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        """Release the backend. Safe to call when not connected."""
        pass

    @abstractmethod
    def is_connected(self) -> bool:
        pass

    @abstractmethod
    async def _execute(self, fn: Callable[..., Any], *args: Any) -> Any:
        """Run a blocking primitive off the event loop."""
        pass

    async def __aenter__(self) -> "DatabaseProvider":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.disconnect()

    def _ensure_connected(self) -> None:
        if not self.is_connected():
            raise NotConnectedError(self.name.value)

    def _next_timestamp(self) -> int:
        """Strictly increasing timestamps for this provider instance."""
        timestamp = max(now_ms(), self._last_timestamp + 1)
        self._last_timestamp = timestamp
        return timestamp

    async def _run(self, operation: str, fn: Callable[..., Any], *args: Any) -> Any:
        self._ensure_connected()
        try:
            return await asyncio.wait_for(self._execute(fn, *args), timeout=self.timeout)
        except DatabaseError:
            raise
        except asyncio.TimeoutError as e:
            raise OperationTimeoutError(self.name.value, operation, self.timeout) from e
        except self.native_errors as e:
            logger.error(f"{self.name.value}: failed to {operation}: {e}")
            raise DatabaseError(f"Failed to {operation}", self.name.value, e) from e

    def _require(self, **identifiers: Optional[str]) -> None:
        for field, value in identifiers.items():
            if not value:
                raise InvalidRequestError(f"{field} is required", self.name.value)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def create_session(self, session: NewSession) -> Session:
        """Store a new session, stamping createdAt and updatedAt."""
        timestamp = self._next_timestamp()
        stored = Session(**session.model_dump(), created_at=timestamp, updated_at=timestamp)
        await self._run(f"create session {session.session_id}", self._insert_session, stored)
        return stored

    async def get_session(self, user_id: str, session_id: str) -> Optional[Session]:
        """Return the session, or None when it does not exist."""
        self._require(user_id=user_id, session_id=session_id)
        return await self._run(f"get session {session_id}", self._fetch_session, user_id, session_id)

    async def update_session(self, user_id: str, session_id: str, updates: SessionUpdate) -> Session:
        """Replace the named fields. Raises RecordNotFoundError if the session is absent."""
        self._require(user_id=user_id, session_id=session_id)
        return await self._run(
            f"update session {session_id}",
            self._update_session, user_id, session_id, updates.changes(), self._next_timestamp()
        )

    async def delete_session(self, user_id: str, session_id: str) -> None:
        """Idempotent delete."""
        self._require(user_id=user_id, session_id=session_id)
        await self._run(f"delete session {session_id}", self._remove_session, user_id, session_id)

    async def list_sessions(self, filter: SessionFilter) -> List[Session]:
        """Sessions ordered by createdAt in the filter's sort order."""
        return await self._run(f"list sessions for user {filter.user_id}", self._query_sessions, filter)

    # ------------------------------------------------------------------
    # Core memory
    # ------------------------------------------------------------------

    async def get_core_memory(self, user_id: str) -> Optional[CoreMemory]:
        self._require(user_id=user_id)
        return await self._run(f"get core memory for user {user_id}", self._fetch_core_memory, user_id)

    async def upsert_core_memory(self, user_id: str, updates: CoreMemoryUpdate) -> CoreMemory:
        """Create or merge. Fields not named in `updates` keep their stored value."""
        self._require(user_id=user_id)
        return await self._run(
            f"upsert core memory for user {user_id}",
            self._upsert_core_memory, user_id, updates.changes(), self._next_timestamp()
        )

    async def append_milestone(self, user_id: str, milestone: Milestone) -> CoreMemory:
        """Atomically append to keyMilestones, creating the record if needed."""
        self._require(user_id=user_id)
        return await self._run(
            f"append milestone for user {user_id}",
            self._append_milestone, user_id, milestone, self._next_timestamp()
        )

    async def delete_core_memory(self, user_id: str) -> None:
        self._require(user_id=user_id)
        await self._run(f"delete core memory for user {user_id}", self._remove_core_memory, user_id)

    # ------------------------------------------------------------------
    # Extended memory
    # ------------------------------------------------------------------

    async def create_extended_memory(self, memory: NewExtendedMemory) -> ExtendedMemory:
        """Store a new memory with a fresh id and createdAt."""
        data = memory.model_dump()
        if memory.embedding is not None:
            data["embedding"] = normalize_embedding(memory.embedding)
        stored = ExtendedMemory(**data, memory_id=str(uuid.uuid4()), created_at=self._next_timestamp())
        await self._run(f"create extended memory for user {memory.user_id}", self._insert_extended_memory, stored)
        return stored

    async def get_extended_memory(self, user_id: str, memory_id: str) -> Optional[ExtendedMemory]:
        self._require(user_id=user_id, memory_id=memory_id)
        return await self._run(
            f"get extended memory {memory_id}", self._fetch_extended_memory, user_id, memory_id
        )

    async def list_extended_memories(self, filter: MemoryFilter) -> List[ExtendedMemory]:
        """Memories ordered by createdAt; the topic filter applies before the limit."""
        return await self._run(
            f"list extended memories for user {filter.user_id}", self._query_extended_memories, filter
        )

    async def delete_extended_memory(self, user_id: str, memory_id: str) -> None:
        """Idempotent delete."""
        self._require(user_id=user_id, memory_id=memory_id)
        await self._run(
            f"delete extended memory {memory_id}", self._remove_extended_memory, user_id, memory_id
        )

    async def delete_extended_memories(self, user_id: str) -> int:
        """Delete every extended memory of the user; returns the count removed."""
        self._require(user_id=user_id)
        return await self._run(
            f"delete extended memories for user {user_id}", self._remove_extended_memories, user_id
        )

    async def search_memories(
        self,
        user_id: str,
        embedding: List[float],
        limit: int = 5
    ) -> List[ExtendedMemory]:
        """
        Similarity search over the user's embedded memories.

        Args:
            user_id: Owning user
            embedding: Query vector from the embedding collaborator
            limit: Maximum number of results

        Returns:
            Memories ordered by cosine similarity, descending. Empty when
            the user has no embedded memories.
        """
        self._require(user_id=user_id)
        if not embedding:
            raise InvalidRequestError("embedding must not be empty", self.name.value)
        if not all(math.isfinite(v) for v in embedding):
            raise InvalidRequestError("embedding values must be finite", self.name.value)
        if limit <= 0:
            raise InvalidRequestError("limit must be positive", self.name.value)
        candidates = await self._run(
            f"search memories for user {user_id}", self._fetch_embedded_memories, user_id
        )
        return rank_by_similarity(embedding, candidates, limit)

    # ------------------------------------------------------------------
    # OAuth tokens
    # ------------------------------------------------------------------

    async def save_oauth_tokens(self, tokens: OAuthTokens) -> None:
        """Upsert by (userId, provider)."""
        await self._run(f"save OAuth tokens for user {tokens.user_id}", self._put_oauth_tokens, tokens)

    async def get_oauth_tokens(self, user_id: str, provider: str) -> Optional[OAuthTokens]:
        self._require(user_id=user_id, provider=provider)
        return await self._run(
            f"get OAuth tokens for user {user_id}", self._fetch_oauth_tokens, user_id, provider
        )

    async def update_oauth_tokens(
        self,
        user_id: str,
        provider: str,
        updates: OAuthTokensUpdate
    ) -> OAuthTokens:
        """Apply all named fields in one atomic write. Raises RecordNotFoundError if absent."""
        self._require(user_id=user_id, provider=provider)
        return await self._run(
            f"update OAuth tokens for user {user_id}",
            self._update_oauth_tokens, user_id, provider, updates.changes(), self._next_timestamp()
        )

    async def delete_oauth_tokens(self, user_id: str, provider: str) -> None:
        self._require(user_id=user_id, provider=provider)
        await self._run(
            f"delete OAuth tokens for user {user_id}", self._remove_oauth_tokens, user_id, provider
        )

    # ------------------------------------------------------------------
    # Backend primitives (blocking)
    # ------------------------------------------------------------------

    @abstractmethod
    def _insert_session(self, session: Session) -> None:
        pass

    @abstractmethod
    def _fetch_session(self, user_id: str, session_id: str) -> Optional[Session]:
        pass

    @abstractmethod
    def _update_session(self, user_id: str, session_id: str, changes: dict, updated_at: int) -> Session:
        pass

    @abstractmethod
    def _remove_session(self, user_id: str, session_id: str) -> None:
        pass

    @abstractmethod
    def _query_sessions(self, filter: SessionFilter) -> List[Session]:
        pass

    @abstractmethod
    def _fetch_core_memory(self, user_id: str) -> Optional[CoreMemory]:
        pass

    @abstractmethod
    def _upsert_core_memory(self, user_id: str, changes: dict, now: int) -> CoreMemory:
        pass

    @abstractmethod
    def _append_milestone(self, user_id: str, milestone: Milestone, now: int) -> CoreMemory:
        pass

    @abstractmethod
    def _remove_core_memory(self, user_id: str) -> None:
        pass

    @abstractmethod
    def _insert_extended_memory(self, memory: ExtendedMemory) -> None:
        pass

    @abstractmethod
    def _fetch_extended_memory(self, user_id: str, memory_id: str) -> Optional[ExtendedMemory]:
        pass

    @abstractmethod
    def _query_extended_memories(self, filter: MemoryFilter) -> List[ExtendedMemory]:
        pass

    @abstractmethod
    def _remove_extended_memory(self, user_id: str, memory_id: str) -> None:
        pass

    @abstractmethod
    def _remove_extended_memories(self, user_id: str) -> int:
        pass

    @abstractmethod
    def _fetch_embedded_memories(self, user_id: str) -> List[ExtendedMemory]:
        """All of the user's memories that carry an embedding."""
        pass

    @abstractmethod
    def _put_oauth_tokens(self, tokens: OAuthTokens) -> None:
        pass

    @abstractmethod
    def _fetch_oauth_tokens(self, user_id: str, provider: str) -> Optional[OAuthTokens]:
        pass

    @abstractmethod
    def _update_oauth_tokens(self, user_id: str, provider: str, changes: dict, updated_at: int) -> OAuthTokens:
        pass

    @abstractmethod
    def _remove_oauth_tokens(self, user_id: str, provider: str) -> None:
        pass


def new_core_memory(user_id: str, now: int) -> CoreMemory:
    """Defaults for a user's first core memory write."""
    return CoreMemory(
        user_id=user_id,
        relationship_start_date=now,
        created_at=now,
        updated_at=now,
    )

"""Conversation session store."""

import logging
import uuid
from typing import Any, Dict, List, Optional, Union

from database.base import DatabaseProvider
from database.errors import RecordNotFoundError
from schemas.base import now_ms
from schemas.session import (
    SESSION_TTL_MS,
    Message,
    NewSession,
    Session,
    SessionFilter,
    SessionUpdate,
    SortOrder,
)
from utils.locks import KeyedLocks

logger = logging.getLogger(__name__)


class ConversationStore:
    """Session CRUD over a persistence provider."""

    # Configuration
    DEFAULT_LIST_LIMIT = 10
    DEFAULT_RECENT_MESSAGES = 10

    def __init__(self, provider: DatabaseProvider):
        """
        Initialize conversation store.

        Args:
            provider: Connected persistence provider
        """
        self.provider = provider
        self._locks = KeyedLocks()

    async def create_session(
        self,
        user_id: str,
        session_id: Optional[str] = None,
        messages: Optional[List[Message]] = None,
        agent_context: Optional[Dict[str, Any]] = None,
        expires_at: Optional[int] = None
    ) -> Session:
        """
        Create a new session.

        Args:
            user_id: Owning user
            session_id: Caller-chosen ID; a UUID is generated if omitted
            messages: Initial history
            agent_context: Initial agent state
            expires_at: Expiry in Unix ms; defaults to 30 days from now

        Returns:
            Stored session
        """
        session = NewSession(
            session_id=session_id or str(uuid.uuid4()),
            user_id=user_id,
            messages=messages or [],
            agent_context=agent_context or {},
            expires_at=expires_at if expires_at is not None else now_ms() + SESSION_TTL_MS,
        )
        stored = await self.provider.create_session(session)
        logger.info(f"Created session {stored.session_id} for user {user_id}")
        return stored

    async def get_session(self, user_id: str, session_id: str) -> Optional[Session]:
        return await self.provider.get_session(user_id, session_id)

    async def update_session(self, user_id: str, session_id: str, updates: SessionUpdate) -> Session:
        return await self.provider.update_session(user_id, session_id, updates)

    async def delete_session(self, user_id: str, session_id: str) -> None:
        await self.provider.delete_session(user_id, session_id)

    async def list_sessions(
        self,
        user_id: str,
        limit: int = DEFAULT_LIST_LIMIT,
        sort_order: Union[SortOrder, str] = SortOrder.DESC
    ) -> List[Session]:
        """List a user's sessions, newest first by default."""
        return await self.provider.list_sessions(
            SessionFilter(user_id=user_id, limit=limit, sort_order=sort_order)
        )

    async def add_messages(self, user_id: str, session_id: str, *messages: Message) -> Session:
        """
        Append messages to a session's history.

        Appends for the same session are serialized within this process.

        Raises:
            RecordNotFoundError: If the session does not exist
        """
        async with self._locks(user_id, session_id):
            session = await self._require_session(user_id, session_id)
            return await self.provider.update_session(
                user_id, session_id, SessionUpdate(messages=[*session.messages, *messages])
            )

    async def merge_context(self, user_id: str, session_id: str, context: Dict[str, Any]) -> Session:
        """Shallow-merge keys into the session's agent context."""
        async with self._locks(user_id, session_id):
            session = await self._require_session(user_id, session_id)
            return await self.provider.update_session(
                user_id, session_id, SessionUpdate(agent_context={**session.agent_context, **context})
            )

    async def get_recent_messages(
        self,
        user_id: str,
        session_id: str,
        limit: int = DEFAULT_RECENT_MESSAGES
    ) -> List[Message]:
        """Last `limit` messages in chronological order; empty if the session is absent."""
        session = await self.provider.get_session(user_id, session_id)
        if session is None or limit <= 0:
            return []
        return session.messages[-limit:]

    async def _require_session(self, user_id: str, session_id: str) -> Session:
        session = await self.provider.get_session(user_id, session_id)
        if session is None:
            raise RecordNotFoundError(self.provider.name.value, "Session", session_id)
        return session

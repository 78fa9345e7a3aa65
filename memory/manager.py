"""Memory manager: business rules over core and extended memory."""

import logging
from typing import Any, Dict, List, Optional, Union

from database.base import DatabaseProvider
from database.errors import InvalidRequestError
from schemas.base import now_ms
from schemas.memory import (
    CoreMemory,
    CoreMemoryUpdate,
    ExtendedMemory,
    MemoryFilter,
    Milestone,
    NewExtendedMemory,
    Preferences,
    RelationshipStage,
)
from schemas.session import SortOrder
from utils.locks import KeyedLocks

logger = logging.getLogger(__name__)


class MemoryManager:
    """Manages a user's core memory and extended (semantic) memory."""

    # Configuration
    DEFAULT_EXTENDED_LIMIT = 10
    DEFAULT_SEARCH_LIMIT = 5

    def __init__(self, provider: DatabaseProvider):
        """
        Initialize memory manager.

        Args:
            provider: Connected persistence provider
        """
        self.provider = provider
        self._locks = KeyedLocks()

    # ------------------------------------------------------------------
    # Core memory
    # ------------------------------------------------------------------

    async def get_core_memory(self, user_id: str) -> Optional[CoreMemory]:
        return await self.provider.get_core_memory(user_id)

    async def update_core_memory(
        self,
        user_id: str,
        updates: Union[CoreMemoryUpdate, Dict[str, Any]]
    ) -> CoreMemory:
        """Create or merge; fields not named in `updates` are left untouched."""
        if isinstance(updates, dict):
            updates = CoreMemoryUpdate.model_validate(updates)
        return await self.provider.upsert_core_memory(user_id, updates)

    async def add_milestone(self, user_id: str, type: str, description: str) -> CoreMemory:
        """
        Record a milestone stamped with the current time.

        The append is a single atomic provider write, so concurrent calls
        for the same user never drop each other's milestones.

        Args:
            user_id: User ID
            type: Milestone type (e.g. "first_invoice")
            description: Human-readable description

        Returns:
            Updated core memory
        """
        milestone = Milestone(type=type, description=description, timestamp=now_ms())
        memory = await self.provider.append_milestone(user_id, milestone)
        logger.info(f"Milestone '{type}' recorded for user {user_id}")
        return memory

    async def update_relationship_stage(
        self,
        user_id: str,
        stage: Union[RelationshipStage, str]
    ) -> CoreMemory:
        """Set the relationship stage. Any stage may follow any other."""
        try:
            stage = RelationshipStage(stage)
        except ValueError:
            valid = ", ".join(s.value for s in RelationshipStage)
            raise InvalidRequestError(f"Unknown relationship stage '{stage}' (expected one of: {valid})") from None

        return await self.provider.upsert_core_memory(
            user_id, CoreMemoryUpdate(relationship_stage=stage)
        )

    async def update_preferences(
        self,
        user_id: str,
        preferences: Union[Preferences, Dict[str, Any]]
    ) -> CoreMemory:
        """Shallow-merge into the stored preferences.

        Merges for the same user are serialized within this process.
        """
        if isinstance(preferences, dict):
            preferences = Preferences.model_validate(preferences)

        async with self._locks(user_id):
            existing = await self.provider.get_core_memory(user_id)
            merged = existing.preferences.merged(preferences) if existing else preferences
            return await self.provider.upsert_core_memory(user_id, CoreMemoryUpdate(preferences=merged))

    async def add_critical_context(self, user_id: str, fact: str) -> CoreMemory:
        """Remember a fact the assistant must always know. Duplicates are ignored."""
        if not fact:
            raise InvalidRequestError("fact must not be empty")

        async with self._locks(user_id):
            existing = await self.provider.get_core_memory(user_id)
            facts = list(existing.critical_context) if existing else []
            if fact in facts:
                return existing

            facts.append(fact)
            return await self.provider.upsert_core_memory(user_id, CoreMemoryUpdate(critical_context=facts))

    # ------------------------------------------------------------------
    # Extended memory
    # ------------------------------------------------------------------

    async def get_extended_memory(
        self,
        user_id: str,
        limit: int = DEFAULT_EXTENDED_LIMIT,
        sort_order: Union[SortOrder, str] = SortOrder.DESC,
        topics: Optional[List[str]] = None
    ) -> List[ExtendedMemory]:
        """List memories, most recent first by default."""
        return await self.provider.list_extended_memories(
            MemoryFilter(user_id=user_id, topics=topics, limit=limit, sort_order=sort_order)
        )

    async def add_extended_memory(
        self,
        user_id: str,
        conversation_summary: str,
        embedding: Optional[List[float]] = None,
        learned_patterns: Optional[Dict[str, Any]] = None,
        emotional_context: Optional[str] = None,
        topics: Optional[List[str]] = None,
        ttl: Optional[int] = None
    ) -> ExtendedMemory:
        """Store a memory; the provider assigns its ID and createdAt."""
        memory = NewExtendedMemory(
            user_id=user_id,
            conversation_summary=conversation_summary,
            embedding=embedding,
            learned_patterns=learned_patterns or {},
            emotional_context=emotional_context,
            topics=topics or [],
            ttl=ttl,
        )
        return await self.provider.create_extended_memory(memory)

    async def search_memory(
        self,
        user_id: str,
        embedding: List[float],
        limit: int = DEFAULT_SEARCH_LIMIT
    ) -> List[ExtendedMemory]:
        """Most similar memories to a query embedding computed by the caller."""
        return await self.provider.search_memories(user_id, embedding, limit)

    async def delete_extended_memory(self, user_id: str, memory_id: str) -> None:
        await self.provider.delete_extended_memory(user_id, memory_id)

    async def clear_extended_memory(self, user_id: str) -> int:
        count = await self.provider.delete_extended_memories(user_id)
        logger.info(f"Cleared {count} extended memories for user {user_id}")
        return count

    async def forget_user(self, user_id: str) -> None:
        """Erase all core and extended memory for a user."""
        await self.provider.delete_core_memory(user_id)
        await self.provider.delete_extended_memories(user_id)
        logger.info(f"Erased memory for user {user_id}")

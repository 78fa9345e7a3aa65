"""Memory context assembly for agent prompts."""

import logging
from typing import List, Optional

from pydantic import BaseModel, Field

from conversation.store import ConversationStore
from database.errors import DatabaseError
from schemas.memory import CoreMemory, ExtendedMemory
from schemas.session import Message

from .manager import MemoryManager

logger = logging.getLogger(__name__)


class MemoryContext(BaseModel):
    """Everything the agent knows about a user for one turn."""
    user_id: str
    core_memory: Optional[CoreMemory] = None
    recent_messages: List[Message] = Field(default_factory=list)
    relevant_memories: List[ExtendedMemory] = Field(default_factory=list)


class MemoryContextManager:
    """Builds the memory context handed to the agent."""

    # Configuration
    MAX_CONTEXT_MESSAGES = 10  # Maximum messages to include in context
    MAX_RELEVANT_MEMORIES = 3

    def __init__(self, memory: MemoryManager, conversations: ConversationStore):
        """
        Initialize context manager.

        Args:
            memory: Memory manager
            conversations: Conversation store
        """
        self.memory = memory
        self.conversations = conversations

    async def build_context(
        self,
        user_id: str,
        session_id: Optional[str] = None,
        embedding: Optional[List[float]] = None
    ) -> MemoryContext:
        """
        Gather core memory, recent history and relevant past conversations.

        Core memory and session reads propagate their errors. The semantic
        search only enriches the context, so its failure is logged and the
        context is built without it.

        Args:
            user_id: User ID
            session_id: Current session, if any
            embedding: Embedding of the current user message, if available

        Returns:
            Assembled context
        """
        context = MemoryContext(user_id=user_id)
        context.core_memory = await self.memory.get_core_memory(user_id)

        if session_id:
            context.recent_messages = await self.conversations.get_recent_messages(
                user_id, session_id, limit=self.MAX_CONTEXT_MESSAGES
            )

        if embedding:
            context.relevant_memories = await self._search(user_id, embedding)

        return context

    async def _search(self, user_id: str, embedding: List[float]) -> List[ExtendedMemory]:
        try:
            return await self.memory.search_memory(user_id, embedding, limit=self.MAX_RELEVANT_MEMORIES)
        except DatabaseError as e:
            logger.warning(f"Memory search failed for user {user_id}, continuing without it: {e}")
            return []

    def format_context(self, context: MemoryContext) -> str:
        """
        Render the context as a single string.

        Useful for including in system prompts.

        Args:
            context: Assembled context

        Returns:
            Formatted context string, empty when nothing is known
        """
        parts = []

        core = context.core_memory
        if core:
            parts.append("=== What You Know About This User ===")
            parts.append(f"Relationship stage: {core.relationship_stage.value}")

            preferences = core.preferences.model_dump(exclude_none=True)
            for key, value in preferences.items():
                parts.append(f"Preference {key}: {value}")

            for fact in core.critical_context:
                parts.append(f"- {fact}")

            if core.key_milestones:
                parts.append("Milestones:")
                for milestone in core.key_milestones:
                    parts.append(f"- {milestone.type}: {milestone.description}")

        if context.relevant_memories:
            parts.append("=== Relevant Past Conversations ===")
            for memory in context.relevant_memories:
                topics = f" [{', '.join(memory.topics)}]" if memory.topics else ""
                parts.append(f"- {memory.conversation_summary}{topics}")

        if context.recent_messages:
            parts.append("=== Previous Conversation ===")
            for message in context.recent_messages:
                parts.append(f"{message.role.value.upper()}: {message.content}")
            parts.append("=== End Previous Conversation ===")

        return "\n".join(parts)

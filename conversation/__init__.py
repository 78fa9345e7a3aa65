"""Conversation session management."""

from .store import ConversationStore

__all__ = ["ConversationStore"]

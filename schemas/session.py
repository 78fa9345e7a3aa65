"""Conversation session schemas."""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import Field

from .base import UpdateModel, WireModel, now_ms


SESSION_TTL_MS = 30 * 24 * 60 * 60 * 1000  # 30 days


class MessageRole(str, Enum):
    """Speaker of a message."""
    USER = "user"
    ASSISTANT = "assistant"


class SortOrder(str, Enum):
    """Ordering on createdAt."""
    ASC = "asc"
    DESC = "desc"


class Message(WireModel):
    """A single message in a session history."""
    role: MessageRole
    content: str


class NewSession(WireModel):
    """Session as supplied by the caller; timestamps are assigned on create."""
    session_id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    messages: List[Message] = Field(default_factory=list)
    agent_context: Dict[str, Any] = Field(default_factory=dict)
    expires_at: int


class Session(NewSession):
    """A stored conversation session."""
    created_at: int
    updated_at: int

    def is_expired(self, now: Optional[int] = None) -> bool:
        """Expired sessions stay readable but may be reclaimed."""
        return self.expires_at <= (now if now is not None else now_ms())


class SessionUpdate(UpdateModel):
    """Partial session update. Named fields replace stored values."""
    messages: Optional[List[Message]] = None
    agent_context: Optional[Dict[str, Any]] = None
    expires_at: Optional[int] = None


class SessionFilter(WireModel):
    """Query for a user's sessions."""
    user_id: str = Field(min_length=1)
    session_id: Optional[str] = None
    limit: Optional[int] = Field(None, gt=0)
    sort_order: SortOrder = SortOrder.DESC

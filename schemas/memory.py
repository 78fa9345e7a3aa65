"""Core and extended memory schemas."""

import math
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import ConfigDict, Field, field_validator

from .base import UpdateModel, WireModel, now_ms
from .session import SortOrder


class RelationshipStage(str, Enum):
    """Rapport between the user and the assistant.

    Transitions are caller-driven; any stage may follow any other.
    """
    COLLEAGUE = "colleague"
    PARTNER = "partner"
    FRIEND = "friend"


class Preferences(WireModel):
    """User preference bag. Unknown keys are kept."""

    model_config = ConfigDict(extra="allow")

    xero_org_id: Optional[str] = None  # linked accounting tenant
    xero_org_name: Optional[str] = None
    reporting_preferences: Optional[Dict[str, Any]] = None
    communication_style: Optional[Literal["formal", "casual", "technical"]] = None
    timezone: Optional[str] = None  # IANA, e.g. "Australia/Sydney"
    currency: Optional[str] = None  # ISO 4217, e.g. "AUD"

    def merged(self, other: "Preferences") -> "Preferences":
        """Shallow merge; values set on `other` win."""
        data = self.model_dump(by_alias=True, exclude_none=True)
        data.update(other.model_dump(by_alias=True, exclude_none=True))
        return Preferences.model_validate(data)


class Milestone(WireModel):
    """A typed event in the user's relationship history."""
    type: str = Field(min_length=1)  # e.g. "first_invoice", "year_anniversary"
    description: str
    timestamp: int


class CoreMemory(WireModel):
    """Always-available per-user profile and relationship state."""
    user_id: str
    preferences: Preferences = Field(default_factory=Preferences)
    relationship_stage: RelationshipStage = RelationshipStage.COLLEAGUE
    relationship_start_date: int
    key_milestones: List[Milestone] = Field(default_factory=list)
    critical_context: List[str] = Field(default_factory=list)
    created_at: int
    updated_at: int


class CoreMemoryUpdate(UpdateModel):
    """Partial core memory write. Fields left as None keep their stored value."""
    preferences: Optional[Preferences] = None
    relationship_stage: Optional[RelationshipStage] = None
    relationship_start_date: Optional[int] = None
    key_milestones: Optional[List[Milestone]] = None
    critical_context: Optional[List[str]] = None


class NewExtendedMemory(WireModel):
    """Extended memory as supplied by the caller; id and createdAt are assigned on create."""
    user_id: str = Field(min_length=1)
    conversation_summary: str
    embedding: Optional[List[float]] = None
    learned_patterns: Dict[str, Any] = Field(default_factory=dict)
    emotional_context: Optional[str] = None
    topics: List[str] = Field(default_factory=list)
    ttl: Optional[int] = None

    @field_validator("embedding")
    @classmethod
    def _check_embedding(cls, value: Optional[List[float]]) -> Optional[List[float]]:
        if value is None:
            return value
        if not value:
            raise ValueError("embedding must not be empty")
        if not all(math.isfinite(v) for v in value):
            raise ValueError("embedding values must be finite")
        return value


class ExtendedMemory(NewExtendedMemory):
    """A stored extended memory record."""
    memory_id: str
    created_at: int

    def is_expired(self, now: Optional[int] = None) -> bool:
        if self.ttl is None:
            return False
        return self.ttl <= (now if now is not None else now_ms())


class MemoryFilter(WireModel):
    """Query for a user's extended memories."""
    user_id: str = Field(min_length=1)
    topics: Optional[List[str]] = None
    limit: Optional[int] = Field(None, gt=0)
    sort_order: SortOrder = SortOrder.DESC

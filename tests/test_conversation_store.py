"""Tests for the Conversation Store."""

import asyncio
import uuid

import pytest

from conversation.store import ConversationStore
from database.errors import RecordNotFoundError
from schemas.base import now_ms
from schemas.session import SESSION_TTL_MS, Message, MessageRole, SessionUpdate
from tests.conftest import sqlite_provider


class TestConversationStore:
    """Test session handling on top of the provider."""

    def setup_method(self):
        """Set up test fixtures."""
        self.provider = sqlite_provider()
        self.store = ConversationStore(self.provider)

    def run(self, scenario):
        async def wrapped():
            async with self.provider:
                return await scenario()
        return asyncio.run(wrapped())

    def test_create_fills_defaults(self):
        """Test a generated id and a 30 day expiry."""
        before = now_ms()
        session = self.run(lambda: self.store.create_session("u1"))
        after = now_ms()

        uuid.UUID(session.session_id)
        assert session.messages == []
        assert session.agent_context == {}
        assert before + SESSION_TTL_MS <= session.expires_at <= after + SESSION_TTL_MS

    def test_create_keeps_caller_values(self):
        """Test explicit values are stored as given."""
        session = self.run(lambda: self.store.create_session(
            "u1", session_id="chat-1", agent_context={"mode": "reports"}, expires_at=123
        ))

        assert session.session_id == "chat-1"
        assert session.agent_context == {"mode": "reports"}
        assert session.expires_at == 123

    def test_add_messages_and_recent(self):
        """Test appended messages come back in chronological order."""
        async def scenario():
            await self.store.create_session("u1", session_id="s1")
            for i in range(6):
                await self.store.add_messages(
                    "u1", "s1",
                    Message(role=MessageRole.USER, content=f"q{i}"),
                    Message(role=MessageRole.ASSISTANT, content=f"a{i}"),
                )
            return await self.store.get_recent_messages("u1", "s1", limit=3)

        recent = self.run(scenario)
        assert [m.content for m in recent] == ["a4", "q5", "a5"]

    def test_concurrent_appends_are_serialized(self):
        """Test simultaneous appends to one session all land."""
        async def scenario():
            await self.store.create_session("u1", session_id="s1")
            await asyncio.gather(*[
                self.store.add_messages("u1", "s1", Message(role="user", content=str(i)))
                for i in range(10)
            ])
            return await self.store.get_session("u1", "s1")

        session = self.run(scenario)
        assert sorted(int(m.content) for m in session.messages) == list(range(10))

    def test_merge_context(self):
        """Test context keys are merged, not replaced wholesale."""
        async def scenario():
            await self.store.create_session("u1", session_id="s1", agent_context={"a": 1, "b": 2})
            return await self.store.merge_context("u1", "s1", {"b": 3, "c": 4})

        assert self.run(scenario).agent_context == {"a": 1, "b": 3, "c": 4}

    def test_append_to_missing_session(self):
        """Test appends to unknown sessions raise RecordNotFoundError."""
        async def scenario():
            with pytest.raises(RecordNotFoundError):
                await self.store.add_messages("u1", "missing", Message(role="user", content="x"))
            return await self.store.get_recent_messages("u1", "missing")

        assert self.run(scenario) == []

    def test_list_sessions(self):
        """Test listing is newest first with a default cap of ten."""
        async def scenario():
            for i in range(12):
                await self.store.create_session("u1", session_id=f"s{i:02d}")
            default = await self.store.list_sessions("u1")
            oldest = await self.store.list_sessions("u1", limit=2, sort_order="asc")
            return default, oldest

        default, oldest = self.run(scenario)
        assert len(default) == 10
        assert default[0].session_id == "s11"
        assert [s.session_id for s in oldest] == ["s00", "s01"]

    def test_update_and_delete(self):
        """Test delegation of update and idempotent delete."""
        async def scenario():
            await self.store.create_session("u1", session_id="s1")
            updated = await self.store.update_session("u1", "s1", SessionUpdate(expires_at=1))
            await self.store.delete_session("u1", "s1")
            await self.store.delete_session("u1", "s1")
            return updated, await self.store.get_session("u1", "s1")

        updated, deleted = self.run(scenario)
        assert updated.expires_at == 1
        assert updated.is_expired()
        assert deleted is None

    def test_session_locks_released_after_use(self):
        """Test per-session locks do not accumulate once work is done."""
        async def scenario():
            for i in range(5):
                await self.store.create_session("u1", session_id=f"s{i}")
                await self.store.add_messages("u1", f"s{i}", Message(role="user", content="hi"))
                await self.store.merge_context("u1", f"s{i}", {"seen": True})
            return len(self.store._locks)

        assert self.run(scenario) == 0

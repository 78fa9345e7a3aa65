"""Tests for memory context assembly."""

import asyncio
from unittest.mock import patch

import pytest

from conversation.store import ConversationStore
from database.errors import DatabaseError, OperationTimeoutError
from memory.context_manager import MemoryContextManager
from memory.manager import MemoryManager
from schemas.session import Message
from tests.conftest import sqlite_provider


class TestMemoryContextManager:
    """Test context building and formatting."""

    def setup_method(self):
        """Set up test fixtures."""
        self.provider = sqlite_provider()
        self.memory = MemoryManager(self.provider)
        self.conversations = ConversationStore(self.provider)
        self.context_manager = MemoryContextManager(self.memory, self.conversations)

    def run(self, scenario):
        async def wrapped():
            async with self.provider:
                return await scenario()
        return asyncio.run(wrapped())

    async def seed(self):
        await self.memory.update_relationship_stage("u1", "partner")
        await self.memory.update_preferences("u1", {"currency": "AUD"})
        await self.memory.add_critical_context("u1", "Financial year ends 30 June")
        await self.memory.add_milestone("u1", "first_invoice", "Sent INV-001")
        await self.memory.add_extended_memory(
            "u1", "Discussed overdue invoices", embedding=[1.0, 0.0], topics=["invoices"]
        )
        await self.conversations.create_session("u1", session_id="s1", messages=[
            Message(role="user", content="How much do customers owe me?"),
            Message(role="assistant", content="$4,200 across 3 invoices."),
        ])

    def test_build_full_context(self):
        """Test all three sources are gathered."""
        async def scenario():
            await self.seed()
            return await self.context_manager.build_context("u1", session_id="s1", embedding=[1.0, 0.1])

        context = self.run(scenario)
        assert context.core_memory.relationship_stage.value == "partner"
        assert len(context.recent_messages) == 2
        assert [m.conversation_summary for m in context.relevant_memories] == ["Discussed overdue invoices"]

    def test_build_for_unknown_user(self):
        """Test an unknown user yields an empty context and empty text."""
        context = self.run(lambda: self.context_manager.build_context("nobody", session_id="s1", embedding=[1.0]))

        assert context.core_memory is None
        assert context.recent_messages == []
        assert context.relevant_memories == []
        assert self.context_manager.format_context(context) == ""

    def test_search_failure_is_best_effort(self):
        """Test a failing memory search does not block the context."""
        async def scenario():
            await self.seed()
            with patch.object(
                self.memory, "search_memory",
                side_effect=OperationTimeoutError("embedded-file", "search memories", 10.0)
            ):
                return await self.context_manager.build_context("u1", session_id="s1", embedding=[1.0, 0.0])

        context = self.run(scenario)
        assert context.relevant_memories == []
        assert context.core_memory is not None
        assert len(context.recent_messages) == 2

    def test_core_memory_failure_propagates(self):
        """Test failures outside the search are not swallowed."""
        async def scenario():
            with patch.object(
                self.memory, "get_core_memory", side_effect=DatabaseError("Failed", "embedded-file")
            ):
                await self.context_manager.build_context("u1")

        with pytest.raises(DatabaseError):
            self.run(scenario)

    def test_format_context(self):
        """Test the rendered prompt block."""
        async def scenario():
            await self.seed()
            context = await self.context_manager.build_context("u1", session_id="s1", embedding=[1.0, 0.0])
            return self.context_manager.format_context(context)

        text = self.run(scenario)
        assert "Relationship stage: partner" in text
        assert "Preference currency: AUD" in text
        assert "- Financial year ends 30 June" in text
        assert "- first_invoice: Sent INV-001" in text
        assert "- Discussed overdue invoices [invoices]" in text
        assert "USER: How much do customers owe me?" in text
        assert "ASSISTANT: $4,200 across 3 invoices." in text

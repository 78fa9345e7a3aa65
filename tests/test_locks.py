"""Tests for per-key asyncio locks."""

import asyncio

from utils.locks import KeyedLocks


class TestKeyedLocks:
    """Test lock sharing and cleanup."""

    def setup_method(self):
        """Set up test fixtures."""
        self.locks = KeyedLocks()

    def test_same_key_shares_lock_while_referenced(self):
        """Test callers on one key get the same lock and other keys do not."""
        async def scenario():
            lock = self.locks("u1", "s1")
            assert self.locks("u1", "s1") is lock
            assert self.locks("u1", "s2") is not lock

        asyncio.run(scenario())

    def test_lock_dropped_when_unused(self):
        """Test the entry disappears after the last holder releases it."""
        async def scenario():
            async with self.locks("u1"):
                assert len(self.locks) == 1
            return len(self.locks)

        assert asyncio.run(scenario()) == 0

    def test_waiters_keep_lock_alive(self):
        """Test a task waiting on a held key serializes behind the holder."""
        order = []

        async def worker(name, delay):
            async with self.locks("u1"):
                order.append(f"{name} start")
                await asyncio.sleep(delay)
                order.append(f"{name} end")

        async def scenario():
            await asyncio.gather(worker("a", 0.02), worker("b", 0))

        asyncio.run(scenario())
        assert order == ["a start", "a end", "b start", "b end"]
        assert len(self.locks) == 0

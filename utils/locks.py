"""Per-key asyncio locks."""

import asyncio
import weakref
from typing import Hashable


class KeyedLocks:
    """
    One asyncio.Lock per key, e.g. per user or per (user, session).

    Entries are weak: a lock disappears once no task holds or waits on
    it, so the map only contains keys with work in flight. Every task
    working on a key gets the same lock for as long as any of them
    references it.
    """

    def __init__(self):
        self._locks: "weakref.WeakValueDictionary[Hashable, asyncio.Lock]" = weakref.WeakValueDictionary()

    def __call__(self, *key: Hashable) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def __len__(self) -> int:
        return len(self._locks)

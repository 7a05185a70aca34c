"""
Per-entity asyncio locks.

Mutations of one declaration are serialised within the process; different
declarations proceed concurrently. Cross-process exclusion is provided by the
conditional updates in the queue service.

A lock lives only while some task holds or waits for it, so the registry does
not grow with the number of declarations ever touched.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Hashable


class EntityLockRegistry:
    """Hands out one asyncio.Lock per entity key."""

    def __init__(self):
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        self._users: Dict[Hashable, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]

    def is_locked(self, key: Hashable) -> bool:
        lock = self._locks.get(key)
        return bool(lock and lock.locked())


declaration_locks = EntityLockRegistry()

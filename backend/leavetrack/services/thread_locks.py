"""
Per-thread mutual exclusion.

Checking a thread (read cursor, fetch, write) and applying a decision to
it must not interleave for the same Gmail thread. Locks are in-process;
the optimistic version column on requests catches writers elsewhere.
"""
import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict


class ThreadLockRegistry:
    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._holders: Dict[str, int] = defaultdict(int)

    @asynccontextmanager
    async def hold(self, thread_id: str) -> AsyncIterator[None]:
        self._holders[thread_id] += 1
        lock = self._locks[thread_id]
        try:
            async with lock:
                yield
        finally:
            self._holders[thread_id] -= 1
            # Drop idle locks
            if self._holders[thread_id] == 0:
                del self._holders[thread_id]
                self._locks.pop(thread_id, None)

    def is_locked(self, thread_id: str) -> bool:
        lock = self._locks.get(thread_id)
        return lock is not None and lock.locked()


thread_locks = ThreadLockRegistry()

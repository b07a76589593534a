"""Per-user serialization of mutating reconciliation operations"""
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict


class RequestGate:
    """Keyed asyncio lock.

    ``async with gate.hold(user_id):`` admits one holder per user id at a time;
    different user ids never wait on each other. The lock entry is created on
    first use and dropped once nobody holds or waits for it. Release happens on
    every exit path, including exceptions and task cancellation.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._refcounts: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, user_id: str) -> AsyncIterator[None]:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = self._locks[user_id] = asyncio.Lock()
        self._refcounts[user_id] = self._refcounts.get(user_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._refcounts[user_id] -= 1
            if self._refcounts[user_id] == 0:
                del self._refcounts[user_id]
                del self._locks[user_id]

    def __len__(self) -> int:
        return len(self._locks)

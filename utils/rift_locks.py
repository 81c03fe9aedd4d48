"""
Per-rift operation locks.

Serializes pay/release/dispute/resolve on the same rift id inside one process.
Cross-process safety comes from the row lock and the version check done
inside the database transaction.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Dict, AsyncGenerator

logger = logging.getLogger(__name__)


class RiftLockRegistry:
    """Hands out one asyncio.Lock per rift id, dropping idle locks"""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, rift_id: str) -> AsyncGenerator[None, None]:
        lock = self._locks.get(rift_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[rift_id] = lock
        self._waiters[rift_id] = self._waiters.get(rift_id, 0) + 1
        try:
            async with lock:
                logger.debug(f"🔒 Rift lock acquired: {rift_id}")
                yield
        finally:
            self._waiters[rift_id] -= 1
            if self._waiters[rift_id] == 0:
                self._waiters.pop(rift_id, None)
                self._locks.pop(rift_id, None)


# Global instance
rift_locks = RiftLockRegistry()

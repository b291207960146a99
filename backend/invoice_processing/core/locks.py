"""
Keyed asyncio locks.

Prompt activation, deletion and invoice ingestion serialize per vendor;
prompt revision serializes per version chain. Locks are process-local, the
database constraints cover multi-process deployments.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict

logger = logging.getLogger(__name__)


class KeyedLocks:
    """Registry of asyncio locks created on demand and dropped when idle."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}

    @asynccontextmanager
    async def acquire(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


def vendor_key(vendor_id) -> str:
    return f"vendor:{vendor_id}"


def chain_key(chain_root_id) -> str:
    return f"chain:{chain_root_id}"

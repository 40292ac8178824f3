"""
Keyed Lock Registry
Per-key asyncio mutexes for deal, user and platform operations.

The mutex is advisory: persistence-level compare-and-set is what serializes
transitions. Entries are reference counted and dropped once no task holds or
waits on them, so the registry only grows with live contention.
"""

import asyncio
import logging
from contextlib import asynccontextmanager, AsyncExitStack
from typing import Dict, Iterable, Optional

from utils.exception_handler import StaleState

logger = logging.getLogger(__name__)


class KeyedLock:
    """Registry of asyncio.Lock objects keyed by string"""

    def __init__(self, max_keys: Optional[int] = None):
        self.max_keys = max_keys
        self._locks: Dict[str, asyncio.Lock] = {}
        self._refcounts: Dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    def _checkout(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            if self.max_keys is not None and len(self._locks) >= self.max_keys:
                logger.warning(f"⚠️ LOCK_REGISTRY_FULL: {len(self._locks)} keys held, rejecting {key}")
                raise StaleState(f"Lock registry saturated, retry {key} later")
            lock = asyncio.Lock()
            self._locks[key] = lock
            self._refcounts[key] = 0
        self._refcounts[key] += 1
        return lock

    def _checkin(self, key: str) -> None:
        self._refcounts[key] -= 1
        if self._refcounts[key] == 0:
            del self._refcounts[key]
            del self._locks[key]

    @asynccontextmanager
    async def acquire(self, key: str):
        lock = self._checkout(key)
        try:
            async with lock:
                yield
        finally:
            self._checkin(key)

    @asynccontextmanager
    async def acquire_many(self, keys: Iterable[str]):
        """Acquire several keys in sorted order to avoid lock-order inversions"""
        async with AsyncExitStack() as stack:
            for key in sorted(set(keys)):
                await stack.enter_async_context(self.acquire(key))
            yield

    def is_locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

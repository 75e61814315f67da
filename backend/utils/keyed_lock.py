"""
Per-key asyncio locks.

Tag operations on one image reference must never interleave (a second pull
landing between "pull" and "restore production tag" would defeat the safety
boundary). Different references proceed in parallel.
"""

import asyncio
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict

logger = logging.getLogger(__name__)


class KeyedLock:
    """Hands out one asyncio.Lock per key, dropping idle locks."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._waiters: Dict[str, int] = defaultdict(int)

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        self._waiters[key] += 1
        lock = self._locks[key]
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] <= 0:
                # Nobody else is queued on this key
                self._waiters.pop(key, None)
                self._locks.pop(key, None)

    def is_locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return bool(lock and lock.locked())

    def __len__(self) -> int:
        return len(self._locks)


# Shared across every update in the process: image tags are engine-global
image_tag_locks = KeyedLock()

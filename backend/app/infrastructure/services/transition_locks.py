"""
Transition Locks

Keyed asyncio locks that keep billing transitions from overlapping.

Mutating transitions claim their key without waiting: if the key is
already held the caller is rejected with TransitionInProgressError.
Read-only syncs wait for the holder to finish instead.

Locks live in process memory. Running several API workers needs sticky
routing per company or a database-level guard on top of this.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from app.infrastructure.exceptions import TransitionInProgressError

logger = logging.getLogger(__name__)


class TransitionLockRegistry:
    """Registry of one asyncio.Lock per subscription (or company) key."""

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def _release(self, key: str) -> None:
        self._locks[key].release()
        if self._waiters.get(key, 0) == 0 and not self._locks[key].locked():
            # Nobody queued: drop the lock so the registry does not grow unbounded
            del self._locks[key]
            self._waiters.pop(key, None)

    def is_locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def exclusive(self, key: str) -> AsyncIterator[None]:
        """
        Hold ``key`` for a mutating transition.

        Raises:
            TransitionInProgressError: another transition holds the key
        """
        lock = self._lock_for(key)
        if lock.locked():
            logger.info(f"Rejected concurrent transition for {key}")
            raise TransitionInProgressError(key)

        await lock.acquire()
        try:
            yield
        finally:
            self._release(key)

    @asynccontextmanager
    async def queued(self, key: str) -> AsyncIterator[None]:
        """Hold ``key`` after any in-flight transition has settled."""
        lock = self._lock_for(key)
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            await lock.acquire()
        finally:
            self._waiters[key] -= 1
        try:
            yield
        finally:
            self._release(key)


# =============================================================================
# Singleton Instance
# =============================================================================

_registry_instance: Optional[TransitionLockRegistry] = None


def get_transition_locks() -> TransitionLockRegistry:
    """Process-wide lock registry."""
    global _registry_instance

    if _registry_instance is None:
        _registry_instance = TransitionLockRegistry()

    return _registry_instance

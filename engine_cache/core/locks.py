"""
Per-version serialization points for install and eviction.
"""

import asyncio
from collections import OrderedDict


class VersionLocks:
    """
    Hands out one asyncio.Lock per engine version.

    The registry is bounded: once it grows past ``max_locks`` the least recently
    requested locks are dropped, skipping any that are held or awaited.
    """

    def __init__(self, max_locks: int = 256):
        self._locks: OrderedDict[str, asyncio.Lock] = OrderedDict()
        self._max_locks = max_locks

    def get(self, version: str) -> asyncio.Lock:
        """Gets or creates the lock for a given version."""
        lock = self._locks.get(version)
        if lock is not None:
            self._locks.move_to_end(version)
            return lock

        lock = asyncio.Lock()
        self._locks[version] = lock
        self._evict_idle(keep=version)
        return lock

    def is_locked(self, version: str) -> bool:
        lock = self._locks.get(version)
        return lock is not None and lock.locked()

    def _evict_idle(self, keep: str) -> None:
        excess = len(self._locks) - self._max_locks
        if excess <= 0:
            return
        for version in list(self._locks):
            if excess <= 0:
                break
            if version == keep:
                continue
            lock = self._locks[version]
            # A lock someone holds or waits on must stay the single lock for its version.
            if lock.locked() or getattr(lock, "_waiters", None):
                continue
            del self._locks[version]
            excess -= 1

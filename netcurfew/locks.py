"""Per-key asyncio locks."""

import asyncio


class KeyedLocks:
    """Hands out one asyncio.Lock per key (MAC address).

    Locks are created on first use and kept for the life of the process;
    the managed set is small.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

"""Per-key exclusivity.

KeyedLock hands out one asyncio.Lock per key (a fingerprint or an incident
id) so writers to the same record serialize while writers to different
records run freely. There is no lock spanning the whole pipeline.

Locks are reference-counted and dropped once nobody holds or waits on them,
so the map does not grow with every fingerprint ever seen.
"""

import asyncio
from contextlib import asynccontextmanager


class KeyedLock:
    """A map of key -> asyncio.Lock with automatic cleanup.

    Example:
        locks = KeyedLock()
        async with locks.hold(fingerprint):
            ...  # exclusive for this fingerprint only
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)

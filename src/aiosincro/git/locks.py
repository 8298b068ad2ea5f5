"""Per-path mutual exclusion for version stores.

Every operation that touches a store runs while holding the lock for that
store's path.  Callers for the same path queue in FIFO order (``asyncio.Lock``
wakes waiters in arrival order); callers for different paths never block each
other.  Locks are created lazily and dropped once nobody holds or waits on
them.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from pathlib import Path
from typing import TypeVar

T = TypeVar("T")


def _key(path: str | Path) -> str:
    return os.path.normcase(os.path.abspath(os.fspath(path)))


class StoreLocks:
    """A map from path key to an ``asyncio.Lock``.

    Not re-entrant: a task holding a path's lock that asks for it again will
    wait forever.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    def is_locked(self, path: str | Path) -> bool:
        lock = self._locks.get(_key(path))
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, path: str | Path) -> AsyncIterator[None]:
        key = _key(path)
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]

    async def run(self, path: str | Path, fn: Callable[[], Awaitable[T]]) -> T:
        """Await ``fn()`` while holding the lock for *path*."""
        async with self.hold(path):
            return await fn()

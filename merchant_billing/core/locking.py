"""Per-key serialization for subscription read-modify-write cycles.

In-process only. Cross-process ordering relies on the optimistic
``version`` check performed by the subscription repository.
"""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager


class _KeyedEntry:
    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.owner: asyncio.Task | None = None
        self.depth = 0
        self.waiters = 0


class KeyedLock:
    """Re-entrant asyncio lock registry keyed by an identifier.

    The same task may re-acquire a key it already holds, so a service method
    that holds a subscription's lock can call another locked method on the
    same subscription.
    """

    def __init__(self) -> None:
        self._entries: dict[str, _KeyedEntry] = {}

    @asynccontextmanager
    async def acquire(self, key: str) -> AsyncIterator[None]:
        """Hold the lock for ``key`` for the duration of the block."""
        task = asyncio.current_task()
        entry = self._entries.get(key)
        if entry is None:
            entry = self._entries[key] = _KeyedEntry()

        if entry.owner is task and task is not None:
            entry.depth += 1
            try:
                yield
            finally:
                entry.depth -= 1
            return

        entry.waiters += 1
        try:
            await entry.lock.acquire()
        finally:
            entry.waiters -= 1
        entry.owner = task
        entry.depth = 1
        try:
            yield
        finally:
            entry.depth = 0
            entry.owner = None
            entry.lock.release()
            if entry.waiters == 0 and self._entries.get(key) is entry:
                del self._entries[key]

    def is_locked(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry.lock.locked()


# Global registry
subscription_locks = KeyedLock()

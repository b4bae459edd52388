from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager, nullcontext
from typing import AsyncIterator


class EntityLocks:
    """Keyed asyncio locks: at most one in-flight mutation per (kind, entity id).

    Entries are dropped once no task holds or waits on them, so the registry
    only grows with the number of entities being mutated concurrently.
    """

    def __init__(self) -> None:
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}
        self._waiters: dict[tuple[str, str], int] = {}

    @asynccontextmanager
    async def hold(self, kind: str, entity_id: str) -> AsyncIterator[None]:
        key = (kind, str(entity_id))
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._waiters[key] - 1
            if remaining:
                self._waiters[key] = remaining
            else:
                self._waiters.pop(key, None)
                self._locks.pop(key, None)

    def in_use(self) -> int:
        return len(self._locks)


def hold(locks: EntityLocks | None, kind: str, entity_id: str):
    if locks is None:
        return nullcontext()
    return locks.hold(kind, entity_id)

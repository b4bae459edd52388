from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 100


class ThreadEventHub:
    """In-process fan-out of "message appended" events, keyed by thread."""

    def __init__(self, queue_size: int = DEFAULT_QUEUE_SIZE) -> None:
        self.queue_size = queue_size
        self._subscribers: dict[str, set[asyncio.Queue]] = {}

    @asynccontextmanager
    async def subscribe(self, thread_key: str) -> AsyncIterator[asyncio.Queue]:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self._subscribers.setdefault(thread_key, set()).add(queue)
        try:
            yield queue
        finally:
            subscribers = self._subscribers.get(thread_key)
            if subscribers is not None:
                subscribers.discard(queue)
                if not subscribers:
                    self._subscribers.pop(thread_key, None)

    def publish(self, thread_key: str, event: dict[str, Any]) -> int:
        delivered = 0
        for queue in list(self._subscribers.get(thread_key, ())):
            try:
                queue.put_nowait(event)
                delivered += 1
            except asyncio.QueueFull:
                logger.warning(
                    "thread_event_dropped",
                    extra={"extra": {"thread_key": thread_key, "reason": "queue_full"}},
                )
        return delivered

    def subscriber_count(self, thread_key: str) -> int:
        return len(self._subscribers.get(thread_key, ()))

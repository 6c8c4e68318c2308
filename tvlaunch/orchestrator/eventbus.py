from __future__ import annotations
import asyncio
import contextlib
import logging
from typing import Any, AsyncIterator, Dict, List

log = logging.getLogger(__name__)

Event = Dict[str, Any]

class EventBus:
    """Fan-out of detector events ({"type": ..., "data": ...}) to any number of readers."""

    def __init__(self) -> None:
        self._subscribers: List[asyncio.Queue] = []
        self._lock = asyncio.Lock()
        self.published = 0

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def publish(self, event: Event) -> None:
        # Never blocks the detector: a slow reader loses its oldest event.
        async with self._lock:
            self.published += 1
            for q in list(self._subscribers):
                if q.full():
                    with contextlib.suppress(asyncio.QueueEmpty):
                        q.get_nowait()
                    log.debug("subscriber queue full, dropped oldest event")
                q.put_nowait(event)

    async def subscribe(self, maxsize: int = 100) -> AsyncIterator[Event]:
        q: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        async with self._lock:
            self._subscribers.append(q)
        try:
            while True:
                yield await q.get()
        finally:
            async with self._lock:
                with contextlib.suppress(ValueError):
                    self._subscribers.remove(q)

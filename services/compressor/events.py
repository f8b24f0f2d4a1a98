from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import List, Set

from .schemas import CycleEvent

logger = logging.getLogger(__name__)


class EventStream:
    """Fan-out of pipeline events to subscriber queues, plus a bounded history."""

    def __init__(self, history_size: int = 200, queue_size: int = 1000):
        self.history: deque = deque(maxlen=history_size)
        self.queue_size = queue_size
        self._subscribers: Set[asyncio.Queue] = set()

    def publish(self, event: CycleEvent) -> None:
        self.history.append(event)
        for q in list(self._subscribers):
            try:
                q.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning("Dropping event for a slow subscriber")

    def subscribe(self) -> asyncio.Queue:
        q: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self._subscribers.add(q)
        return q

    def unsubscribe(self, q: asyncio.Queue) -> None:
        self._subscribers.discard(q)

    def recent(self, limit: int = 50) -> List[CycleEvent]:
        if limit <= 0:
            return []
        return list(self.history)[-limit:]

"""
Bounded, ordered event channels.

Each category (movement alerts, arbitrage opportunities, pool notifications)
gets its own channel with a single consumer, so items come out in exactly the
order they were published.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Generic, List, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_CHANNEL_SIZE = 1000


@dataclass
class PoolEvent:
    """Identity-pool notification (session_blocked, session_reset, no_capacity)."""
    kind: str
    source_id: str
    session_id: str = ""
    reason: str = ""
    created_at: datetime = field(default_factory=datetime.utcnow)


class EventChannel(Generic[T]):
    """
    A bounded FIFO with drop-oldest overflow.

    Publishing never blocks the pipeline: when the queue is full the oldest
    item is discarded and the drop is logged.
    """

    def __init__(self, name: str, maxsize: int = DEFAULT_CHANNEL_SIZE):
        self.name = name
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._published = 0
        self._dropped = 0

    def publish(self, item: T) -> None:
        if self._queue.full():
            try:
                self._queue.get_nowait()
                self._dropped += 1
                logger.warning(f"[{self.name}] Channel full, dropped oldest event")
            except asyncio.QueueEmpty:
                pass
        self._queue.put_nowait(item)
        self._published += 1

    async def get(self) -> T:
        return await self._queue.get()

    def drain(self) -> List[T]:
        """Pop everything currently queued, oldest first."""
        items: List[T] = []
        while True:
            try:
                items.append(self._queue.get_nowait())
            except asyncio.QueueEmpty:
                return items

    def __len__(self) -> int:
        return self._queue.qsize()

    def get_stats(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "pending": self._queue.qsize(),
            "published": self._published,
            "dropped": self._dropped,
        }

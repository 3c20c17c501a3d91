"""Fan-out event bus for engine events.

The coordinator publishes from both coroutines and plain engine callbacks,
so publishing never awaits: every subscriber owns a bounded queue and an
event that does not fit is dropped for that subscriber only.
"""

import asyncio
import logging
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

QUEUE_LIMIT = 256

E = TypeVar("E")


class EventBus(Generic[E]):
    """Delivers each published event to one ``asyncio.Queue`` per subscriber."""

    def __init__(self, maxsize: int = QUEUE_LIMIT) -> None:
        self._queues: list[asyncio.Queue[E]] = []
        self._queue_limit = maxsize

    def publish(self, event: E) -> int:
        """Queue *event* for every subscriber; returns how many accepted it."""
        accepted = 0
        for queue in tuple(self._queues):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(
                    "Slow subscriber — %s not delivered",
                    getattr(event, "type", type(event).__name__),
                )
                continue
            accepted += 1
        return accepted

    def subscribe(self) -> asyncio.Queue[E]:
        queue: asyncio.Queue[E] = asyncio.Queue(maxsize=self._queue_limit)
        self._queues.append(queue)
        logger.debug("Subscriber joined (%d listening)", len(self._queues))
        return queue

    def unsubscribe(self, queue: asyncio.Queue[E]) -> None:
        """Drop *queue*; unknown queues are ignored."""
        if queue not in self._queues:
            return
        self._queues.remove(queue)
        logger.debug("Subscriber left (%d listening)", len(self._queues))

    @property
    def subscriber_count(self) -> int:
        return len(self._queues)

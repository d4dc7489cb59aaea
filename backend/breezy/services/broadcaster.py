"""In-process fan-out of domain events to live dashboard listeners."""
import asyncio
import logging
from typing import Dict, Set

from ..schemas.pydantic_schemas import DomainEvent

logger = logging.getLogger(__name__)


class EventBroadcaster:
    """Publishes events to every queue subscribed under the owning business id.

    Delivery is at-most-once: a listener whose queue is full misses the event.
    The ledger, not this stream, is the source of truth.
    """

    def __init__(self, queue_size: int = 100) -> None:
        self.queue_size = queue_size
        self._subscribers: Dict[str, Set[asyncio.Queue]] = {}

    def subscribe(self, business_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self._subscribers.setdefault(business_id, set()).add(queue)
        logger.debug(f"Listener subscribed to business {business_id}")
        return queue

    def unsubscribe(self, business_id: str, queue: asyncio.Queue) -> None:
        queues = self._subscribers.get(business_id)
        if not queues:
            return
        queues.discard(queue)
        if not queues:
            del self._subscribers[business_id]

    def listener_count(self, business_id: str) -> int:
        return len(self._subscribers.get(business_id, ()))

    def publish(self, event: DomainEvent) -> int:
        """Deliver to current listeners; returns how many received it."""
        delivered = 0
        for queue in list(self._subscribers.get(event.business_id, ())):
            try:
                queue.put_nowait(event)
                delivered += 1
            except asyncio.QueueFull:
                logger.warning(f"Dropped {event.type.value} event for a slow listener of business {event.business_id}")
        return delivered

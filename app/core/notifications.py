import asyncio
import logging
from collections import defaultdict
from dataclasses import asdict, dataclass
from typing import Dict, Set

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RequestEvent:
    """Lightweight notice that a request changed state."""

    request_id: int
    status: str
    user_id: int

    def to_dict(self) -> dict:
        return asdict(self)


class NotificationHub:
    """
    In-process fan-out of request events to connected users.

    Each websocket subscriber gets its own bounded queue. Publishing never
    blocks: a full queue drops the event for that subscriber only.
    """

    def __init__(self, max_queue_size: int = 100):
        self.max_queue_size = max_queue_size
        self._subscribers: Dict[int, Set[asyncio.Queue]] = defaultdict(set)

    def subscribe(self, user_id: int) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.max_queue_size)
        self._subscribers[user_id].add(queue)
        return queue

    def unsubscribe(self, user_id: int, queue: asyncio.Queue):
        queues = self._subscribers.get(user_id)
        if not queues:
            return
        queues.discard(queue)
        if not queues:
            del self._subscribers[user_id]

    def subscriber_count(self, user_id: int) -> int:
        return len(self._subscribers.get(user_id, ()))

    def publish(self, event: RequestEvent) -> int:
        """Deliver event to every subscriber of event.user_id. Returns deliveries."""
        delivered = 0
        for queue in list(self._subscribers.get(event.user_id, ())):
            try:
                queue.put_nowait(event)
                delivered += 1
            except asyncio.QueueFull:
                logger.warning(
                    f"Dropped event for request {event.request_id}: user {event.user_id} queue is full"
                )
        return delivered


hub = NotificationHub()


# FastAPI dependency, overridden in tests
def get_notifier() -> NotificationHub:
    return hub

"""
Push-based change notification.

The storage service publishes one Change per write; HTTP clients follow them
over server-sent events instead of reloading everything on a timer.
Publishing happens from worker threads, delivery on each subscriber's loop.
"""
import asyncio
import json
import logging
import threading
from typing import AsyncIterator, Dict, Optional

from pydantic import BaseModel, Field

from schemas import utcnow

logger = logging.getLogger(__name__)


class Change(BaseModel):
    collection: str
    action: str
    id: Optional[str] = None
    event_id: Optional[str] = None
    at: str = Field(default_factory=lambda: utcnow().isoformat())


class ChangeFeed:
    def __init__(self, queue_size: int = 100):
        self.queue_size = queue_size
        self._subscribers: Dict[asyncio.Queue, asyncio.AbstractEventLoop] = {}
        self._lock = threading.Lock()

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        with self._lock:
            self._subscribers[queue] = asyncio.get_running_loop()
        return queue

    def unsubscribe(self, queue: asyncio.Queue):
        with self._lock:
            self._subscribers.pop(queue, None)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, collection: str, action: str, doc_id: Optional[str] = None, event_id: Optional[str] = None):
        change = Change(collection=collection, action=action, id=doc_id, event_id=event_id)
        with self._lock:
            subscribers = list(self._subscribers.items())
        for queue, loop in subscribers:
            try:
                loop.call_soon_threadsafe(self._deliver, queue, change)
            except RuntimeError:
                # loop already closed
                self.unsubscribe(queue)

    @staticmethod
    def _deliver(queue: asyncio.Queue, change: Change):
        try:
            queue.put_nowait(change)
        except asyncio.QueueFull:
            logger.warning(f"Dropping change for slow subscriber: {change.collection}/{change.action}")

    async def stream(self) -> AsyncIterator[str]:
        queue = self.subscribe()
        try:
            yield "retry: 5000\n\n"
            while True:
                change = await queue.get()
                yield f"event: change\ndata: {json.dumps(change.model_dump())}\n\n"
        finally:
            self.unsubscribe(queue)

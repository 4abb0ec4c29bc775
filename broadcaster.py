"""Fan-out of queue events to real-time viewers.

Every subscriber owns a bounded asyncio queue bound to the event loop it
subscribed from.  ``publish`` may be called from any thread: it hands each
event to the subscriber's loop with ``call_soon_threadsafe`` and returns
immediately.  When a subscriber's queue is full the event is dropped for that
subscriber only.  Events for one service point reach each subscriber in the
order ``publish`` was called.
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
from typing import Dict, Optional, Set

import redis

import config
from schemas import QueueEvent

logger = logging.getLogger(__name__)


class Subscription:
    def __init__(self, broadcaster: "EventBroadcaster", service_point_id: str,
                 maxsize: int, loop: asyncio.AbstractEventLoop) -> None:
        self.broadcaster = broadcaster
        self.service_point_id = service_point_id
        self.loop = loop
        self.queue: "asyncio.Queue[QueueEvent]" = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0
        self.closed = False

    def deliver(self, event: QueueEvent) -> bool:
        """Schedule ``event`` on the subscriber's loop; never waits."""
        try:
            self.loop.call_soon_threadsafe(self._offer, event)
        except RuntimeError:
            # loop already closed: the viewer is gone
            return False
        return True

    def _offer(self, event: QueueEvent) -> None:
        if self.closed:
            return
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(
                "Dropped %s for slow subscriber on %s (%d dropped so far)",
                event.type.value, self.service_point_id, self.dropped,
            )

    async def get(self, timeout: Optional[float] = None) -> QueueEvent:
        if timeout is None:
            return await self.queue.get()
        return await asyncio.wait_for(self.queue.get(), timeout)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.broadcaster._remove(self)
        while not self.queue.empty():
            self.queue.get_nowait()

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> QueueEvent:
        if self.closed:
            raise StopAsyncIteration
        return await self.get()

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.close()


class RedisRelay:
    """Mirror envelopes onto Redis channels for viewers in other processes."""

    def __init__(self, url: str, channel_prefix: str = "queue") -> None:
        self.url = url
        self.channel_prefix = channel_prefix
        self._client: Optional[redis.Redis] = None

    def get_client(self) -> redis.Redis:
        if self._client is None:
            self._client = redis.from_url(self.url, decode_responses=True)
        return self._client

    def publish(self, service_point_id: str, message: str) -> None:
        try:
            self.get_client().publish(f"{self.channel_prefix}:{service_point_id}", message)
        except redis.RedisError:
            logger.exception("Redis relay failed for %s", service_point_id)


class EventBroadcaster:
    def __init__(self, queue_size: int = config.SUBSCRIBER_QUEUE_SIZE,
                 relay: Optional[RedisRelay] = None) -> None:
        self.queue_size = queue_size
        self.relay = relay
        self._subscribers: Dict[str, Set[Subscription]] = {}
        self._lock = threading.Lock()

    def subscribe(self, service_point_id: str) -> Subscription:
        """Register a viewer; must be called from the viewer's event loop."""
        sub = Subscription(self, service_point_id, self.queue_size, asyncio.get_running_loop())
        with self._lock:
            self._subscribers.setdefault(service_point_id, set()).add(sub)
        logger.info("Subscriber added on %s", service_point_id)
        return sub

    def _remove(self, sub: Subscription) -> None:
        with self._lock:
            subs = self._subscribers.get(sub.service_point_id)
            if subs is not None:
                subs.discard(sub)
                if not subs:
                    del self._subscribers[sub.service_point_id]
        logger.info("Subscriber removed from %s", sub.service_point_id)

    def subscriber_count(self, service_point_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(service_point_id, ()))

    def publish(self, service_point_id: str, event: QueueEvent) -> int:
        """Queue ``event`` for every subscriber of ``service_point_id``.

        Returns the number of subscribers it was handed to.
        """
        gone = []
        delivered = 0
        with self._lock:
            for sub in list(self._subscribers.get(service_point_id, ())):
                if sub.deliver(event):
                    delivered += 1
                else:
                    gone.append(sub)
        for sub in gone:
            logger.warning("Subscriber loop closed on %s; dropping it", service_point_id)
            sub.closed = True
            self._remove(sub)
        if self.relay is not None:
            self.relay.publish(service_point_id, event.to_json())
        logger.debug("Published %s to %d subscribers on %s", event.type.value, delivered, service_point_id)
        return delivered


def format_sse(event: QueueEvent) -> str:
    return f"event: {event.type.value}\ndata: {event.to_json()}\n\n"


def format_heartbeat() -> str:
    return f"data: {json.dumps({'type': 'heartbeat'})}\n\n"

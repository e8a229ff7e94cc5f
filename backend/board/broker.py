"""
Event Fan-out Bus
=================

In-process publish/subscribe for live updates.

- Subscriptions are keyed by event kind only. Every subscriber of a kind
  gets every payload of that kind; filtering by post/comment is up to the
  client.
- Mutations run in worker threads (sync DRF views), subscribers are async
  streams on the ASGI event loop. publish() hands payloads to each
  subscriber's loop with call_soon_threadsafe while holding the broker
  lock, so a single subscriber always sees payloads in publish order.
- Fire-and-forget: nothing is replayed to late subscribers and a
  subscriber whose loop is gone is dropped.

One broker per process, created in BoardConfig.ready().
"""

import asyncio
import logging
import re
import threading
from enum import Enum
from typing import Any, Dict, List, Optional, Set

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    POST_CREATED = 'PostCreated'
    POST_UPDATED = 'PostUpdated'
    POST_DELETED = 'PostDeleted'
    POST_LIKED = 'PostLiked'
    COMMENT_CREATED = 'CommentCreated'
    COMMENT_UPDATED = 'CommentUpdated'
    COMMENT_DELETED = 'CommentDeleted'
    COMMENT_LIKED = 'CommentLiked'

    @property
    def slug(self) -> str:
        # PostCreated -> post-created
        return re.sub(r'(?<!^)(?=[A-Z])', '-', self.value).lower()

    @classmethod
    def from_slug(cls, slug: str) -> 'EventKind':
        for kind in cls:
            if kind.slug == slug:
                return kind
        raise ValueError(f"Unknown event kind: {slug}")


_CLOSED = object()


class Subscription:
    """
    One subscriber's view of an event kind.

    Async iterator over payloads published after it was created. The
    queue is unbounded; the transport is the only backpressure.
    """

    def __init__(self, broker: 'EventBroker', kind: EventKind, loop: asyncio.AbstractEventLoop):
        self.kind = kind
        self.closed = False
        self._broker = broker
        self._loop = loop
        self._queue: asyncio.Queue = asyncio.Queue()

    def _deliver(self, item: Any) -> None:
        self._loop.call_soon_threadsafe(self._queue.put_nowait, item)

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self.closed and self._queue.empty():
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item

    async def next(self, timeout: Optional[float] = None):
        """Wait for the next payload; asyncio.TimeoutError after `timeout`."""
        return await asyncio.wait_for(self.__anext__(), timeout)

    def drain(self) -> List[Any]:
        """Payloads already delivered to this subscriber, without waiting."""
        items = []
        while True:
            try:
                item = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return items
            if item is _CLOSED:
                return items
            items.append(item)

    def close(self) -> None:
        if self.closed:
            return
        self._broker.unsubscribe(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()


class EventBroker:
    """Registry of live subscriptions, by event kind."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscriptions: Dict[EventKind, Set[Subscription]] = {}

    def subscribe(self, kind: EventKind, loop: Optional[asyncio.AbstractEventLoop] = None) -> Subscription:
        """
        Register a subscriber for `kind`.

        Without `loop` this must be called from a running event loop;
        payloads are delivered on that loop.
        """
        kind = EventKind(kind)
        subscription = Subscription(self, kind, loop or asyncio.get_running_loop())
        with self._lock:
            self._subscriptions.setdefault(kind, set()).add(subscription)
        logger.debug(f"Subscribed to {kind.value} ({self.subscriber_count(kind)} active)")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            self._discard(subscription)
            try:
                subscription._deliver(_CLOSED)
            except RuntimeError:
                # Loop already closed, nobody is waiting
                pass

    def _discard(self, subscription: Subscription) -> None:
        subscription.closed = True
        subscriptions = self._subscriptions.get(subscription.kind)
        if not subscriptions:
            return
        subscriptions.discard(subscription)
        if not subscriptions:
            self._subscriptions.pop(subscription.kind, None)

    def publish(self, kind: EventKind, payload: Any) -> int:
        """
        Deliver `payload` to every current subscriber of `kind`.

        Returns the number of subscribers it was handed to.
        """
        kind = EventKind(kind)
        delivered = 0
        with self._lock:
            for subscription in list(self._subscriptions.get(kind, ())):
                try:
                    subscription._deliver(payload)
                    delivered += 1
                except RuntimeError:
                    logger.warning(f"Dropping {kind.value} subscriber: event loop is closed")
                    self._discard(subscription)
        logger.debug(f"Published {kind.value} to {delivered} subscriber(s)")
        return delivered

    def subscriber_count(self, kind: EventKind) -> int:
        with self._lock:
            return len(self._subscriptions.get(EventKind(kind), ()))

"""Message broadcast channel for the shared chat room.

Publishing writes the message to the relational store first and only then
fans it out. Each subscriber owns a bounded queue; a subscriber that falls
behind is dropped instead of slowing publishers down, and must resync through
the history read.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional

from prometheus_client import Counter, Gauge

from . import services
from .config import settings
from .errors import DependencyFailure, ValidationError

logger = logging.getLogger(__name__)

MESSAGES_PUBLISHED = Counter(
    "chat_messages_published_total", "Total chat messages durably published"
)
SUBSCRIPTIONS_DROPPED = Counter(
    "hub_subscriptions_dropped_total",
    "Subscriptions closed because their buffer overflowed",
    ["stream"],
)
ACTIVE_SUBSCRIPTIONS = Gauge(
    "hub_subscriptions_active", "Currently open subscriptions", ["stream"]
)

_CLOSED = object()


@dataclass(frozen=True)
class ChatMessage:
    """Copy of a committed message as carried by the channel."""

    id: int
    user_id: str
    content: str
    created_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "content": self.content,
            "created_at": self.created_at.isoformat(),
        }


class Subscription:
    """A bounded, cancellable stream of items from a ``Broadcaster``."""

    def __init__(self, broadcaster: "Broadcaster", sub_id: int, depth: int):
        self._broadcaster = broadcaster
        self.id = sub_id
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=depth + 1)
        self._depth = depth
        self.closed = False
        self.close_reason: Optional[str] = None

    def _offer(self, item: Any) -> bool:
        """Enqueue without blocking; returns False when the buffer is full."""
        if self.closed:
            return True
        if self._queue.qsize() >= self._depth:
            return False
        self._queue.put_nowait(item)
        return True

    def close(self, reason: str = "unsubscribed") -> None:
        if self.closed:
            return
        self.closed = True
        self.close_reason = reason
        self._broadcaster._remove(self)
        # One slot is always reserved for the end-of-stream marker.
        self._queue.put_nowait(_CLOSED)

    @property
    def overflowed(self) -> bool:
        return self.close_reason == "overflow"

    def __aiter__(self) -> AsyncIterator[Any]:
        return self

    async def __anext__(self) -> Any:
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item


class Broadcaster:
    """Fan-out of items to every open subscription in dispatch order."""

    def __init__(self, name: str, depth: Optional[int] = None):
        self.name = name
        self.depth = depth or settings.subscriber_queue_depth
        self._subs: Dict[int, Subscription] = {}
        self._ids = itertools.count(1)

    def subscribe(self) -> Subscription:
        sub = Subscription(self, next(self._ids), self.depth)
        self._subs[sub.id] = sub
        ACTIVE_SUBSCRIPTIONS.labels(stream=self.name).inc()
        return sub

    def _remove(self, sub: Subscription) -> None:
        if self._subs.pop(sub.id, None) is not None:
            ACTIVE_SUBSCRIPTIONS.labels(stream=self.name).dec()

    def dispatch(self, item: Any) -> int:
        """Hand ``item`` to every subscriber without waiting on any of them.

        Returns the number of subscribers that received it.
        """
        delivered = 0
        for sub in list(self._subs.values()):
            if sub._offer(item):
                delivered += 1
                continue
            logger.warning(
                "dropping slow subscriber %s on %s stream", sub.id, self.name
            )
            SUBSCRIPTIONS_DROPPED.labels(stream=self.name).inc()
            sub.close("overflow")
        return delivered

    @property
    def subscriber_count(self) -> int:
        return len(self._subs)

    def close_all(self) -> None:
        for sub in list(self._subs.values()):
            sub.close("shutdown")


class MessageChannel:
    """Publish/subscribe bus for the single chat room."""

    def __init__(self, depth: Optional[int] = None, timeout: Optional[float] = None):
        self._broadcaster = Broadcaster("messages", depth)
        self._publish_lock = asyncio.Lock()
        self._timeout = timeout or settings.store_timeout_seconds

    async def publish(self, user_id: str, content: str) -> ChatMessage:
        """Durably store a message and fan it out to all subscribers.

        The publish lock spans the store write and the dispatch, so every
        subscriber sees messages in commit order. Nothing is broadcast when
        the write fails.
        """
        if content is not None and not isinstance(content, str):
            raise ValidationError("Message content must be text")
        text = (content or "").strip()
        if not text:
            raise ValidationError("Message content must not be empty")
        if not user_id:
            raise ValidationError("Message requires an author")

        async with self._publish_lock:
            try:
                row = await asyncio.wait_for(
                    asyncio.to_thread(services.insert_message, user_id, text),
                    timeout=self._timeout,
                )
            except asyncio.TimeoutError as exc:
                logger.error("message store timed out for user=%s", user_id)
                raise DependencyFailure("Message store timed out") from exc
            message = ChatMessage(
                id=row.id, user_id=row.user_id, content=row.content, created_at=row.created_at
            )
            MESSAGES_PUBLISHED.inc()
            delivered = self._broadcaster.dispatch(message)
        logger.debug("message id=%s dispatched to %d subscribers", message.id, delivered)
        return message

    def subscribe(self) -> Subscription:
        """Open a live stream of messages published from now on."""
        return self._broadcaster.subscribe()

    async def history(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Bounded point-in-time read of the most recent messages."""
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(services.recent_messages, limit or settings.history_limit),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as exc:
            raise DependencyFailure("Message store timed out") from exc

    @property
    def subscriber_count(self) -> int:
        return self._broadcaster.subscriber_count

    def close(self) -> None:
        self._broadcaster.close_all()

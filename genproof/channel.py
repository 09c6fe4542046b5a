"""
Notification channel shared by the worker pool and the event reconciler.

Publishers call ``publish(topic, event, payload)``; subscribers obtain a
``Subscription`` (optionally filtered by topic) and iterate it. Each
subscription buffers at most ``maxsize`` messages; when full, the oldest
message is dropped so a slow subscriber never blocks a publisher.

Closing a subscription or the whole channel ends iteration.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import structlog

logger = structlog.get_logger()

# Event names
PROGRESS = "job.progress"
JOB_FAILED = "job.failed"
JOB_COMPLETED = "job.completed"
VERIFICATION_COMPLETE = "ledger.verification_complete"
ACCESS_GRANTED = "ledger.access_granted"
ACCESS_REVOKED = "ledger.access_revoked"
ARTIFACT_SUBMITTED = "ledger.artifact_submitted"


@dataclass
class ChannelMessage:
    """A single message delivered to subscribers."""

    topic: str
    event: str
    payload: Dict[str, Any]
    published_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )


_CLOSED = object()


class Subscription:
    """Bounded, drop-oldest buffer of channel messages."""

    def __init__(self, channel: "NotificationChannel", topic: Optional[str], maxsize: int):
        self._channel = channel
        self.topic = topic
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0
        self.closed = False

    def matches(self, topic: str) -> bool:
        return self.topic is None or self.topic == topic

    def _offer(self, item: Any) -> None:
        if self.closed:
            return
        while True:
            try:
                self._queue.put_nowait(item)
                return
            except asyncio.QueueFull:
                try:
                    self._queue.get_nowait()
                    self.dropped += 1
                except asyncio.QueueEmpty:
                    pass

    async def get(self, timeout: Optional[float] = None) -> Optional[ChannelMessage]:
        """Next message, or None once closed (or on timeout)."""
        if self.closed and self._queue.empty():
            return None
        try:
            if timeout is None:
                item = await self._queue.get()
            else:
                item = await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None
        if item is _CLOSED:
            self.closed = True
            return None
        return item

    def drain(self) -> List[ChannelMessage]:
        """Return every buffered message without waiting."""
        messages = []
        while True:
            try:
                item = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return messages
            if item is _CLOSED:
                self.closed = True
                return messages
            messages.append(item)

    def close(self) -> None:
        if self.closed:
            return
        self._channel._unsubscribe(self)
        self._offer(_CLOSED)
        self.closed = True

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> ChannelMessage:
        message = await self.get()
        if message is None:
            raise StopAsyncIteration
        return message


class NotificationChannel:
    """In-process topic channel with explicit close semantics."""

    def __init__(self, default_maxsize: int = 256):
        self.default_maxsize = default_maxsize
        self._subscriptions: List[Subscription] = []
        self.closed = False

    def subscribe(
        self, topic: Optional[str] = None, maxsize: Optional[int] = None
    ) -> Subscription:
        """Subscribe to one topic, or to every topic when topic is None."""
        if self.closed:
            raise RuntimeError("channel is closed")
        subscription = Subscription(self, topic, maxsize or self.default_maxsize)
        self._subscriptions.append(subscription)
        return subscription

    def publish(self, topic: str, event: str, payload: Dict[str, Any]) -> int:
        """Deliver to matching subscribers. Returns the number reached.

        Never raises: a failing delivery is logged and skipped.
        """
        if self.closed:
            logger.debug("channel_publish_after_close", topic=topic, channel_event=event)
            return 0
        message = ChannelMessage(topic=topic, event=event, payload=payload)
        delivered = 0
        for subscription in list(self._subscriptions):
            if not subscription.matches(topic):
                continue
            try:
                subscription._offer(message)
                delivered += 1
            except Exception as e:
                logger.error(
                    "channel_delivery_failed", topic=topic, event=event, error=str(e)
                )
        return delivered

    def _unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def close(self) -> None:
        """Close every subscription and refuse further publishes."""
        if self.closed:
            return
        self.closed = True
        for subscription in list(self._subscriptions):
            subscription.close()
        self._subscriptions.clear()

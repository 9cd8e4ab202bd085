"""
Snapshot publisher for Argus subscribers.

Each subscriber (usually one dashboard WebSocket) owns a bounded queue.
publish() only ever enqueues: it never awaits a subscriber, and a subscriber
whose queue is full is dropped instead of slowing everyone else down.
"""
import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Dict, Optional

from argus.models import Snapshot

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 16


class Subscription:
    """One subscriber's mailbox. A None item means the subscription was closed."""

    def __init__(self, subscription_id: str, queue_size: int):
        self.id = subscription_id
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self.closed = False
        self.created_at = datetime.now(timezone.utc)

    def offer(self, message: dict) -> bool:
        """Enqueue without waiting. Returns False if the subscriber is closed or full."""
        if self.closed:
            return False
        try:
            self.queue.put_nowait(message)
            return True
        except asyncio.QueueFull:
            return False

    def close(self):
        if self.closed:
            return
        self.closed = True
        try:
            self.queue.put_nowait(None)
        except asyncio.QueueFull:
            pass

    async def next_message(self) -> Optional[dict]:
        if self.closed and self.queue.empty():
            return None
        return await self.queue.get()


class SnapshotPublisher:
    """Fans snapshots out to every subscriber."""

    def __init__(self, queue_size: int = DEFAULT_QUEUE_SIZE):
        self.queue_size = queue_size
        self.subscriptions: Dict[str, Subscription] = {}
        self.latest: Optional[Snapshot] = None
        self.published_count = 0
        self.dropped_count = 0
        self.last_ping_at: Optional[datetime] = None

    def subscribe(self, subscription_id: Optional[str] = None) -> Subscription:
        """Register a subscriber and hand it the current snapshot immediately."""
        subscription = Subscription(subscription_id or str(uuid.uuid4()), self.queue_size)
        self.subscriptions[subscription.id] = subscription
        if self.latest is not None:
            subscription.offer(self.latest.message())
        logger.info(f"Subscriber connected: {subscription.id}")
        return subscription

    def unsubscribe(self, subscription_id: str):
        subscription = self.subscriptions.pop(subscription_id, None)
        if subscription is not None:
            subscription.close()
            logger.info(f"Subscriber disconnected: {subscription_id}")

    def publish(self, snapshot: Snapshot):
        """Hand a snapshot to every subscriber. Never blocks."""
        self.latest = snapshot
        self.published_count += 1
        for subscription in list(self.subscriptions.values()):
            self._deliver(subscription, snapshot.message())

    def send_ping_all(self):
        """Queue a keepalive ping for every subscriber."""
        self.last_ping_at = datetime.now(timezone.utc)
        for subscription in list(self.subscriptions.values()):
            self._deliver(subscription, {"type": "ping"})

    def _deliver(self, subscription: Subscription, message: dict):
        if not subscription.offer(message):
            logger.warning(f"Dropping slow subscriber {subscription.id}")
            self.dropped_count += 1
            self.unsubscribe(subscription.id)

    def get_stats(self) -> dict:
        """Subscriber statistics for the health endpoint."""
        return {
            "subscribers": len(self.subscriptions),
            "published_snapshots": self.published_count,
            "dropped_subscribers": self.dropped_count,
            "last_ping_at": self.last_ping_at.isoformat() if self.last_ping_at else None,
        }

"""
Change feed for seat maps and payment outcomes.

Services publish small dict messages on named channels after they commit;
websocket viewers of a seat map and checkout flows awaiting a payment outcome
subscribe to those channels. Each subscriber owns a bounded asyncio.Queue, so a
slow consumer drops its own messages instead of blocking publishers.

Channels:
  seats:{train_id}:{travel_date}    seat held / released / booked / available
  payment:{checkout_request_id}     terminal payment outcome

FAN-OUT ACROSS WORKERS
======================

Every API worker has its own subscribers, but a hold or a payment callback can
land on any worker. With Redis available, publish() sends the message with
Redis PUBLISH and each process runs one PSUBSCRIBE listener (started from the
application lifespan) that hands incoming messages to its local queues. Without
Redis (REDIS_ENABLED=False, or the listener not started) messages are
delivered to this process's subscribers directly.
"""

import asyncio
import json
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import date
from typing import AsyncIterator, Optional

import redis.asyncio as redis

from app.core.logging import get_logger
from app.core.metrics import change_feed_subscribers

logger = get_logger(__name__)

SUBSCRIBER_QUEUE_SIZE = 100
CHANNEL_PATTERNS = ("seats:*", "payment:*")
LISTENER_POLL_SECONDS = 1.0
LISTENER_RETRY_SECONDS = 1.0


def seat_channel(train_id: int, travel_date: date) -> str:
    return f"seats:{train_id}:{travel_date.isoformat()}"


def payment_channel(checkout_request_id: str) -> str:
    return f"payment:{checkout_request_id}"


class ChangeFeed:
    def __init__(self):
        self._subscribers: dict[str, set[asyncio.Queue]] = defaultdict(set)
        self._redis: Optional[redis.Redis] = None
        self._pubsub = None
        self._listener: Optional[asyncio.Task] = None

    @property
    def distributed(self) -> bool:
        return self._listener is not None and not self._listener.done()

    def subscriber_count(self, channel: str) -> int:
        return len(self._subscribers.get(channel, ()))

    async def start(self, client: redis.Redis) -> None:
        """Relay messages published by any process to this process's subscribers."""
        if self._listener is not None:
            return
        self._redis = client
        self._pubsub = client.pubsub()
        await self._pubsub.psubscribe(*CHANNEL_PATTERNS)
        self._listener = asyncio.create_task(self._listen())
        logger.info("change_feed_started", patterns=list(CHANNEL_PATTERNS))

    async def stop(self) -> None:
        if self._listener is not None:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None
        if self._pubsub is not None:
            await self._pubsub.aclose()
            self._pubsub = None
        self._redis = None
        logger.info("change_feed_stopped")

    async def _listen(self) -> None:
        # Poll with a timeout so an idle channel never trips the socket timeout
        while True:
            try:
                message = await self._pubsub.get_message(
                    ignore_subscribe_messages=True, timeout=LISTENER_POLL_SECONDS
                )
            except redis.RedisError as e:
                logger.error("change_feed_listener_failed", error=str(e))
                await asyncio.sleep(LISTENER_RETRY_SECONDS)
                continue
            if message is None or message.get("type") != "pmessage":
                continue
            try:
                data = json.loads(message["data"])
            except (TypeError, ValueError):
                logger.warning("change_feed_bad_message", channel=message.get("channel"))
                continue
            self._deliver(message["channel"], data)

    @asynccontextmanager
    async def subscribe(self, channel: str) -> AsyncIterator[asyncio.Queue]:
        queue: asyncio.Queue = asyncio.Queue(maxsize=SUBSCRIBER_QUEUE_SIZE)
        self._subscribers[channel].add(queue)
        change_feed_subscribers.inc()
        try:
            yield queue
        finally:
            subscribers = self._subscribers.get(channel)
            if subscribers is not None:
                subscribers.discard(queue)
                if not subscribers:
                    del self._subscribers[channel]
            change_feed_subscribers.dec()

    def _deliver(self, channel: str, message: dict) -> int:
        delivered = 0
        for queue in list(self._subscribers.get(channel, ())):
            try:
                queue.put_nowait(message)
                delivered += 1
            except asyncio.QueueFull:
                logger.warning("change_feed_subscriber_lagging", channel=channel)
        return delivered

    async def publish(self, channel: str, message: dict) -> int:
        """
        Publish message on channel.

        Returns the number of listening processes when relayed through Redis,
        otherwise the number of local subscribers that got it.
        """
        if self.distributed:
            try:
                receivers = await self._redis.publish(channel, json.dumps(message, default=str))
                logger.debug("change_feed_published", channel=channel, receivers=receivers)
                return receivers
            except redis.RedisError as e:
                logger.warning("change_feed_publish_failed", channel=channel, error=str(e))

        delivered = self._deliver(channel, message)
        logger.debug("change_feed_published", channel=channel, delivered=delivered)
        return delivered


change_feed = ChangeFeed()

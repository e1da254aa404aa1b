"""
Topic-based publish/subscribe used for change notifications and cross-context signals.

Two implementations share one interface:

- LocalBroadcast delivers within the current process (several clients/"tabs" in
  one event loop, and tests).
- RedisBroadcast delivers across processes and devices through Redis pub/sub.

Delivery is always asynchronous: publish() schedules handlers and returns, the
way a push notification arrives after the write that caused it.
"""
import asyncio
import contextlib
import json
import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

from redis.asyncio.client import PubSub
from redis.exceptions import RedisError

from core.redis import RedisClient

logger = logging.getLogger(__name__)

Message = dict[str, Any]
MessageHandler = Callable[[Message], Awaitable[None]]


class Subscription(Protocol):
    """Handle for an active subscription."""

    async def unsubscribe(self) -> None:
        """Stop delivery. Safe to call more than once."""
        ...


class Broadcast(Protocol):
    """Publish/subscribe transport."""

    async def publish(self, topic: str, message: Message) -> bool:
        """Publish a JSON-serializable message; False if it could not be sent."""
        ...

    async def subscribe(self, topic: str, handler: MessageHandler) -> Subscription:
        """Deliver every message published on topic to handler."""
        ...


async def _deliver(topic: str, handler: MessageHandler, message: Message) -> None:
    """Run one handler; a failing subscriber must not break the others."""
    try:
        await handler(message)
    except Exception:
        logger.exception("broadcast_handler_failed topic=%s", topic)


class LocalSubscription:
    """Subscription on a LocalBroadcast."""

    def __init__(self, broadcast: "LocalBroadcast", topic: str, handler: MessageHandler) -> None:
        self._broadcast = broadcast
        self._topic = topic
        self._handler = handler
        self._active = True

    async def unsubscribe(self) -> None:
        if not self._active:
            return
        self._active = False
        self._broadcast._remove(self._topic, self._handler)


class LocalBroadcast:
    """In-process broadcast on the running event loop."""

    def __init__(self) -> None:
        self._handlers: dict[str, list[MessageHandler]] = defaultdict(list)
        self._pending: set[asyncio.Task[None]] = set()

    async def publish(self, topic: str, message: Message) -> bool:
        for handler in list(self._handlers.get(topic, ())):
            task = asyncio.create_task(_deliver(topic, handler, dict(message)))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
        return True

    async def subscribe(self, topic: str, handler: MessageHandler) -> LocalSubscription:
        self._handlers[topic].append(handler)
        return LocalSubscription(self, topic, handler)

    def subscriber_count(self, topic: str) -> int:
        """Number of live subscriptions on topic."""
        return len(self._handlers.get(topic, ()))

    async def drain(self) -> None:
        """Wait until every scheduled delivery (including ones they trigger) has run."""
        while self._pending:
            await asyncio.gather(*list(self._pending))

    def _remove(self, topic: str, handler: MessageHandler) -> None:
        handlers = self._handlers.get(topic)
        if handlers and handler in handlers:
            handlers.remove(handler)
        if not handlers:
            self._handlers.pop(topic, None)


class NullSubscription:
    """Returned when the transport is unavailable; nothing to release."""

    async def unsubscribe(self) -> None:
        return None


class RedisSubscription:
    """Subscription backed by a Redis pub/sub connection and a reader task."""

    def __init__(self, pubsub: PubSub, reader: asyncio.Task[None]) -> None:
        self._pubsub = pubsub
        self._reader = reader
        self._active = True

    async def unsubscribe(self) -> None:
        if not self._active:
            return
        self._active = False
        self._reader.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._reader
        try:
            await self._pubsub.unsubscribe()
            await self._pubsub.aclose()
        except RedisError as e:
            logger.warning("Redis UNSUBSCRIBE failed: %s", e)


class RedisBroadcast:
    """Broadcast over Redis pub/sub; messages are JSON-encoded."""

    def __init__(self, redis_client: RedisClient) -> None:
        self._redis = redis_client

    async def publish(self, topic: str, message: Message) -> bool:
        return await self._redis.publish(topic, json.dumps(message))

    async def subscribe(self, topic: str, handler: MessageHandler) -> Subscription:
        pubsub = await self._redis.subscribe(topic)
        if pubsub is None:
            logger.warning("broadcast_subscribe_unavailable topic=%s", topic)
            return NullSubscription()
        reader = asyncio.create_task(self._read(topic, pubsub, handler))
        return RedisSubscription(pubsub, reader)

    async def _read(self, topic: str, pubsub: PubSub, handler: MessageHandler) -> None:
        try:
            async for raw in pubsub.listen():
                if raw.get("type") != "message":
                    continue  # subscribe/unsubscribe confirmations
                try:
                    message = json.loads(raw["data"])
                except (TypeError, ValueError):
                    logger.warning("broadcast_message_invalid topic=%s", topic)
                    continue
                await _deliver(topic, handler, message)
        except RedisError as e:
            logger.warning("broadcast_reader_stopped topic=%s error=%s", topic, e)

"""Change notification channel and the subscriber that turns notifications into refreshes."""
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from core.broadcast import Broadcast, Message, Subscription
from schemas.change import ChangeEvent, ChangeType

logger = logging.getLogger(__name__)

ChangeHandler = Callable[[ChangeEvent], Awaitable[None]]

BOOKMARKS_TABLE = "bookmarks"


class ChangeChannel:
    """
    Per-table change notifications on top of a Broadcast transport.

    Subscriptions select one event type and optionally one owner, mirroring a
    table/event/filter subscription on a realtime database feed.
    """

    def __init__(self, broadcast: Broadcast, prefix: str = "bookmarks") -> None:
        self._broadcast = broadcast
        self._prefix = prefix

    def topic(self, table: str) -> str:
        """Broadcast topic carrying changes for table."""
        return f"{self._prefix}:changes:{table}"

    async def publish(self, event: ChangeEvent) -> bool:
        """Announce a committed change. Returns False if the transport is down."""
        sent = await self._broadcast.publish(self.topic(event.table), event.model_dump(mode="json"))
        if not sent:
            logger.warning(
                "change_publish_failed table=%s event=%s record_id=%s",
                event.table, event.event, event.record_id,
            )
        return sent

    async def subscribe(
        self,
        table: str,
        event_type: ChangeType,
        owner_filter: str | None,
        handler: ChangeHandler,
    ) -> Subscription:
        """Subscribe handler to event_type changes on table, optionally for one owner."""

        async def deliver(message: Message) -> None:
            event = ChangeEvent.model_validate(message)
            if event.event is not event_type:
                return
            if owner_filter is not None and event.owner_id != owner_filter:
                return
            await handler(event)

        return await self._broadcast.subscribe(self.topic(table), deliver)


class ChangeFeedSubscriber:
    """
    Uses the change feed purely as an invalidation signal.

    INSERT and UPDATE are filtered to the active owner. DELETE is subscribed
    unfiltered because a deleted row cannot carry its owner, so any user's delete
    triggers a refresh here. Every notification, whatever its payload, calls the
    same refetch the mutation path uses.
    """

    def __init__(
        self,
        channel: ChangeChannel,
        refetch: Callable[[], Awaitable[Any]],
        table: str = BOOKMARKS_TABLE,
    ) -> None:
        self._channel = channel
        self._refetch = refetch
        self._table = table
        self._owner_id: str | None = None
        self._subscriptions: list[Subscription] = []

    @property
    def owner_id(self) -> str | None:
        """Owner the active subscription is scoped to, or None when inactive."""
        return self._owner_id

    @property
    def is_active(self) -> bool:
        return bool(self._subscriptions)

    async def activate(self, owner_id: str) -> None:
        """
        Subscribe for owner_id.

        A no-op if already active for the same owner; a different owner tears the
        old subscription down first so only one is ever live.
        """
        if self.is_active and self._owner_id == owner_id:
            return
        await self.deactivate()

        subscriptions = [
            await self._channel.subscribe(self._table, ChangeType.INSERT, owner_id, self._on_change),
            await self._channel.subscribe(self._table, ChangeType.UPDATE, owner_id, self._on_change),
            await self._channel.subscribe(self._table, ChangeType.DELETE, None, self._on_change),
        ]
        self._subscriptions = subscriptions
        self._owner_id = owner_id
        logger.info("change_feed_activated owner_id=%s table=%s", owner_id, self._table)

    async def deactivate(self) -> None:
        """Release the subscription. Safe when already inactive."""
        if not self._subscriptions:
            self._owner_id = None
            return
        subscriptions, self._subscriptions = self._subscriptions, []
        owner_id, self._owner_id = self._owner_id, None
        for subscription in subscriptions:
            await subscription.unsubscribe()
        logger.info("change_feed_deactivated owner_id=%s table=%s", owner_id, self._table)

    async def _on_change(self, event: ChangeEvent) -> None:
        logger.debug(
            "change_received table=%s event=%s record_id=%s",
            event.table, event.event, event.record_id,
        )
        await self._refetch()

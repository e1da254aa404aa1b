"""Canonical in-memory bookmark collection for the active user."""
import asyncio
import logging
from collections.abc import Callable

from schemas.bookmark import BookmarkRead
from services.exceptions import TransientNetworkError
from services.interfaces import BackingStore

logger = logging.getLogger(__name__)

CollectionListener = Callable[[tuple[BookmarkRead, ...]], None]


class BookmarkCollection:
    """
    The single authoritative list of the active user's bookmarks.

    The only way to change the contents is refresh(), which replaces the whole
    collection with a fresh read from the backing store, or clear(). Callers never
    patch individual entries, so no stale or duplicate entry can survive a refresh.

    Refreshes are serialized: one that starts after a write has been acknowledged
    reads a state at least as new as that write, and an older fetch can never land
    on top of a newer one. clear() bumps a generation counter so a fetch still in
    flight for a previous owner is discarded when it completes.
    """

    def __init__(self, store: BackingStore) -> None:
        self._store = store
        self._owner_id: str | None = None
        self._items: tuple[BookmarkRead, ...] = ()
        self._generation = 0
        self._lock = asyncio.Lock()
        self._listeners: list[CollectionListener] = []
        self.last_error: TransientNetworkError | None = None

    @property
    def owner_id(self) -> str | None:
        return self._owner_id

    @property
    def items(self) -> tuple[BookmarkRead, ...]:
        """Current snapshot, latest first."""
        return self._items

    def subscribe(self, listener: CollectionListener) -> Callable[[], None]:
        """Call listener with the new snapshot after every replace or clear."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def initialize(self, owner_id: str) -> tuple[BookmarkRead, ...]:
        """
        Bind the collection to owner_id and perform the initial fetch.

        Raises:
            TransientNetworkError: If the initial fetch fails; the collection stays
                bound (and empty) so the next refresh can fill it.
        """
        self._generation += 1
        self._owner_id = owner_id
        self._replace(())
        return await self.refresh()

    async def refresh(self) -> tuple[BookmarkRead, ...]:
        """
        Re-read every row for the active owner and replace the collection.

        Without an active owner this is a no-op.

        Raises:
            TransientNetworkError: If the fetch fails. The previous collection is
                kept; retrying is left to whatever triggered the refresh.
        """
        owner_id = self._owner_id
        if owner_id is None:
            return self._items
        generation = self._generation

        async with self._lock:
            if generation != self._generation:
                return self._items
            try:
                rows = await self._store.list_bookmarks(owner_id)
            except TransientNetworkError as e:
                self.last_error = e
                logger.warning("collection_refresh_failed owner_id=%s error=%s", owner_id, e)
                raise
            if generation != self._generation:
                logger.debug("collection_refresh_discarded owner_id=%s", owner_id)
                return self._items
            self.last_error = None
            self._replace(tuple(rows))

        logger.debug("collection_refreshed owner_id=%s count=%d", owner_id, len(rows))
        return self._items

    def clear(self) -> None:
        """Drop the owner and all entries; pending fetches are discarded."""
        self._generation += 1
        self._owner_id = None
        self.last_error = None
        self._replace(())

    def _replace(self, items: tuple[BookmarkRead, ...]) -> None:
        self._items = items
        for listener in list(self._listeners):
            listener(items)

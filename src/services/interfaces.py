"""
Interfaces of the external collaborators the sync core consumes.

The core only relies on these protocols; db.store.SqlBookmarkStore and
services.identity.HttpIdentitySource are the shipped implementations.
"""
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

from core.broadcast import Message, Subscription
from schemas.bookmark import BookmarkCreate, BookmarkRead
from schemas.session import AuthEvent, Identity

AuthStateHandler = Callable[[AuthEvent, Identity | None], Awaitable[None]]
SignalHandler = Callable[[Message], Awaitable[None]]


class BackingStore(Protocol):
    """
    Row-level bookmark storage scoped by equality predicates.

    All methods raise TransientNetworkError when the store can't be reached.
    """

    async def list_bookmarks(self, owner_id: str) -> list[BookmarkRead]:
        """All rows for owner_id ordered by created_at descending."""
        ...

    async def find_by_url(self, owner_id: str, url: str) -> BookmarkRead | None:
        """The owner's live row for url, if any."""
        ...

    async def insert(self, owner_id: str, data: BookmarkCreate) -> BookmarkRead:
        """Insert a row; raises DuplicateError if the (owner_id, url) index fires."""
        ...

    async def update(self, owner_id: str, bookmark_id: str, changes: dict[str, Any]) -> int:
        """Update rows matching id AND owner_id; returns rows matched."""
        ...

    async def delete(self, owner_id: str, bookmark_id: str) -> int:
        """Delete rows matching id AND owner_id; returns rows matched."""
        ...


class IdentitySource(Protocol):
    """Session query and session event stream of the identity provider."""

    async def get_current_user(self) -> Identity | None:
        """
        Return the signed-in identity, or None if there is explicitly no session.

        Raises TransientNetworkError if the identity source can't be reached.
        """
        ...

    def on_auth_state_change(self, handler: AuthStateHandler) -> Callable[[], None]:
        """Register handler for SIGNED_IN/SIGNED_OUT; returns an unsubscribe callable."""
        ...

    async def sign_out(self) -> None:
        """End the session and announce it."""
        ...


class SignalSource(Protocol):
    """Cross-context signal that another client observed a session change."""

    async def listen(self, handler: SignalHandler) -> Subscription:
        """Deliver each signal to handler until the subscription is released."""
        ...

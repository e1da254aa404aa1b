"""Validated create/update/delete of bookmarks for the active user."""
import logging
from collections.abc import Mapping
from typing import Any, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from schemas.bookmark import BookmarkCreate, BookmarkRead, BookmarkUpdate
from services.exceptions import (
    DuplicateError,
    NotAuthenticatedError,
    NotFoundOrForbiddenError,
    TransientNetworkError,
    ValidationError,
)
from services.interfaces import BackingStore
from services.reconciliation import BookmarkCollection

logger = logging.getLogger(__name__)

SchemaT = TypeVar("SchemaT", bound=BaseModel)


def parse_input(schema: type[SchemaT], values: Mapping[str, Any]) -> SchemaT:
    """
    Validate values against schema, converting pydantic errors to ValidationError.

    Only the first error is reported, which is what a form shows the user.
    """
    try:
        return schema.model_validate(dict(values))
    except PydanticValidationError as e:
        first = e.errors()[0]
        message = first["msg"].removeprefix("Value error, ")
        field = str(first["loc"][0]) if first["loc"] else None
        raise ValidationError(message, field=field) from e


class EditDraft(BaseModel):
    """A bookmark edit in progress."""

    id: str
    url: str
    title: str
    category: str

    def changes(self) -> dict[str, Any]:
        return {"url": self.url, "title": self.title, "category": self.category}


class MutationGateway:
    """
    Issues bookmark writes scoped to the collection's active owner.

    Every acknowledged write is followed by a full refresh of the collection
    rather than a local patch. Input problems are rejected before the store is
    contacted, so failed validation neither writes nor refreshes.
    """

    def __init__(self, store: BackingStore, collection: BookmarkCollection) -> None:
        self._store = store
        self._collection = collection
        self.editing: EditDraft | None = None

    def _require_owner(self) -> str:
        owner_id = self._collection.owner_id
        if owner_id is None:
            raise NotAuthenticatedError()
        return owner_id

    async def refetch(self) -> bool:
        """
        Refresh the collection from the backing store.

        The single entry point used after writes and on change notifications. A
        failed refresh is logged and reported as False; the write that triggered
        it has already been acknowledged.
        """
        try:
            await self._collection.refresh()
        except TransientNetworkError as e:
            logger.warning("refetch_failed error=%s", e)
            return False
        return True

    async def create(
        self,
        url: str,
        title: str | None = None,
        category: str | None = None,
    ) -> BookmarkRead:
        """
        Create a bookmark for the active owner.

        Title defaults to the URL and category to "general" when blank.

        Raises:
            ValidationError: URL empty, not http/https, or malformed.
            DuplicateError: The owner already has this URL (checked first, and
                again by the store's unique index for concurrent inserts).
            TransientNetworkError: The backing store is unreachable.
        """
        owner_id = self._require_owner()
        data = parse_input(BookmarkCreate, {"url": url, "title": title, "category": category})

        existing = await self._store.find_by_url(owner_id, data.url)
        if existing is not None:
            logger.info("bookmark_duplicate owner_id=%s url=%s", owner_id, data.url)
            raise DuplicateError(data.url)

        record = await self._store.insert(owner_id, data)
        await self.refetch()
        return record

    async def update(self, bookmark_id: str, fields: Mapping[str, Any]) -> None:
        """
        Apply a partial update to one of the active owner's bookmarks.

        Ownership is part of the same store request, so there is no
        check-then-write window. On success the edit draft is cleared.

        Raises:
            ValidationError: No editable fields, or an invalid value.
            NotFoundOrForbiddenError: No row with this id belongs to the owner
                (possibly deleted concurrently).
            DuplicateError: The new URL is already bookmarked by the owner.
            TransientNetworkError: The backing store is unreachable.
        """
        owner_id = self._require_owner()
        changes = parse_input(BookmarkUpdate, fields).changes()
        if not changes:
            raise ValidationError("No fields to update")

        matched = await self._store.update(owner_id, bookmark_id, changes)
        if matched == 0:
            raise NotFoundOrForbiddenError(bookmark_id)

        self.editing = None
        await self.refetch()

    async def delete(self, bookmark_id: str) -> None:
        """
        Permanently delete one of the active owner's bookmarks.

        Raises:
            NotFoundOrForbiddenError: No row with this id belongs to the owner.
            TransientNetworkError: The backing store is unreachable.
        """
        owner_id = self._require_owner()
        matched = await self._store.delete(owner_id, bookmark_id)
        if matched == 0:
            raise NotFoundOrForbiddenError(bookmark_id)
        await self.refetch()

    async def toggle_favorite(self, bookmark_id: str, current: bool) -> None:
        await self.update(bookmark_id, {"is_favorite": not current})

    def begin_edit(self, bookmark: BookmarkRead) -> EditDraft:
        """Start editing bookmark, replacing any draft already open."""
        self.editing = EditDraft(
            id=bookmark.id,
            url=bookmark.url,
            title=bookmark.title,
            category=bookmark.category,
        )
        return self.editing

    def cancel_edit(self) -> None:
        self.editing = None

    async def save_edit(self) -> None:
        """Submit the open draft via update(); the draft survives a failed save."""
        if self.editing is None:
            raise ValidationError("No bookmark is being edited")
        await self.update(self.editing.id, self.editing.changes())

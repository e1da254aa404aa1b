"""Service layer for bookmark CRUD operations against the relational store."""
import logging
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from models.bookmark import Bookmark
from schemas.bookmark import BookmarkCreate
from services.exceptions import DuplicateError

logger = logging.getLogger(__name__)

OWNER_URL_INDEX = "uq_bookmark_owner_url"


def is_owner_url_conflict(error: IntegrityError) -> bool:
    """
    Check whether an IntegrityError came from the (owner_id, url) unique index.

    PostgreSQL names the index in the message; SQLite lists the columns instead.
    """
    message = str(error.orig) if error.orig is not None else str(error)
    return OWNER_URL_INDEX in message or "bookmarks.owner_id, bookmarks.url" in message


async def find_bookmark_by_url(
    db: AsyncSession,
    owner_id: str,
    url: str,
) -> Bookmark | None:
    """Return the owner's live bookmark for url, if any."""
    result = await db.execute(
        select(Bookmark).where(
            Bookmark.owner_id == owner_id,
            Bookmark.url == url,
        ).limit(1),
    )
    return result.scalar_one_or_none()


async def create_bookmark(
    db: AsyncSession,
    owner_id: str,
    data: BookmarkCreate,
) -> Bookmark:
    """
    Insert a bookmark for owner_id.

    The caller is expected to have run the duplicate pre-check already; this only
    maps the unique index firing (a concurrent insert of the same URL) onto
    DuplicateError.

    Raises:
        DuplicateError: If the (owner_id, url) unique index rejects the row.

    Note:
        Does not commit. Caller handles commit at the end of the unit of work.
    """
    bookmark = Bookmark(
        owner_id=owner_id,
        url=data.url,
        title=data.title,
        category=data.category,
        is_favorite=False,
    )
    db.add(bookmark)
    try:
        await db.flush()
    except IntegrityError as e:
        if is_owner_url_conflict(e):
            raise DuplicateError(data.url) from e
        raise
    await db.refresh(bookmark)
    return bookmark


async def get_bookmarks(
    db: AsyncSession,
    owner_id: str,
) -> list[Bookmark]:
    """Get all bookmarks for an owner, latest first."""
    result = await db.execute(
        select(Bookmark)
        .where(Bookmark.owner_id == owner_id)
        .order_by(Bookmark.created_at.desc(), Bookmark.id.desc()),
    )
    return list(result.scalars().all())


async def update_bookmark(
    db: AsyncSession,
    owner_id: str,
    bookmark_id: str,
    changes: dict[str, Any],
) -> int:
    """
    Apply changes to one bookmark, scoped to its owner in the same statement.

    Returns the number of rows matched (0 when the id is unknown or owned by
    someone else).

    Raises:
        DuplicateError: If the change moves the URL onto one the owner already has.
    """
    try:
        result = await db.execute(
            update(Bookmark)
            .where(Bookmark.id == bookmark_id, Bookmark.owner_id == owner_id)
            .values(**changes),
        )
    except IntegrityError as e:
        if is_owner_url_conflict(e):
            raise DuplicateError(changes.get("url", "")) from e
        raise
    return result.rowcount


async def delete_bookmark(
    db: AsyncSession,
    owner_id: str,
    bookmark_id: str,
) -> int:
    """Permanently delete one bookmark scoped to its owner. Returns rows matched."""
    result = await db.execute(
        delete(Bookmark).where(
            Bookmark.id == bookmark_id,
            Bookmark.owner_id == owner_id,
        ),
    )
    return result.rowcount

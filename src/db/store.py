"""SQLAlchemy-backed implementation of the bookmark backing store."""
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from schemas.bookmark import BookmarkCreate, BookmarkRead
from schemas.change import ChangeEvent, ChangeType
from services import bookmark_service
from services.change_feed import BOOKMARKS_TABLE, ChangeChannel
from services.exceptions import TransientNetworkError

logger = logging.getLogger(__name__)


class SqlBookmarkStore:
    """
    Backing store over an async SQLAlchemy session factory.

    Each call is its own unit of work: commit on success, rollback on any error.
    Change notifications are published only after the commit, so a refresh
    triggered by a notification always reads the committed row.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        changes: ChangeChannel | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._changes = changes

    @asynccontextmanager
    async def _session(self) -> AsyncGenerator[AsyncSession]:
        """
        Yield a session, committing at the end.

        SQLAlchemy and socket failures surface as TransientNetworkError; domain
        errors (DuplicateError) pass through untouched.
        """
        try:
            async with self._session_factory() as session:
                try:
                    yield session
                    await session.commit()
                except Exception:
                    await session.rollback()
                    raise
        except (SQLAlchemyError, OSError) as e:
            logger.warning("backing_store_error error=%s", e)
            raise TransientNetworkError(str(e)) from e

    async def _publish(self, event: ChangeType, record_id: str, owner_id: str | None) -> None:
        if self._changes is None:
            return
        await self._changes.publish(
            ChangeEvent(
                table=BOOKMARKS_TABLE,
                event=event,
                record_id=record_id,
                owner_id=owner_id,
            ),
        )

    async def list_bookmarks(self, owner_id: str) -> list[BookmarkRead]:
        async with self._session() as db:
            rows = await bookmark_service.get_bookmarks(db, owner_id)
            return [BookmarkRead.model_validate(row) for row in rows]

    async def find_by_url(self, owner_id: str, url: str) -> BookmarkRead | None:
        async with self._session() as db:
            row = await bookmark_service.find_bookmark_by_url(db, owner_id, url)
            return BookmarkRead.model_validate(row) if row is not None else None

    async def insert(self, owner_id: str, data: BookmarkCreate) -> BookmarkRead:
        async with self._session() as db:
            row = await bookmark_service.create_bookmark(db, owner_id, data)
            record = BookmarkRead.model_validate(row)
        logger.info("bookmark_inserted id=%s owner_id=%s", record.id, owner_id)
        await self._publish(ChangeType.INSERT, record.id, owner_id)
        return record

    async def update(self, owner_id: str, bookmark_id: str, changes: dict[str, Any]) -> int:
        async with self._session() as db:
            matched = await bookmark_service.update_bookmark(db, owner_id, bookmark_id, changes)
        if matched:
            logger.info(
                "bookmark_updated id=%s owner_id=%s fields=%s",
                bookmark_id, owner_id, ",".join(sorted(changes)),
            )
            await self._publish(ChangeType.UPDATE, bookmark_id, owner_id)
        return matched

    async def delete(self, owner_id: str, bookmark_id: str) -> int:
        async with self._session() as db:
            matched = await bookmark_service.delete_bookmark(db, owner_id, bookmark_id)
        if matched:
            logger.info("bookmark_deleted id=%s owner_id=%s", bookmark_id, owner_id)
            # Deleted rows are announced without an owner
            await self._publish(ChangeType.DELETE, bookmark_id, None)
        return matched

"""Bookmark model for storing user bookmarks."""
from sqlalchemy import Boolean, Index, String, Text, false
from sqlalchemy.orm import Mapped, mapped_column

from models.base import Base, CreatedAtMixin, OpaqueIdMixin


class Bookmark(Base, OpaqueIdMixin, CreatedAtMixin):
    """Bookmark model - stores a URL with a title, a category and a favorite flag."""

    __tablename__ = "bookmarks"
    __table_args__ = (
        # One live bookmark per (owner, url). The service checks first; this index
        # catches the concurrent-insert race.
        Index(
            "uq_bookmark_owner_url",
            "owner_id",
            "url",
            unique=True,
        ),
    )

    owner_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(String(100), nullable=False, default="general")
    is_favorite: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=false(),
    )

    def __repr__(self) -> str:
        return f"<Bookmark id={self.id} owner_id={self.owner_id} url={self.url!r}>"

"""SQLAlchemy declarative base with common mixins."""
import uuid
from datetime import UTC, datetime

from sqlalchemy import DateTime, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utc_now() -> datetime:
    """Current wall-clock time as a timezone-aware UTC datetime."""
    return datetime.now(UTC)


def new_id() -> str:
    """Generate an opaque row identifier."""
    return uuid.uuid4().hex


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class OpaqueIdMixin:
    """Mixin that adds a store-assigned, immutable string primary key."""

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)


class CreatedAtMixin:
    """
    Mixin that adds an immutable created_at column.

    Assigned client-side at insert time rather than with a server default so the
    same model works against PostgreSQL and SQLite.
    """

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        nullable=False,
        index=True,  # Index for "latest first" ordering
    )

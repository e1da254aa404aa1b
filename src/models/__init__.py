"""SQLAlchemy models."""
from models.base import Base, CreatedAtMixin, OpaqueIdMixin
from models.bookmark import Bookmark

__all__ = ["Base", "Bookmark", "CreatedAtMixin", "OpaqueIdMixin"]

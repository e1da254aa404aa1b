"""Pydantic schemas for change-feed notifications."""
from enum import StrEnum

from pydantic import BaseModel, ConfigDict


class ChangeType(StrEnum):
    """Row-level change categories delivered by the change feed."""

    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class ChangeEvent(BaseModel):
    """
    Notification that a row changed.

    owner_id is None for deletions: the row no longer exists when the notification
    is sent, so its owner cannot be echoed back.
    """

    model_config = ConfigDict(frozen=True)

    table: str
    event: ChangeType
    record_id: str
    owner_id: str | None = None

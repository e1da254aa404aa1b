"""Pydantic schemas for the authentication session."""
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, model_validator


class AuthEvent(StrEnum):
    """Events on the identity provider's session stream."""

    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"


class SessionStatus(StrEnum):
    UNKNOWN = "unknown"
    AUTHENTICATED = "authenticated"
    UNAUTHENTICATED = "unauthenticated"


class Identity(BaseModel):
    """The signed-in user as reported by the identity source."""

    model_config = ConfigDict(frozen=True)

    id: str
    email: str | None = None
    full_name: str | None = None

    @property
    def display_label(self) -> str:
        """Full name, falling back to email, then the user id."""
        return self.full_name or self.email or self.id

    @classmethod
    def from_user_payload(cls, payload: dict[str, Any]) -> "Identity":
        """Build from an identity API user object ({"id", "email", "user_metadata"})."""
        metadata = payload.get("user_metadata") or {}
        return cls(
            id=str(payload["id"]),
            email=payload.get("email"),
            full_name=metadata.get("full_name") or metadata.get("name"),
        )


class Session(BaseModel):
    """Current authentication state; identity is present only when authenticated."""

    model_config = ConfigDict(frozen=True)

    status: SessionStatus = SessionStatus.UNKNOWN
    identity: Identity | None = None

    @model_validator(mode="after")
    def check_identity_matches_status(self) -> "Session":
        """Identity must be set exactly when the session is authenticated."""
        if (self.status is SessionStatus.AUTHENTICATED) != (self.identity is not None):
            raise ValueError("identity is required for, and only for, authenticated sessions")
        return self

    @property
    def is_authenticated(self) -> bool:
        return self.status is SessionStatus.AUTHENTICATED

"""Pydantic schemas for bookmark records and mutations."""
from datetime import datetime
from typing import Any

from pydantic import (
    BaseModel,
    ConfigDict,
    HttpUrl,
    TypeAdapter,
    field_validator,
    model_validator,
)
from pydantic import ValidationError as PydanticValidationError

from core.config import get_settings

_HTTP_URL = TypeAdapter(HttpUrl)
ALLOWED_SCHEMES = ("http://", "https://")


def validate_bookmark_url(url: str) -> str:
    """
    Validate a bookmark URL.

    The URL is stored exactly as entered (minus surrounding whitespace); pydantic's
    HttpUrl is only used to check that it parses, since it would otherwise
    normalize the value (e.g. add a trailing slash).

    Raises:
        ValueError: If the URL is empty, not http/https, or not well-formed.
    """
    url = url.strip()
    if not url:
        raise ValueError("Please enter a URL")
    if not url.startswith(ALLOWED_SCHEMES):
        raise ValueError("URL must start with http:// or https://")
    try:
        _HTTP_URL.validate_python(url)
    except PydanticValidationError as e:
        raise ValueError("Please enter a valid URL") from e
    return url


def normalize_category(category: str | None) -> str:
    """Trim a category; blank or missing becomes the default category."""
    if category is None or not category.strip():
        return get_settings().default_category
    return category.strip()


def validate_title_length(title: str | None) -> str | None:
    """Validate that title doesn't exceed maximum length."""
    settings = get_settings()
    if title is not None and len(title) > settings.max_title_length:
        raise ValueError(
            f"Title exceeds maximum length of {settings.max_title_length:,} characters "
            f"(got {len(title):,} characters).",
        )
    return title


class BookmarkCreate(BaseModel):
    """Schema for creating a new bookmark."""

    model_config = ConfigDict(extra="forbid")

    url: str
    title: str | None = None
    category: str | None = None

    @field_validator("url")
    @classmethod
    def check_url(cls, v: str) -> str:
        """Reject empty, non-http(s) and malformed URLs."""
        return validate_bookmark_url(v)

    @field_validator("title")
    @classmethod
    def check_title(cls, v: str | None) -> str | None:
        """Strip the title and enforce the length limit."""
        if v is None:
            return None
        return validate_title_length(v.strip())

    @field_validator("category", mode="before")
    @classmethod
    def default_category(cls, v: str | None) -> str:
        """Blank or missing category becomes the default category."""
        return normalize_category(v)

    @model_validator(mode="after")
    def default_title(self) -> "BookmarkCreate":
        """Blank or missing title falls back to the URL."""
        if not self.title:
            self.title = self.url
        return self


class BookmarkUpdate(BaseModel):
    """
    Schema for a partial bookmark update.

    Only url, title, category and is_favorite are editable; id, owner_id and
    created_at are rejected outright.
    """

    model_config = ConfigDict(extra="forbid")

    url: str | None = None
    title: str | None = None
    category: str | None = None
    is_favorite: bool | None = None

    @field_validator("url")
    @classmethod
    def check_url(cls, v: str | None) -> str | None:
        """Validate the URL if one is being set."""
        if v is None:
            return None
        return validate_bookmark_url(v)

    @field_validator("title")
    @classmethod
    def check_title(cls, v: str | None) -> str | None:
        """Strip the title and enforce the length limit."""
        if v is None:
            return None
        return validate_title_length(v.strip())

    @field_validator("category")
    @classmethod
    def check_category(cls, v: str | None) -> str | None:
        """A blank category resets to the default category."""
        if v is None:
            return None
        return normalize_category(v)

    @model_validator(mode="after")
    def check_title_fallback(self) -> "BookmarkUpdate":
        """A blank title falls back to the new URL; without one it is rejected."""
        if self.title is not None and not self.title:
            if self.url is None:
                raise ValueError("Title cannot be blank unless a new URL is provided")
            self.title = self.url
        return self

    def changes(self) -> dict[str, Any]:
        """Return only the fields the caller actually set."""
        return self.model_dump(exclude_unset=True, exclude_none=True)


class BookmarkRead(BaseModel):
    """Immutable snapshot of a stored bookmark row."""

    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: str
    owner_id: str
    url: str
    title: str
    category: str
    is_favorite: bool
    created_at: datetime

"""Application configuration using pydantic-settings."""
from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # Backing store
    database_url: str = "sqlite+aiosqlite:///./bookmarks.db"

    # Identity provider - base URL of the auth API (e.g. https://<project>/auth/v1)
    auth_url: str = Field(default="http://localhost:9999/auth/v1", validation_alias="AUTH_URL")
    auth_api_key: str = Field(default="", validation_alias="AUTH_API_KEY")
    auth_provider: str = Field(default="google", validation_alias="AUTH_PROVIDER")

    # Where the identity provider redirects back to after sign-in
    app_url: str = Field(default="http://localhost:3000", validation_alias="APP_URL")

    # Redis - broadcast channel for change notifications and cross-context signals
    redis_url: str = Field(default="redis://localhost:6379", validation_alias="REDIS_URL")
    redis_enabled: bool = Field(default=False, validation_alias="REDIS_ENABLED")
    broadcast_prefix: str = Field(default="bookmarks", validation_alias="BROADCAST_PREFIX")

    # Session monitor poll interval
    session_poll_interval_ms: int = Field(
        default=2000, validation_alias="SESSION_POLL_INTERVAL_MS",
    )

    # Transport timeout for identity requests (seconds)
    http_timeout: float = Field(default=30.0, validation_alias="HTTP_TIMEOUT")

    default_category: str = Field(default="general", validation_alias="DEFAULT_CATEGORY")
    max_title_length: int = Field(default=500, validation_alias="MAX_TITLE_LENGTH")

    # Create the bookmarks table on startup (local SQLite development)
    create_schema: bool = Field(default=False, validation_alias="CREATE_SCHEMA")

    @field_validator("session_poll_interval_ms")
    @classmethod
    def validate_poll_interval(cls, v: int) -> int:
        """Reject non-positive poll intervals."""
        if v <= 0:
            raise ValueError("SESSION_POLL_INTERVAL_MS must be a positive number of milliseconds")
        return v

    @property
    def session_poll_interval(self) -> float:
        """Poll interval in seconds, for asyncio.sleep."""
        return self.session_poll_interval_ms / 1000

    @property
    def dashboard_url(self) -> str:
        """Redirect target after a successful sign-in."""
        return f"{self.app_url.rstrip('/')}/dashboard"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()

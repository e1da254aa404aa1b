"""Pytest fixtures for testing."""
import asyncio
from collections.abc import AsyncGenerator, Awaitable, Callable
from pathlib import Path

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from core.broadcast import LocalBroadcast
from core.config import get_settings
from db.session import create_engine, create_session_factory, create_tables
from db.store import SqlBookmarkStore
from schemas.session import AuthEvent, Identity
from services.change_feed import ChangeChannel
from services.exceptions import TransientNetworkError
from services.identity import SessionSignal
from services.interfaces import AuthStateHandler


class FakeIdentityProvider:
    """Server-side session state shared by every client of one user."""

    def __init__(self, identity: Identity | None = None) -> None:
        self.identity = identity
        self.unreachable = False


class FakeIdentitySource:
    """In-memory IdentitySource for one client, backed by a FakeIdentityProvider."""

    def __init__(
        self,
        provider: FakeIdentityProvider,
        signal: SessionSignal | None = None,
    ) -> None:
        self.provider = provider
        self.signal = signal
        self.checks = 0
        self._handlers: list[AuthStateHandler] = []

    @property
    def handler_count(self) -> int:
        return len(self._handlers)

    async def get_current_user(self) -> Identity | None:
        self.checks += 1
        if self.provider.unreachable:
            raise TransientNetworkError("connection refused", source="identity source")
        return self.provider.identity

    def on_auth_state_change(self, handler: AuthStateHandler) -> Callable[[], None]:
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    async def emit(self, event: AuthEvent, identity: Identity | None = None) -> None:
        for handler in list(self._handlers):
            await handler(event, identity)

    async def sign_out(self) -> None:
        self.provider.identity = None
        await self.emit(AuthEvent.SIGNED_OUT)
        if self.signal is not None:
            await self.signal.notify("signed_out")


@pytest.fixture(autouse=True)
def clear_settings_cache() -> None:
    """Make every test see settings built from its own environment."""
    get_settings.cache_clear()


@pytest.fixture
async def async_engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine]:
    """Create an async engine on a throwaway SQLite database."""
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'bookmarks.db'}")
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(async_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(async_engine)


@pytest.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession]:
    """A session for service-level tests; the caller decides when to commit."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def broadcast() -> LocalBroadcast:
    return LocalBroadcast()


@pytest.fixture
def channel(broadcast: LocalBroadcast) -> ChangeChannel:
    return ChangeChannel(broadcast)


@pytest.fixture
def signal(broadcast: LocalBroadcast) -> SessionSignal:
    return SessionSignal(broadcast)


@pytest.fixture
def store(
    session_factory: async_sessionmaker[AsyncSession],
    channel: ChangeChannel,
) -> SqlBookmarkStore:
    return SqlBookmarkStore(session_factory, changes=channel)


@pytest.fixture
def alice() -> Identity:
    return Identity(id="user-alice", email="alice@example.com", full_name="Alice Example")


@pytest.fixture
def bob() -> Identity:
    return Identity(id="user-bob", email="bob@example.com")


@pytest.fixture
def provider(alice: Identity) -> FakeIdentityProvider:
    """Identity provider with Alice signed in."""
    return FakeIdentityProvider(alice)


@pytest.fixture
def identity_source(provider: FakeIdentityProvider, signal: SessionSignal) -> FakeIdentitySource:
    return FakeIdentitySource(provider, signal=signal)


@pytest.fixture
def wait_until() -> Callable[[Callable[[], bool]], Awaitable[None]]:
    """Wait (up to a second) for a condition driven by background tasks."""

    async def wait(condition: Callable[[], bool], timeout: float = 1.0) -> None:
        async with asyncio.timeout(timeout):
            while not condition():
                await asyncio.sleep(0.005)

    return wait

"""Owned context object that wires the sync components together for one client."""
import logging
from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import asynccontextmanager
from types import TracebackType

import httpx

from core.broadcast import Broadcast, LocalBroadcast, RedisBroadcast
from core.config import Settings, get_settings
from core.redis import RedisClient
from db.session import create_engine, create_session_factory, create_tables
from db.store import SqlBookmarkStore
from schemas.session import Session, SessionStatus
from services.bookmark_view import BookmarkView
from services.change_feed import ChangeChannel, ChangeFeedSubscriber
from services.identity import HttpIdentitySource, SessionSignal
from services.interfaces import BackingStore, IdentitySource, SignalSource
from services.mutation_gateway import MutationGateway
from services.reconciliation import BookmarkCollection
from services.session_monitor import DEFAULT_POLL_INTERVAL, SessionMonitor

logger = logging.getLogger(__name__)

Navigate = Callable[[str], Awaitable[None]]

LOGIN_PATH = "/login"
DASHBOARD_PATH = "/dashboard"


class SyncContext:
    """
    Session, collection, feed, gateway and view for one client ("tab").

    Nothing here is global: each context owns its state, starts it on entry and
    tears it down on exit.
    """

    def __init__(
        self,
        store: BackingStore,
        channel: ChangeChannel,
        identity: IdentitySource,
        signal: SignalSource | None = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        navigate: Navigate | None = None,
    ) -> None:
        self.identity = identity
        self.collection = BookmarkCollection(store)
        self.gateway = MutationGateway(store, self.collection)
        self.feed = ChangeFeedSubscriber(channel, self.gateway.refetch)
        self.view = BookmarkView(self.collection)
        self.monitor = SessionMonitor(
            identity,
            self.collection,
            self.feed,
            signal=signal,
            poll_interval=poll_interval,
        )
        self._navigate = navigate
        self._unsubscribe_navigation = self.monitor.subscribe(self._on_transition)

    @property
    def session(self) -> Session:
        return self.monitor.session

    async def sign_out(self) -> None:
        """Sign out; the monitor sees SIGNED_OUT and tears the session down."""
        await self.identity.sign_out()

    async def _on_transition(self, _previous: Session, current: Session) -> None:
        if self._navigate is None:
            return
        if current.status is SessionStatus.UNAUTHENTICATED:
            await self._navigate(LOGIN_PATH)
        elif current.status is SessionStatus.AUTHENTICATED:
            await self._navigate(DASHBOARD_PATH)

    async def close(self) -> None:
        """Stop navigating, release the monitor's resources and detach the view."""
        self._unsubscribe_navigation()
        try:
            await self.monitor.close()
        finally:
            self.view.close()

    async def __aenter__(self) -> "SyncContext":
        try:
            await self.monitor.start()
        except BaseException:
            await self.close()
            raise
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()


async def create_broadcast(settings: Settings) -> tuple[Broadcast, RedisClient | None]:
    """Redis broadcast when enabled and reachable, otherwise in-process."""
    if not settings.redis_enabled:
        return LocalBroadcast(), None
    redis_client = RedisClient(url=settings.redis_url, enabled=True)
    await redis_client.connect()
    if not redis_client.is_connected:
        logger.warning("broadcast_fallback_local reason=redis_unavailable")
        return LocalBroadcast(), None
    return RedisBroadcast(redis_client), redis_client


@asynccontextmanager
async def open_sync_context(
    access_token: str | None = None,
    settings: Settings | None = None,
    navigate: Navigate | None = None,
) -> AsyncGenerator[SyncContext]:
    """Build a SyncContext on real infrastructure and release it all on exit."""
    settings = settings or get_settings()
    engine = create_engine(settings.database_url)
    broadcast, redis_client = await create_broadcast(settings)
    try:
        if settings.create_schema:
            await create_tables(engine)
        channel = ChangeChannel(broadcast, prefix=settings.broadcast_prefix)
        signal = SessionSignal(broadcast, prefix=settings.broadcast_prefix)
        store = SqlBookmarkStore(create_session_factory(engine), changes=channel)
        async with httpx.AsyncClient(
            base_url=settings.auth_url,
            timeout=settings.http_timeout,
        ) as http_client:
            identity = HttpIdentitySource(
                http_client,
                settings,
                access_token=access_token,
                signal=signal,
            )
            async with SyncContext(
                store,
                channel,
                identity,
                signal=signal,
                poll_interval=settings.session_poll_interval,
                navigate=navigate,
            ) as context:
                yield context
    finally:
        if redis_client is not None:
            await redis_client.close()
        await engine.dispose()

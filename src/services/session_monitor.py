"""
Session validity tracking and the lifecycle of the components that depend on it.

Three independent sources can report that the session is gone:

1. SIGNED_OUT on the identity provider's session event stream.
2. The cross-context session signal (another client signed out); this only
   prompts a re-check against the identity source.
3. A periodic poll of the identity source.

All of them feed one idempotent transition handler, so a sign-out seen by
several sources produces exactly one transition and one teardown. Once the
session is unauthenticated nothing here moves it back; signing in again is an
explicit action that starts a new monitor.
"""
import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from contextlib import AsyncExitStack
from types import TracebackType

from core.broadcast import Message
from schemas.session import AuthEvent, Identity, Session, SessionStatus
from services.change_feed import ChangeFeedSubscriber
from services.exceptions import TransientNetworkError
from services.interfaces import IdentitySource, SignalSource
from services.reconciliation import BookmarkCollection

logger = logging.getLogger(__name__)

TransitionHandler = Callable[[Session, Session], Awaitable[None]]

DEFAULT_POLL_INTERVAL = 2.0


class SessionMonitor:
    """
    Owns the current Session and drives the collection and change feed from it.

    On authentication: one collection initialization and one feed activation.
    On loss of session: feed deactivated, poll stopped, collection cleared.
    Listeners, signal subscription and poll task are released by close(), which
    `async with` guarantees on every exit path.
    """

    def __init__(
        self,
        identity_source: IdentitySource,
        collection: BookmarkCollection,
        feed: ChangeFeedSubscriber,
        signal: SignalSource | None = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ) -> None:
        self._identity_source = identity_source
        self._collection = collection
        self._feed = feed
        self._signal = signal
        self._poll_interval = poll_interval
        self._session = Session()
        self._listeners: list[TransitionHandler] = []
        self._lock = asyncio.Lock()
        self._resources: AsyncExitStack | None = None
        self._poll_task: asyncio.Task[None] | None = None

    @property
    def session(self) -> Session:
        return self._session

    @property
    def is_polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    def subscribe(self, handler: TransitionHandler) -> Callable[[], None]:
        """Call handler(old, new) after each status transition."""
        self._listeners.append(handler)

        def unsubscribe() -> None:
            if handler in self._listeners:
                self._listeners.remove(handler)

        return unsubscribe

    async def start(self) -> Session:
        """Attach all signal sources, start polling and run the initial check."""
        if self._resources is not None:
            return self._session
        resources = AsyncExitStack()
        resources.callback(self._identity_source.on_auth_state_change(self._on_auth_event))
        if self._signal is not None:
            subscription = await self._signal.listen(self._on_session_signal)
            resources.push_async_callback(subscription.unsubscribe)
        self._poll_task = asyncio.create_task(self._poll())
        resources.push_async_callback(self._stop_poll)
        self._resources = resources

        try:
            await self.check("initial")
        except BaseException:
            await self.close()
            raise
        return self._session

    async def close(self) -> None:
        """Release every signal source, the poll task and the feed subscription."""
        resources, self._resources = self._resources, None
        if resources is not None:
            await resources.aclose()
        await self._feed.deactivate()
        logger.debug("session_monitor_closed status=%s", self._session.status)

    async def __aenter__(self) -> "SessionMonitor":
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    async def check(self, source: str) -> None:
        """
        Re-validate the session against the identity source.

        An unreachable identity source leaves the session as it is; only an
        explicit "no session" answer signs out.
        """
        try:
            identity = await self._identity_source.get_current_user()
        except TransientNetworkError as e:
            logger.warning("session_check_failed source=%s error=%s", source, e)
            return
        if identity is None:
            await self._transition(SessionStatus.UNAUTHENTICATED, None, source)
        else:
            await self._transition(SessionStatus.AUTHENTICATED, identity, source)

    async def _on_auth_event(self, event: AuthEvent, identity: Identity | None) -> None:
        if event is AuthEvent.SIGNED_OUT:
            await self._transition(SessionStatus.UNAUTHENTICATED, None, "auth_event")
        elif event is AuthEvent.SIGNED_IN and identity is not None:
            await self._transition(SessionStatus.AUTHENTICATED, identity, "auth_event")

    async def _on_session_signal(self, _message: Message) -> None:
        await self.check("session_signal")

    async def _poll(self) -> None:
        while self._session.status is not SessionStatus.UNAUTHENTICATED:
            await asyncio.sleep(self._poll_interval)
            try:
                await self.check("poll")
            except Exception:
                # Only cancellation or sign-out ends the poll
                logger.exception("session_poll_failed status=%s", self._session.status)

    async def _stop_poll(self) -> None:
        task, self._poll_task = self._poll_task, None
        if task is None or task.done():
            return
        if task is asyncio.current_task():
            # Called from the poll's own check; the loop ends once it sees the new status
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _transition(
        self,
        status: SessionStatus,
        identity: Identity | None,
        source: str,
    ) -> None:
        """The single transition handler every signal source funnels into."""
        async with self._lock:
            previous = self._session
            if status is SessionStatus.UNAUTHENTICATED:
                if previous.status is SessionStatus.UNAUTHENTICATED:
                    return
                self._session = Session(status=SessionStatus.UNAUTHENTICATED)
                await self._deactivate()
            else:
                if previous.status is SessionStatus.UNAUTHENTICATED:
                    logger.info("session_signin_ignored source=%s", source)
                    return
                if previous.identity is not None and previous.identity.id == identity.id:
                    return
                self._session = Session(status=SessionStatus.AUTHENTICATED, identity=identity)
                await self._activate(identity)
            current = self._session

        logger.info(
            "session_transition from=%s to=%s source=%s",
            previous.status, current.status, source,
        )
        for handler in list(self._listeners):
            await handler(previous, current)

    async def _activate(self, identity: Identity) -> None:
        try:
            await self._collection.initialize(identity.id)
        except TransientNetworkError as e:
            logger.warning("collection_initialize_failed user_id=%s error=%s", identity.id, e)
        await self._feed.activate(identity.id)

    async def _deactivate(self) -> None:
        await self._feed.deactivate()
        await self._stop_poll()
        self._collection.clear()

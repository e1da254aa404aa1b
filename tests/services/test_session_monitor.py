"""Tests for session tracking and the teardown it drives."""
import asyncio
from collections.abc import AsyncGenerator, Awaitable, Callable

import httpx
import pytest
import respx
from httpx import Request, Response

from core.broadcast import LocalBroadcast
from core.config import Settings
from db.store import SqlBookmarkStore
from schemas.bookmark import BookmarkCreate, BookmarkRead
from schemas.session import AuthEvent, Identity, Session, SessionStatus
from services.change_feed import ChangeChannel, ChangeFeedSubscriber
from services.identity import HttpIdentitySource, SessionSignal
from services.reconciliation import BookmarkCollection
from services.session_monitor import SessionMonitor
from tests.conftest import FakeIdentityProvider, FakeIdentitySource

POLL_INTERVAL = 0.01

WaitUntil = Callable[[Callable[[], bool]], Awaitable[None]]


class CountingCollection(BookmarkCollection):
    """Collection that records how often the monitor initializes and clears it."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.initialized: list[str] = []
        self.clears = 0

    async def initialize(self, owner_id: str) -> tuple[BookmarkRead, ...]:
        self.initialized.append(owner_id)
        return await super().initialize(owner_id)

    def clear(self) -> None:
        self.clears += 1
        super().clear()


class FlakyIdentitySource(FakeIdentitySource):
    """Identity source whose next ``failures`` checks raise a non-transient error."""

    def __init__(self, *args, failures: int = 1, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.failures = failures

    async def get_current_user(self) -> Identity | None:
        if self.failures > 0:
            self.failures -= 1
            self.checks += 1
            raise KeyError("id")
        return await super().get_current_user()


@pytest.fixture
def collection(store: SqlBookmarkStore) -> CountingCollection:
    return CountingCollection(store)


@pytest.fixture
def feed(channel: ChangeChannel, collection: CountingCollection) -> ChangeFeedSubscriber:
    return ChangeFeedSubscriber(channel, collection.refresh)


@pytest.fixture
async def monitor(
    identity_source: FakeIdentitySource,
    collection: CountingCollection,
    feed: ChangeFeedSubscriber,
    signal: SessionSignal,
) -> AsyncGenerator[SessionMonitor]:
    monitor = SessionMonitor(
        identity_source, collection, feed, signal=signal, poll_interval=POLL_INTERVAL,
    )
    yield monitor
    await monitor.close()


@pytest.fixture
def transitions(monitor: SessionMonitor) -> list[tuple[SessionStatus, SessionStatus]]:
    """Status transitions the monitor reports to its listeners."""
    seen: list[tuple[SessionStatus, SessionStatus]] = []

    async def record(previous: Session, current: Session) -> None:
        seen.append((previous.status, current.status))

    monitor.subscribe(record)
    return seen


def session_subscribers(broadcast: LocalBroadcast) -> int:
    return broadcast.subscriber_count("bookmarks:session")


def change_subscribers(broadcast: LocalBroadcast, channel: ChangeChannel) -> int:
    return broadcast.subscriber_count(channel.topic("bookmarks"))


class TestStart:
    async def test__start__signed_in_initializes_and_activates_once(
        self,
        monitor: SessionMonitor,
        collection: CountingCollection,
        feed: ChangeFeedSubscriber,
        alice: Identity,
        transitions: list[tuple[SessionStatus, SessionStatus]],
    ) -> None:
        session = await monitor.start()

        assert session.status is SessionStatus.AUTHENTICATED
        assert session.identity == alice
        assert collection.initialized == [alice.id]
        assert feed.owner_id == alice.id
        assert monitor.is_polling
        assert transitions == [(SessionStatus.UNKNOWN, SessionStatus.AUTHENTICATED)]

    async def test__start__repeated_checks_do_not_reinitialize(
        self,
        monitor: SessionMonitor,
        collection: CountingCollection,
        identity_source: FakeIdentitySource,
        wait_until: WaitUntil,
    ) -> None:
        await monitor.start()

        await wait_until(lambda: identity_source.checks >= 4)
        await identity_source.emit(AuthEvent.SIGNED_IN, identity_source.provider.identity)

        assert len(collection.initialized) == 1

    async def test__start__without_session_is_unauthenticated(
        self,
        monitor: SessionMonitor,
        provider: FakeIdentityProvider,
        collection: CountingCollection,
        feed: ChangeFeedSubscriber,
    ) -> None:
        provider.identity = None

        session = await monitor.start()

        assert session.status is SessionStatus.UNAUTHENTICATED
        assert collection.initialized == []
        assert feed.is_active is False
        assert not monitor.is_polling

    async def test__start__unreachable_then_poll_authenticates(
        self,
        monitor: SessionMonitor,
        provider: FakeIdentityProvider,
        feed: ChangeFeedSubscriber,
        wait_until: WaitUntil,
    ) -> None:
        """A transient failure leaves the status unknown until a check succeeds."""
        provider.unreachable = True

        session = await monitor.start()
        assert session.status is SessionStatus.UNKNOWN

        provider.unreachable = False
        await wait_until(lambda: monitor.session.is_authenticated)
        assert feed.is_active

    async def test__start__loads_existing_bookmarks(
        self,
        monitor: SessionMonitor,
        store: SqlBookmarkStore,
        collection: CountingCollection,
        alice: Identity,
    ) -> None:
        await store.insert(alice.id, BookmarkCreate(url="https://a.com"))

        await monitor.start()

        assert [b.url for b in collection.items] == ["https://a.com"]


class TestSignOut:
    async def test__poll_alone_detects_lost_session(
        self,
        monitor: SessionMonitor,
        provider: FakeIdentityProvider,
        store: SqlBookmarkStore,
        collection: CountingCollection,
        feed: ChangeFeedSubscriber,
        broadcast: LocalBroadcast,
        channel: ChangeChannel,
        alice: Identity,
        wait_until: WaitUntil,
    ) -> None:
        """Session expires server-side with no event and no cross-context signal."""
        await monitor.start()
        assert change_subscribers(broadcast, channel) == 3

        provider.identity = None
        await wait_until(lambda: monitor.session.status is SessionStatus.UNAUTHENTICATED)

        assert feed.is_active is False
        assert change_subscribers(broadcast, channel) == 0
        assert collection.items == ()
        assert collection.owner_id is None
        assert not monitor.is_polling

        await store.insert(alice.id, BookmarkCreate(url="https://late.com"))
        await broadcast.drain()
        assert collection.items == ()

    async def test__signed_out_event_transitions_immediately(
        self,
        monitor: SessionMonitor,
        identity_source: FakeIdentitySource,
        feed: ChangeFeedSubscriber,
    ) -> None:
        await monitor.start()

        await identity_source.emit(AuthEvent.SIGNED_OUT)

        assert monitor.session.status is SessionStatus.UNAUTHENTICATED
        assert feed.is_active is False
        assert not monitor.is_polling

    async def test__session_signal_triggers_recheck(
        self,
        identity_source: FakeIdentitySource,
        collection: CountingCollection,
        feed: ChangeFeedSubscriber,
        signal: SessionSignal,
        broadcast: LocalBroadcast,
    ) -> None:
        """Another context signed out: the signal alone (no poll, no event) is enough."""
        monitor = SessionMonitor(
            identity_source, collection, feed, signal=signal, poll_interval=60,
        )
        async with monitor:
            identity_source.provider.identity = None
            await signal.notify("signed_out")
            await broadcast.drain()

            assert monitor.session.status is SessionStatus.UNAUTHENTICATED

    async def test__session_signal_without_sign_out_keeps_session(
        self,
        monitor: SessionMonitor,
        signal: SessionSignal,
        broadcast: LocalBroadcast,
    ) -> None:
        """The signal carries no authority; the identity source decides."""
        await monitor.start()

        await signal.notify("signed_out")
        await broadcast.drain()

        assert monitor.session.is_authenticated

    async def test__redundant_signals_produce_one_transition(
        self,
        monitor: SessionMonitor,
        identity_source: FakeIdentitySource,
        collection: CountingCollection,
        broadcast: LocalBroadcast,
        transitions: list[tuple[SessionStatus, SessionStatus]],
    ) -> None:
        """SIGNED_OUT, the session signal and the poll all fire; teardown happens once."""
        await monitor.start()
        transitions.clear()

        await identity_source.sign_out()
        await identity_source.emit(AuthEvent.SIGNED_OUT)
        await broadcast.drain()
        await asyncio.sleep(POLL_INTERVAL * 3)

        assert transitions == [(SessionStatus.AUTHENTICATED, SessionStatus.UNAUTHENTICATED)]
        assert collection.clears == 1

    async def test__unauthenticated_is_final(
        self,
        monitor: SessionMonitor,
        identity_source: FakeIdentitySource,
        provider: FakeIdentityProvider,
        feed: ChangeFeedSubscriber,
        alice: Identity,
        transitions: list[tuple[SessionStatus, SessionStatus]],
    ) -> None:
        await monitor.start()
        await identity_source.sign_out()

        provider.identity = alice
        await identity_source.emit(AuthEvent.SIGNED_IN, alice)
        await monitor.check("poll")

        assert monitor.session.status is SessionStatus.UNAUTHENTICATED
        assert feed.is_active is False
        assert transitions[-1] == (SessionStatus.AUTHENTICATED, SessionStatus.UNAUTHENTICATED)

    async def test__transient_failure_does_not_sign_out(
        self,
        monitor: SessionMonitor,
        provider: FakeIdentityProvider,
        identity_source: FakeIdentitySource,
        feed: ChangeFeedSubscriber,
        wait_until: WaitUntil,
    ) -> None:
        await monitor.start()
        provider.unreachable = True
        checks_before = identity_source.checks

        await wait_until(lambda: identity_source.checks >= checks_before + 3)

        assert monitor.session.is_authenticated
        assert feed.is_active
        assert monitor.is_polling

    async def test__unexpected_check_error_keeps_polling(
        self,
        provider: FakeIdentityProvider,
        collection: CountingCollection,
        feed: ChangeFeedSubscriber,
        wait_until: WaitUntil,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        identity_source = FlakyIdentitySource(provider, failures=0)
        monitor = SessionMonitor(
            identity_source, collection, feed, poll_interval=POLL_INTERVAL,
        )
        async with monitor:
            identity_source.failures = 2
            provider.identity = None

            await wait_until(lambda: monitor.session.status is SessionStatus.UNAUTHENTICATED)

            assert feed.is_active is False
            assert not monitor.is_polling
        assert "session_poll_failed" in caplog.text

    async def test__garbled_user_reply_then_rejection_signs_out(
        self,
        collection: CountingCollection,
        feed: ChangeFeedSubscriber,
        wait_until: WaitUntil,
    ) -> None:
        """A non-JSON 200 from the provider is skipped; the following 401 still ends the session."""
        auth_url = "http://auth.test/auth/v1"
        replies = iter([
            Response(200, json={"id": "user-alice", "email": "alice@example.com"}),
            Response(200, text="<html>maintenance</html>"),
        ])

        def reply(_request: Request) -> Response:
            return next(replies, Response(401))

        settings = Settings(_env_file=None, auth_url=auth_url)
        with respx.mock(assert_all_called=False) as mock_api:
            mock_api.get(f"{auth_url}/user").mock(side_effect=reply)
            async with httpx.AsyncClient(base_url=auth_url) as client:
                identity_source = HttpIdentitySource(client, settings, access_token="token-123")
                monitor = SessionMonitor(
                    identity_source, collection, feed, poll_interval=POLL_INTERVAL,
                )
                async with monitor:
                    assert monitor.session.is_authenticated

                    await wait_until(
                        lambda: monitor.session.status is SessionStatus.UNAUTHENTICATED,
                    )

                    assert feed.is_active is False
                    assert collection.items == ()
                    assert not monitor.is_polling


class TestIdentityChange:
    async def test__signed_in_as_other_user_rebinds(
        self,
        monitor: SessionMonitor,
        identity_source: FakeIdentitySource,
        collection: CountingCollection,
        feed: ChangeFeedSubscriber,
        store: SqlBookmarkStore,
        alice: Identity,
        bob: Identity,
    ) -> None:
        await store.insert(alice.id, BookmarkCreate(url="https://alice.com"))
        await store.insert(bob.id, BookmarkCreate(url="https://bob.com"))
        await monitor.start()

        identity_source.provider.identity = bob
        await identity_source.emit(AuthEvent.SIGNED_IN, bob)

        assert monitor.session.identity == bob
        assert collection.initialized == [alice.id, bob.id]
        assert feed.owner_id == bob.id
        assert [b.url for b in collection.items] == ["https://bob.com"]


class TestClose:
    async def test__close__releases_every_source(
        self,
        monitor: SessionMonitor,
        identity_source: FakeIdentitySource,
        feed: ChangeFeedSubscriber,
        broadcast: LocalBroadcast,
        channel: ChangeChannel,
    ) -> None:
        await monitor.start()
        assert identity_source.handler_count == 1
        assert session_subscribers(broadcast) == 1

        await monitor.close()

        assert identity_source.handler_count == 0
        assert session_subscribers(broadcast) == 0
        assert change_subscribers(broadcast, channel) == 0
        assert not monitor.is_polling
        assert feed.is_active is False

    async def test__close__stops_polling(
        self,
        monitor: SessionMonitor,
        identity_source: FakeIdentitySource,
    ) -> None:
        await monitor.start()
        await monitor.close()
        checks = identity_source.checks

        await asyncio.sleep(POLL_INTERVAL * 3)

        assert identity_source.checks == checks

    async def test__context_manager_releases_on_error(
        self,
        identity_source: FakeIdentitySource,
        collection: CountingCollection,
        feed: ChangeFeedSubscriber,
        signal: SessionSignal,
        broadcast: LocalBroadcast,
    ) -> None:
        monitor = SessionMonitor(
            identity_source, collection, feed, signal=signal, poll_interval=POLL_INTERVAL,
        )

        with pytest.raises(RuntimeError):
            async with monitor:
                raise RuntimeError("boom")

        assert identity_source.handler_count == 0
        assert session_subscribers(broadcast) == 0
        assert not monitor.is_polling

    async def test__failed_initial_check_releases_every_source(
        self,
        provider: FakeIdentityProvider,
        collection: CountingCollection,
        feed: ChangeFeedSubscriber,
        signal: SessionSignal,
        broadcast: LocalBroadcast,
        channel: ChangeChannel,
    ) -> None:
        identity_source = FlakyIdentitySource(provider, signal=signal)
        monitor = SessionMonitor(
            identity_source, collection, feed, signal=signal, poll_interval=POLL_INTERVAL,
        )

        with pytest.raises(KeyError):
            async with monitor:
                pass

        assert identity_source.handler_count == 0
        assert session_subscribers(broadcast) == 0
        assert change_subscribers(broadcast, channel) == 0
        assert not monitor.is_polling
        checks = identity_source.checks
        await asyncio.sleep(POLL_INTERVAL * 3)
        assert identity_source.checks == checks

    async def test__start_twice_is_noop(
        self,
        monitor: SessionMonitor,
        identity_source: FakeIdentitySource,
        collection: CountingCollection,
    ) -> None:
        await monitor.start()
        await monitor.start()

        assert identity_source.handler_count == 1
        assert len(collection.initialized) == 1

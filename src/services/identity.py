"""HTTP client for the identity provider and the cross-context session signal."""
import logging
from collections.abc import Callable

import httpx

from core.broadcast import Broadcast, Subscription
from core.config import Settings
from schemas.session import AuthEvent, Identity
from services.exceptions import TransientNetworkError
from services.interfaces import AuthStateHandler, SignalHandler

logger = logging.getLogger(__name__)

IDENTITY_SOURCE = "identity source"
# Statuses meaning "there is no session", as opposed to "couldn't find out"
NO_SESSION_STATUSES = frozenset({401, 403})


class SessionSignal:
    """
    Cross-context "session changed" signal, the counterpart of a browser storage event.

    Carries no authority of its own: receivers re-check the identity source.
    """

    def __init__(self, broadcast: Broadcast, prefix: str = "bookmarks") -> None:
        self._broadcast = broadcast
        self._topic = f"{prefix}:session"

    async def notify(self, reason: str) -> bool:
        return await self._broadcast.publish(self._topic, {"reason": reason})

    async def listen(self, handler: SignalHandler) -> Subscription:
        return await self._broadcast.subscribe(self._topic, handler)


class HttpIdentitySource:
    """
    Identity provider client holding the current access token.

    The redirect-based OAuth handshake happens outside this class: callers send
    the user to authorize_url() and hand the resulting token to set_session().
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        settings: Settings,
        access_token: str | None = None,
        signal: SessionSignal | None = None,
    ) -> None:
        self._client = client
        self._settings = settings
        self._access_token = access_token
        self._signal = signal
        self._handlers: list[AuthStateHandler] = []

    @property
    def has_token(self) -> bool:
        return self._access_token is not None

    def _get_headers(self) -> dict[str, str]:
        headers = {"Authorization": f"Bearer {self._access_token}"}
        if self._settings.auth_api_key:
            headers["apikey"] = self._settings.auth_api_key
        return headers

    def authorize_url(self, redirect_to: str | None = None) -> str:
        """URL that starts the provider's redirect-based sign-in."""
        url = httpx.URL(
            f"{self._settings.auth_url.rstrip('/')}/authorize",
            params={
                "provider": self._settings.auth_provider,
                "redirect_to": redirect_to or self._settings.dashboard_url,
            },
        )
        return str(url)

    def on_auth_state_change(self, handler: AuthStateHandler) -> Callable[[], None]:
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    async def get_current_user(self) -> Identity | None:
        """
        Validate the session against the identity provider.

        Returns None when there is no token or the provider rejects it.

        Raises:
            TransientNetworkError: Transport failure, unexpected status or an
                unreadable user object.
        """
        if self._access_token is None:
            return None
        try:
            response = await self._client.get("/user", headers=self._get_headers())
        except httpx.TransportError as e:
            raise TransientNetworkError(str(e) or type(e).__name__, source=IDENTITY_SOURCE) from e

        if response.status_code in NO_SESSION_STATUSES:
            logger.info("identity_no_session status=%d", response.status_code)
            self._access_token = None
            return None
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise TransientNetworkError(
                f"HTTP {response.status_code}", source=IDENTITY_SOURCE,
            ) from e
        try:
            return Identity.from_user_payload(response.json())
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            # Non-JSON body or a user object without an id
            raise TransientNetworkError(
                f"malformed user response ({type(e).__name__})", source=IDENTITY_SOURCE,
            ) from e

    async def set_session(self, access_token: str) -> Identity | None:
        """
        Adopt a token obtained from the sign-in redirect.

        Emits SIGNED_IN if the provider accepts it; returns the identity or None.
        """
        self._access_token = access_token
        identity = await self.get_current_user()
        if identity is not None:
            logger.info("identity_signed_in user_id=%s", identity.id)
            await self._emit(AuthEvent.SIGNED_IN, identity)
        return identity

    async def sign_out(self) -> None:
        """
        End the session at the provider, then tell local listeners and other contexts.

        A token the provider no longer recognizes counts as signed out.

        Raises:
            TransientNetworkError: The provider couldn't be reached; the local
                session is kept so the user can retry.
        """
        if self._access_token is not None:
            try:
                response = await self._client.post("/logout", headers=self._get_headers())
            except httpx.TransportError as e:
                raise TransientNetworkError(
                    str(e) or type(e).__name__, source=IDENTITY_SOURCE,
                ) from e
            if response.status_code not in NO_SESSION_STATUSES and response.status_code != 404:
                try:
                    response.raise_for_status()
                except httpx.HTTPStatusError as e:
                    raise TransientNetworkError(
                        f"HTTP {response.status_code}", source=IDENTITY_SOURCE,
                    ) from e

        self._access_token = None
        logger.info("identity_signed_out")
        await self._emit(AuthEvent.SIGNED_OUT, None)
        if self._signal is not None:
            await self._signal.notify("signed_out")

    async def _emit(self, event: AuthEvent, identity: Identity | None) -> None:
        for handler in list(self._handlers):
            await handler(event, identity)

"""
Authenticated session.

Owns everything whose lifetime is bound to one logged-in user: the token
schedule, the realtime connection and the chat and notification stores.
Nothing here is module-global; logging out tears it all down.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from typing import Any

import httpx
import structlog

from guestcode_client.config import Settings, settings
from guestcode_client.errors import ApiError, AuthExpiredError, GuestCodeClientError
from guestcode_client.infrastructure.events.bus import EventBus
from guestcode_client.infrastructure.observability.logging import get_logger
from guestcode_client.models.domain.user_domain import User
from guestcode_client.services.api_client import GuestCodeApiClient
from guestcode_client.services.chat_service import ChatSessionStore
from guestcode_client.services.notification_service import NotificationStore
from guestcode_client.services.realtime_service import (
    RealtimeConnectionManager,
    SocketFactory,
    default_socket_factory,
)
from guestcode_client.services.token_service import TokenLifecycleManager
from guestcode_client.services.token_storage import TokenStore, build_token_store

logger = get_logger(__name__)


class AuthSession:
    """
    Usage::

        async with AuthSession() as session:
            await session.login(email, password)
            await session.chat.fetch_conversations()
            ...
            await session.logout()
    """

    def __init__(
        self,
        config: Settings = settings,
        token_store: TokenStore | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        socket_factory: SocketFactory = default_socket_factory,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.config = config
        self.bus = EventBus()
        self.tokens = TokenLifecycleManager(
            token_store if token_store is not None else build_token_store(config),
            threshold=config.TOKEN_REFRESH_THRESHOLD,
            check_interval=config.TOKEN_CHECK_INTERVAL,
            ping_interval=config.SESSION_PING_INTERVAL,
            clock=clock,
        )
        self.api = GuestCodeApiClient(
            self.tokens,
            base_url=config.API_BASE_URL,
            timeout=config.REQUEST_TIMEOUT,
            transport=transport,
        )
        self._socket_factory = socket_factory
        self._sleep = sleep

        self.user: User | None = None
        self.realtime: RealtimeConnectionManager | None = None
        self.chat: ChatSessionStore | None = None
        self.notifications: NotificationStore | None = None

    async def __aenter__(self) -> "AuthSession":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    @property
    def is_authenticated(self) -> bool:
        return self.user is not None

    # ------------------------------------------------------------------
    # Login / restore / logout
    # ------------------------------------------------------------------

    async def login(self, email: str, password: str) -> User:
        data = await self.api.login(email, password)

        token = (data or {}).get("token")
        if not token or not data.get("user"):
            raise ApiError("Login response missing token or user", recoverable=False)

        user = User.model_validate(data["user"])
        self.tokens.set_session(token, data.get("refreshToken"), user.id)
        logger.info("Logged in", user_id=user.id)

        await self._begin(user)
        return user

    async def restore(self) -> User | None:
        """Resume a stored session; returns None when there is none to resume."""
        if not self.tokens.access_token:
            return None

        try:
            data = await self.api.get_current_user()
        except AuthExpiredError:
            logger.info("Stored session expired, clearing tokens")
            self.tokens.clear_session()
            return None

        user = User.model_validate(data)
        logger.info("Session restored", user_id=user.id)
        await self._begin(user)
        return user

    async def logout(self) -> None:
        if self.user is not None:
            try:
                await self.api.logout()
            except GuestCodeClientError as e:
                logger.warning("Backend logout failed, clearing local session anyway", error=str(e))
            await self._end()

        self.tokens.clear_session()
        logger.info("Logged out")

    async def handle_auth_failure(self, error: AuthExpiredError | None = None) -> None:
        """Terminal auth failure from any operation: drop the session locally."""
        logger.warning(
            "Authentication lost, ending session", error=str(error) if error else None
        )
        await self._end()
        self.tokens.clear_session()

    def handle_visibility_change(self, visible: bool) -> None:
        self.tokens.handle_visibility_change(visible)

    async def aclose(self) -> None:
        await self._end()
        await self.api.aclose()

    # ------------------------------------------------------------------
    # Session-bound components
    # ------------------------------------------------------------------

    async def _begin(self, user: User) -> None:
        if self.user is not None:
            await self._end()

        self.user = user
        structlog.contextvars.bind_contextvars(user_id=user.id)

        self.realtime = RealtimeConnectionManager(
            self.tokens,
            self.bus,
            user.id,
            url=self.config.socket_url(),
            socket_path=self.config.SOCKET_PATH,
            transports=list(self.config.SOCKET_TRANSPORTS),
            reconnect_delay=self.config.RECONNECT_DELAY,
            max_reconnect_attempts=self.config.MAX_RECONNECT_ATTEMPTS,
            connect_timeout=self.config.CONNECT_TIMEOUT,
            socket_factory=self._socket_factory,
            sleep=self._sleep,
        )
        self.chat = ChatSessionStore(self.api, self.bus, user.id)
        self.notifications = NotificationStore(self.api, self.bus, user.id)

        self.tokens.start()
        await self.realtime.connect()
        await self._initial_fetch()

    async def _initial_fetch(self) -> None:
        results = await asyncio.gather(
            self.chat.fetch_conversations(),
            self.notifications.fetch_notifications(),
            return_exceptions=True,
        )

        for name, result in zip(("conversations", "notifications"), results, strict=True):
            if isinstance(result, AuthExpiredError):
                await self.handle_auth_failure(result)
                raise result
            if isinstance(result, GuestCodeClientError):
                logger.warning("Initial fetch failed", resource=name, error=str(result))
            elif isinstance(result, BaseException):
                raise result

    async def _end(self) -> None:
        if self.realtime is not None:
            await self.realtime.close()
        if self.chat is not None:
            self.chat.close()
        if self.notifications is not None:
            self.notifications.close()
        await self.tokens.stop()

        self.realtime = None
        self.chat = None
        self.notifications = None
        if self.user is not None:
            structlog.contextvars.unbind_contextvars("user_id")
        self.user = None

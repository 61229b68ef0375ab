"""
Realtime connection manager.

Owns the single Socket.IO connection of an authenticated session, retries
with bounded exponential backoff, keeps the presence map current and
publishes every inbound event on the session's event bus.
"""

import asyncio
from collections.abc import Awaitable, Callable, Mapping
from types import MappingProxyType
from typing import Any

import socketio

from guestcode_client.config import settings
from guestcode_client.errors import GuestCodeClientError
from guestcode_client.infrastructure.events.bus import EventBus
from guestcode_client.infrastructure.observability.logging import (
    get_logger,
    log_connection_state,
)
from guestcode_client.models.domain.session_domain import ConnectionStatus
from guestcode_client.models.events import (
    SERVER_EVENTS,
    Connected,
    ConnectionFailed,
    Disconnected,
    InitialOnlineUsers,
    ReconnectAttempt,
    Reconnected,
    UserConnected,
    UserDisconnected,
    UserStatus,
    parse_event,
)
from guestcode_client.services.token_service import TokenLifecycleManager

logger = get_logger(__name__)

SocketFactory = Callable[[], socketio.AsyncClient]

# Server-side connect errors that mean the token was refused
AUTH_REJECTION_MARKERS = ("token expired", "authentication", "unauthorized", "jwt")


class RealtimeConnectionError(GuestCodeClientError):
    """Connection failure; terminal once recoverable is False."""

    def __init__(self, message: str, attempts: int = 0, recoverable: bool = True):
        super().__init__(message, recoverable=recoverable)
        self.attempts = attempts


def default_socket_factory() -> socketio.AsyncClient:
    # the manager owns reconnection, so the library's own retry loop stays off
    return socketio.AsyncClient(reconnection=False, logger=False, engineio_logger=False)


def _is_auth_rejection(error: BaseException) -> bool:
    text = str(error).lower()
    return any(marker in text for marker in AUTH_REJECTION_MARKERS)


class RealtimeConnectionManager:
    """
    Disconnected -> Connecting -> Connected, with a reconnecting flag layered
    on top of Disconnected while retries are pending.

    One instance belongs to one authenticated session; ``disconnect()`` must be
    called when that session ends.
    """

    def __init__(
        self,
        tokens: TokenLifecycleManager,
        bus: EventBus,
        user_id: str,
        url: str | None = None,
        socket_path: str | None = None,
        transports: list[str] | None = None,
        reconnect_delay: float | None = None,
        max_reconnect_attempts: int | None = None,
        connect_timeout: float | None = None,
        socket_factory: SocketFactory = default_socket_factory,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.tokens = tokens
        self.bus = bus
        self.user_id = user_id
        self.url = url or settings.socket_url()
        self.socket_path = socket_path or settings.SOCKET_PATH
        self.transports = transports or list(settings.SOCKET_TRANSPORTS)
        self.reconnect_delay = (
            reconnect_delay if reconnect_delay is not None else settings.RECONNECT_DELAY
        )
        self.max_reconnect_attempts = (
            max_reconnect_attempts
            if max_reconnect_attempts is not None
            else settings.MAX_RECONNECT_ATTEMPTS
        )
        self.connect_timeout = (
            connect_timeout if connect_timeout is not None else settings.CONNECT_TIMEOUT
        )
        self._socket_factory = socket_factory
        self._sleep = sleep

        self.state = ConnectionStatus.DISCONNECTED
        self.reconnecting = False
        self.reconnect_attempts = 0
        self.last_error: RealtimeConnectionError | None = None
        self.auth_payload: dict[str, Any] = {"token": None, "userId": user_id}

        self._sio: socketio.AsyncClient | None = None
        self._presence: dict[str, dict] = {}
        self._reconnect_task: asyncio.Task | None = None
        self._closing = False
        self._auth_refreshed = False
        self._force_refresh = False

        tokens.on_refreshed(self._on_token_refreshed)

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    @property
    def is_connected(self) -> bool:
        return self.state is ConnectionStatus.CONNECTED

    @property
    def presence(self) -> Mapping[str, dict]:
        return MappingProxyType(self._presence)

    def is_user_online(self, user_id: str) -> bool:
        return user_id in self._presence

    def online_count(self) -> int:
        return len(self._presence)

    def online_users(self) -> list[dict]:
        return list(self._presence.values())

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> bool:
        """
        Open the connection unless one is live or being established.

        A failed first attempt hands over to the backoff loop; the outcome is
        observable through ``state``, ``reconnecting`` and ``last_error``.

        Returns:
            bool: True if connected when this call returns
        """
        if self.state is not ConnectionStatus.DISCONNECTED or self._reconnect_in_progress():
            logger.debug("Realtime connect skipped", state=self.state.value)
            return self.is_connected

        self._closing = False
        self.reconnect_attempts = 0
        self.last_error = None
        self._auth_refreshed = False

        try:
            await self._open()
        except RealtimeConnectionError as e:
            if self._closing:
                return False
            if not await self._register_failure(e):
                self._start_reconnect()
            return False

        return self.is_connected

    async def disconnect(self) -> None:
        """Tear down the connection and forget everything tied to it."""
        self._closing = True

        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        sio, self._sio = self._sio, None
        if sio is not None:
            try:
                await sio.disconnect()
            except Exception as e:
                logger.warning("Error while closing realtime connection", error=str(e))

        self._presence.clear()
        self.reconnect_attempts = 0
        self.reconnecting = False
        self.last_error = None
        self.state = ConnectionStatus.DISCONNECTED
        log_connection_state("closed", user_id=self.user_id)

    async def close(self) -> None:
        """Disconnect and stop following token refreshes; the manager is done after this."""
        await self.disconnect()
        self.tokens.remove_listener(self._on_token_refreshed)

    async def emit(self, event: str, data: Any = None) -> None:
        if not self.is_connected or self._sio is None:
            raise RealtimeConnectionError(f"Cannot emit '{event}' while disconnected")
        await self._sio.emit(event, data)

    # ------------------------------------------------------------------
    # Connection attempts
    # ------------------------------------------------------------------

    async def _auth_token(self) -> str:
        if self._force_refresh:
            self._force_refresh = False
            return await self.tokens.refresh()

        token = await self.tokens.ensure_fresh_token()
        if not token:
            token = await self.tokens.refresh()
        return token

    async def _open(self) -> None:
        self.state = ConnectionStatus.CONNECTING
        log_connection_state("connecting", url=self.url, attempt=self.reconnect_attempts + 1)

        try:
            token = await self._auth_token()
        except Exception as e:
            self.state = ConnectionStatus.DISCONNECTED
            raise RealtimeConnectionError(
                f"Could not obtain token for realtime connection: {e}",
                attempts=self.reconnect_attempts,
                recoverable=getattr(e, "recoverable", True),
            ) from e

        if self._closing:
            self.state = ConnectionStatus.DISCONNECTED
            return

        self.auth_payload = {"token": token, "userId": self.user_id}
        sio = self._socket_factory()
        self._register_handlers(sio)
        self._sio = sio

        try:
            await asyncio.wait_for(
                sio.connect(
                    self.url,
                    auth=dict(self.auth_payload),
                    transports=self.transports,
                    socketio_path=self.socket_path,
                    wait_timeout=self.connect_timeout,
                ),
                timeout=self.connect_timeout,
            )
        except Exception as e:
            self._sio = None
            self.state = ConnectionStatus.DISCONNECTED
            await self._discard(sio)
            raise self._connect_error(e) from e

        if self._closing:
            self._sio = None
            self.state = ConnectionStatus.DISCONNECTED
            await self._discard(sio)
            return

        await self._mark_connected(sio)

    def _connect_error(self, error: BaseException) -> RealtimeConnectionError:
        message = str(error) or type(error).__name__
        if _is_auth_rejection(error):
            if self._auth_refreshed:
                # already retried with a fresh token; the server still refuses it
                return RealtimeConnectionError(
                    f"Realtime authentication rejected: {message}",
                    attempts=self.reconnect_attempts,
                    recoverable=False,
                )
            self._force_refresh = True
            self._auth_refreshed = True
        return RealtimeConnectionError(
            f"Realtime connection failed: {message}", attempts=self.reconnect_attempts
        )

    async def _discard(self, sio: socketio.AsyncClient) -> None:
        try:
            await sio.disconnect()
        except Exception as e:
            logger.debug("Discarding failed socket raised", error=str(e))

    async def _mark_connected(self, sio: socketio.AsyncClient) -> None:
        if sio is not self._sio or self._closing or self.state is ConnectionStatus.CONNECTED:
            return
        self.state = ConnectionStatus.CONNECTED
        self.last_error = None
        self._auth_refreshed = False
        log_connection_state("connected", user_id=self.user_id)
        await self.bus.publish(Connected())

    async def _register_failure(self, error: RealtimeConnectionError) -> bool:
        """Count a failed attempt; returns True when retrying has stopped for good."""
        self.reconnect_attempts += 1
        self.last_error = error
        logger.warning(
            "Realtime connection attempt failed",
            attempt=self.reconnect_attempts,
            max_attempts=self.max_reconnect_attempts,
            error=str(error),
        )

        if error.recoverable and self.reconnect_attempts < self.max_reconnect_attempts:
            return False

        self.last_error = RealtimeConnectionError(
            str(error)
            if not error.recoverable
            else f"Gave up after {self.reconnect_attempts} connection attempts: {error}",
            attempts=self.reconnect_attempts,
            recoverable=False,
        )
        self.reconnecting = False
        log_connection_state("failed", attempts=self.reconnect_attempts, error=str(error))
        await self.bus.publish(
            ConnectionFailed(error=str(self.last_error), attempts=self.reconnect_attempts)
        )
        return True

    async def wait_until_settled(self) -> None:
        """Wait for a pending reconnect cycle to finish (connected or given up)."""
        task = self._reconnect_task
        if task is not None and not task.done():
            await asyncio.gather(task, return_exceptions=True)

    def _reconnect_in_progress(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    def _start_reconnect(self) -> None:
        if self._closing or self._reconnect_in_progress():
            return
        self.reconnecting = True
        self._reconnect_task = asyncio.create_task(self._reconnect_loop())

    async def _reconnect_loop(self) -> None:
        try:
            while not self._closing:
                delay = self.reconnect_delay * 2**self.reconnect_attempts
                await self.bus.publish(
                    ReconnectAttempt(attempt=self.reconnect_attempts + 1, delay=delay)
                )
                log_connection_state(
                    "reconnecting", attempt=self.reconnect_attempts + 1, delay=delay
                )
                await self._sleep(delay)
                if self._closing:
                    return

                try:
                    await self._open()
                except RealtimeConnectionError as e:
                    if await self._register_failure(e):
                        return
                    continue

                if self._closing or not self.is_connected:
                    return

                attempts = self.reconnect_attempts + 1
                self.reconnect_attempts = 0
                await self.bus.publish(Reconnected(attempts=attempts))
                return
        finally:
            self.reconnecting = False
            if self._reconnect_task is asyncio.current_task():
                self._reconnect_task = None

    # ------------------------------------------------------------------
    # Inbound events
    # ------------------------------------------------------------------

    def _register_handlers(self, sio: socketio.AsyncClient) -> None:
        async def on_connect():
            await self._mark_connected(sio)

        async def on_disconnect(*args):
            await self._on_transport_disconnect(sio, args[0] if args else None)

        sio.on("connect", on_connect)
        sio.on("disconnect", on_disconnect)

        for name in SERVER_EVENTS:
            sio.on(name, self._make_forwarder(sio, name))

    def _make_forwarder(self, sio: socketio.AsyncClient, name: str):
        async def forward(*args):
            if sio is not self._sio:
                return
            await self.dispatch(name, args[0] if args else None)

        return forward

    async def _on_transport_disconnect(self, sio: socketio.AsyncClient, reason: Any) -> None:
        if sio is not self._sio or self._closing:
            return
        was_connected = self.state is ConnectionStatus.CONNECTED
        self._sio = None
        self.state = ConnectionStatus.DISCONNECTED
        self._presence.clear()
        log_connection_state("disconnected", reason=str(reason) if reason else None)
        await self.bus.publish(Disconnected(reason=str(reason) if reason else None))

        if was_connected:
            self.reconnect_attempts = 0
            self._start_reconnect()

    async def dispatch(self, name: str, payload: Any = None) -> None:
        """Parse a wire event, apply presence changes and publish it."""
        event = parse_event(name, payload)
        if event is None:
            return

        self._apply_presence(event)
        await self.bus.publish(event)

    def _apply_presence(self, event: Any) -> None:
        if isinstance(event, InitialOnlineUsers):
            self._presence = {user.user_id: user.user_data for user in event.users}
            logger.debug("Presence snapshot applied", online=len(self._presence))
        elif isinstance(event, UserConnected):
            self._presence[event.user_id] = event.user_data
        elif isinstance(event, UserDisconnected):
            self._presence.pop(event.user_id, None)
        elif isinstance(event, UserStatus):
            if event.status == "online":
                self._presence[event.user_id] = event.user_data or {}
            else:
                self._presence.pop(event.user_id, None)

    async def _on_token_refreshed(self, token: str) -> None:
        self.auth_payload = {"token": token, "userId": self.user_id}
        logger.debug("Realtime auth payload updated after token refresh")

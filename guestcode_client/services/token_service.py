"""
Token Service for access token lifecycle management.
Predicts expiry, refreshes proactively before the token goes stale, coalesces
concurrent refresh requests and tells subscribers when the token was replaced.
"""

import asyncio
import inspect
import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

from guestcode_client.config import settings
from guestcode_client.errors import GuestCodeClientError
from guestcode_client.infrastructure.observability.logging import get_logger
from guestcode_client.models.domain.session_domain import (
    MalformedTokenError,
    SessionToken,
    StoredTokens,
)
from guestcode_client.services.token_storage import TokenStore

logger = get_logger(__name__)

RefreshCall = Callable[[str | None], Awaitable[dict]]
PingCall = Callable[[], Awaitable[dict]]
TokenListener = Callable[[str], Awaitable[None] | None]


class TokenServiceError(GuestCodeClientError):
    """Custom exception for token lifecycle operations."""


class TokenLifecycleManager:
    """
    Owns the access token refresh schedule.

    At most one refresh call is in flight at any time; every caller that asks
    for a refresh while one is running awaits the same result.
    """

    def __init__(
        self,
        store: TokenStore,
        refresh_call: RefreshCall | None = None,
        ping_call: PingCall | None = None,
        threshold: float | None = None,
        check_interval: float | None = None,
        ping_interval: float | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self._refresh_call = refresh_call
        self._ping_call = ping_call
        self.threshold = threshold if threshold is not None else settings.TOKEN_REFRESH_THRESHOLD
        self.check_interval = (
            check_interval if check_interval is not None else settings.TOKEN_CHECK_INTERVAL
        )
        self.ping_interval = (
            ping_interval if ping_interval is not None else settings.SESSION_PING_INTERVAL
        )
        self._clock = clock

        self._listeners: list[TokenListener] = []
        self._refresh_task: asyncio.Task | None = None
        self._refresh_timer: asyncio.Task | None = None
        self._loops: list[asyncio.Task] = []
        self._background: set[asyncio.Task] = set()
        self._scheduling = False
        self._visible = True
        self.refresh_count = 0

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------

    def bind_transport(self, refresh_call: RefreshCall, ping_call: PingCall | None = None) -> None:
        """Attach the network calls once the API client exists."""
        self._refresh_call = refresh_call
        if ping_call is not None:
            self._ping_call = ping_call

    # ------------------------------------------------------------------
    # Token access
    # ------------------------------------------------------------------

    @property
    def access_token(self) -> str | None:
        tokens = self.store.load()
        return tokens.access_token if tokens else None

    @property
    def refresh_token(self) -> str | None:
        tokens = self.store.load()
        return tokens.refresh_token if tokens else None

    def set_session(
        self, access_token: str, refresh_token: str | None = None, user_id: str | None = None
    ) -> None:
        """Store tokens from a login or refresh response."""
        current = self.store.load()
        self.store.save(
            StoredTokens(
                access_token=access_token,
                refresh_token=refresh_token or (current.refresh_token if current else None),
                user_id=user_id or (current.user_id if current else None),
            )
        )

    def clear_session(self) -> None:
        self.store.clear()

    def now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), UTC)

    def is_token_expired_or_near_expiry(self, token: str | None = None) -> bool:
        """
        True iff now >= issued_at + lifetime * threshold.

        A missing or undecodable token always needs a refresh.
        """
        token = token if token is not None else self.access_token
        if not token:
            return True

        try:
            decoded = SessionToken.decode(token)
        except MalformedTokenError as e:
            logger.debug("Token undecodable, treating as stale", error=str(e))
            return True

        return decoded.needs_refresh(self.now(), self.threshold)

    def seconds_until_refresh(self, token: str | None = None) -> float | None:
        """Delay until the proactive refresh is due (0 when due now, None without a token)."""
        token = token if token is not None else self.access_token
        if not token:
            return None

        try:
            decoded = SessionToken.decode(token)
        except MalformedTokenError:
            return 0.0

        remaining = (decoded.refresh_at(self.threshold) - self.now()).total_seconds()
        return max(0.0, remaining)

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    async def refresh(self) -> str:
        """
        Refresh the access token, sharing one in-flight call among all callers.

        Returns:
            str: The new access token

        Raises:
            TokenServiceError: If the refresh call fails; nothing is retried here
        """
        if self._refresh_task is None:
            self._refresh_task = asyncio.create_task(self._perform_refresh())
        # shield: one caller being cancelled must not cancel the shared refresh
        return await asyncio.shield(self._refresh_task)

    async def _perform_refresh(self) -> str:
        try:
            if self._refresh_call is None:
                raise TokenServiceError("No refresh transport configured", recoverable=False)

            self.refresh_count += 1
            logger.info("Refreshing access token", refresh_count=self.refresh_count)

            try:
                data = await self._refresh_call(self.refresh_token)
            except TokenServiceError:
                raise
            except Exception as e:
                logger.warning(
                    "Token refresh call failed",
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise TokenServiceError(
                    f"Token refresh failed: {e}", recoverable=getattr(e, "recoverable", True)
                ) from e

            new_token = (data or {}).get("token")
            if not new_token:
                raise TokenServiceError("No token in refresh response", recoverable=False)

            self.set_session(new_token, data.get("refreshToken"))
            logger.info("Token refresh successful")

            await self._notify_refreshed(new_token)

            if self._scheduling:
                self.schedule_proactive_refresh(after_refresh=True)

            return new_token
        finally:
            self._refresh_task = None

    async def ensure_fresh_token(self) -> str | None:
        """
        Guard for high-value calls: refresh first if the token is stale.

        Returns:
            The current access token, or None when there is no session.
        """
        token = self.access_token
        if not token:
            return None

        if self.is_token_expired_or_near_expiry(token):
            return await self.refresh()

        return token

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def on_refreshed(self, listener: TokenListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: TokenListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def _notify_refreshed(self, token: str) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(token)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning(
                    "Token refresh listener failed",
                    listener=getattr(listener, "__qualname__", repr(listener)),
                    error=str(e),
                )

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def schedule_proactive_refresh(self, after_refresh: bool = False) -> None:
        """
        Arm a one-shot timer for the token's refresh point, or refresh now if due.

        A token that is already stale right after a refresh is retried after
        ``check_interval`` instead of immediately. No token means nothing to
        schedule. Must be called from the event loop.
        """
        self._scheduling = True
        self._cancel_timer()

        token = self.access_token
        if not token:
            logger.debug("No token present, proactive refresh not scheduled")
            return

        delay = self.seconds_until_refresh(token)
        if not delay:
            if not after_refresh:
                logger.info("Token stale, refreshing immediately")
                self._spawn(self._background_refresh())
                return
            delay = self.check_interval
            logger.warning(
                "Refreshed token is already stale, delaying next refresh",
                delay_seconds=delay,
            )

        logger.debug("Proactive refresh scheduled", delay_seconds=round(delay, 1))
        self._refresh_timer = asyncio.create_task(self._refresh_after(delay))

    async def _refresh_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        # detach before refreshing; a successful refresh re-arms a new timer
        self._refresh_timer = None
        await self._background_refresh()

    async def _background_refresh(self) -> None:
        try:
            await self.refresh()
        except Exception as e:
            logger.warning(
                "Background token refresh failed",
                error=str(e),
                recoverable=getattr(e, "recoverable", True),
            )

    async def check_and_refresh(self) -> None:
        """Refresh if the stored token is stale; failures are logged only."""
        token = self.access_token
        if token and self.is_token_expired_or_near_expiry(token):
            await self._background_refresh()

    def handle_visibility_change(self, visible: bool) -> None:
        """Run the staleness check (and a ping) when the host comes back to the foreground."""
        was_visible = self._visible
        self._visible = visible
        if visible and not was_visible:
            logger.debug("Host became visible, checking token validity")
            self._spawn(self.check_and_refresh())
            self._spawn(self.ping_session())

    async def ping_session(self) -> dict:
        """
        Lightweight keep-alive against the backend.

        Never raises; returns a status dict describing the outcome.
        """
        if not self.access_token:
            return {"status": "no-token"}
        if self._ping_call is None:
            return {"status": "error", "message": "ping transport not configured"}

        try:
            data = await self._ping_call()
            return {"status": "ok", **(data or {})}
        except Exception as e:
            if getattr(e, "status_code", None) != 401:
                logger.debug("Session ping failed", error=str(e))
                return {"status": "error", "message": str(e)}

        logger.info("Session ping rejected, refreshing token")
        try:
            await self.refresh()
            return {"status": "refreshed"}
        except Exception as e:
            return {"status": "refresh-failed", "message": str(e)}

    def start(self) -> None:
        """Arm the proactive refresh plus the periodic check and ping loops."""
        self.schedule_proactive_refresh()
        if not self._loops:
            self._loops = [
                asyncio.create_task(self._periodic(self.check_interval, self.check_and_refresh)),
                asyncio.create_task(self._periodic(self.ping_interval, self._ping_if_visible)),
            ]
        logger.info(
            "Token lifecycle started",
            threshold=self.threshold,
            check_interval=self.check_interval,
            ping_interval=self.ping_interval,
        )

    async def _ping_if_visible(self) -> None:
        if self._visible:
            await self.ping_session()

    async def _periodic(self, interval: float, job: Callable[[], Awaitable]) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await job()
            except Exception as e:
                logger.warning("Periodic token job failed", job=job.__name__, error=str(e))

    async def stop(self) -> None:
        """Cancel timers and loops; registered listeners stay in place."""
        self._scheduling = False
        self._cancel_timer()
        tasks = [*self._loops, *self._background]
        if self._refresh_task is not None:
            tasks.append(self._refresh_task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._loops = []
        self._background.clear()
        self._refresh_task = None
        logger.info("Token lifecycle stopped")

    def _cancel_timer(self) -> None:
        if self._refresh_timer is not None:
            self._refresh_timer.cancel()
            self._refresh_timer = None

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    @property
    def has_pending_timer(self) -> bool:
        return self._refresh_timer is not None and not self._refresh_timer.done()

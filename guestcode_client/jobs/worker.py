"""
Generic session worker runner.

Reads the desired job name from CLI args or the WORKER_JOB environment
variable and runs it against a GuestCode session.
"""

import asyncio
import os
import sys
from collections.abc import Awaitable, Callable

from guestcode_client.config import settings
from guestcode_client.infrastructure.observability.logging import get_logger, setup_logging
from guestcode_client.models.domain.session_domain import MalformedTokenError, SessionToken
from guestcode_client.models.events import (
    ConnectionFailed,
    Connected,
    Disconnected,
    MessageRead,
    NewMessage,
    NewNotification,
    NotificationDeleted,
    NotificationUpdated,
    ReconnectAttempt,
    Reconnected,
)
from guestcode_client.services.session import AuthSession
from guestcode_client.services.token_storage import dumps_for_debug

logger = get_logger(__name__)

JobCoroutine = Callable[[], Awaitable[None]]

LOGGED_EVENTS = (
    Connected,
    Disconnected,
    ReconnectAttempt,
    Reconnected,
    ConnectionFailed,
    NewMessage,
    MessageRead,
    NewNotification,
    NotificationUpdated,
    NotificationDeleted,
)


async def listen() -> None:
    """Log in, keep the session alive and log inbound realtime events until stopped."""
    email = os.getenv("GUESTCODE_EMAIL")
    password = os.getenv("GUESTCODE_PASSWORD")

    async with AuthSession() as session:
        def log_event(event) -> None:
            logger.info("Realtime event", event_kind=event.kind, **_event_summary(session, event))

        for event_type in LOGGED_EVENTS:
            session.bus.subscribe(event_type, log_event)

        user = await session.restore()
        if user is None:
            if not email or not password:
                raise ValueError("GUESTCODE_EMAIL and GUESTCODE_PASSWORD are required to log in")
            user = await session.login(email, password)

        stopped = asyncio.Event()
        session.bus.subscribe(ConnectionFailed, lambda event: stopped.set())

        logger.info(
            "Listening for realtime events",
            user_id=user.id,
            conversations=len(session.chat.conversations),
            unread_messages=session.chat.unread_count,
            unread_notifications=session.notifications.unread_count,
        )
        try:
            await stopped.wait()
        finally:
            await session.logout()


def _event_summary(session: AuthSession, event) -> dict:
    summary: dict = {}
    if isinstance(event, NewMessage):
        summary["chat_id"] = event.chat_id
        summary["unread_messages"] = session.chat.unread_count if session.chat else None
    elif isinstance(event, NewNotification | NotificationUpdated):
        summary["notification_id"] = event.notification.id
        summary["unread_notifications"] = (
            session.notifications.unread_count if session.notifications else None
        )
    elif isinstance(event, ConnectionFailed):
        summary["error"] = event.error
    return summary


async def token_check() -> None:
    """Report the stored token's expiry and refresh it if it is stale."""
    async with AuthSession() as session:
        tokens = session.tokens
        logger.info("Stored session", tokens=dumps_for_debug(tokens.store.load()))

        token = tokens.access_token
        if not token:
            logger.info("No stored token")
            return

        try:
            decoded = SessionToken.decode(token)
            logger.info(
                "Token status",
                issued_at=decoded.issued_at.isoformat(),
                expires_at=decoded.expires_at.isoformat(),
                refresh_at=decoded.refresh_at(tokens.threshold).isoformat(),
                expired=decoded.is_expired(tokens.now()),
            )
        except MalformedTokenError as e:
            logger.warning("Stored token is malformed", error=str(e))

        if tokens.is_token_expired_or_near_expiry(token):
            await tokens.refresh()
            logger.info("Token refreshed", seconds_until_refresh=tokens.seconds_until_refresh())
        else:
            logger.info("Token fresh", seconds_until_refresh=tokens.seconds_until_refresh())


JOB_REGISTRY: dict[str, JobCoroutine] = {
    "listen": listen,
    "token_check": token_check,
}


def _resolve_job_name() -> str:
    """Pick the target job from CLI args or WORKER_JOB env variable."""
    if len(sys.argv) > 1:
        return sys.argv[1].strip().lower()
    return os.getenv("WORKER_JOB", "listen").strip().lower()


async def run_worker(job_name: str | None = None) -> None:
    """Run the requested job."""
    name = (job_name or _resolve_job_name()).strip().lower()
    if name not in JOB_REGISTRY:
        raise ValueError(
            f"Unknown worker job '{name}'. "
            f"Available jobs: {', '.join(sorted(JOB_REGISTRY.keys()))}"
        )

    logger.info("Starting worker", job=name)
    await JOB_REGISTRY[name]()


def main() -> None:
    """CLI entrypoint."""
    setup_logging(settings.LOG_LEVEL, settings.environment)
    job_name = _resolve_job_name()
    try:
        asyncio.run(run_worker(job_name))
    except KeyboardInterrupt:
        logger.info("Worker interrupted", job=job_name)


if __name__ == "__main__":
    main()

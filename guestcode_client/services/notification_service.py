"""
Notification store.

Keeps the user's notifications and the unread counter in step: every change
to an item's read status updates the counter in the same synchronous step.
"""

import asyncio

from guestcode_client.errors import GuestCodeClientError
from guestcode_client.infrastructure.events.bus import EventBus
from guestcode_client.infrastructure.observability.logging import get_logger
from guestcode_client.models.domain.notification_domain import Notification
from guestcode_client.models.events import (
    NewNotification,
    NotificationDeleted,
    NotificationUpdated,
)
from guestcode_client.services.api_client import GuestCodeApiClient

logger = get_logger(__name__)


class NotificationServiceError(GuestCodeClientError):
    """Custom exception for notification store operations."""

    def __init__(
        self, message: str, failed_ids: list[str] | None = None, recoverable: bool = True
    ):
        super().__init__(message, recoverable=recoverable)
        self.failed_ids = failed_ids or []


class NotificationStore:
    """Newest-first list of notifications plus the unread counter."""

    def __init__(self, api: GuestCodeApiClient, bus: EventBus, user_id: str):
        self.api = api
        self.user_id = user_id
        self.notifications: list[Notification] = []
        self.unread_count = 0

        self._unsubscribers = [
            bus.subscribe(NewNotification, self.handle_new_notification),
            bus.subscribe(NotificationUpdated, self.handle_notification_updated),
            bus.subscribe(NotificationDeleted, self.handle_notification_deleted),
        ]

    def get(self, notification_id: str) -> Notification | None:
        for notification in self.notifications:
            if notification.id == notification_id:
                return notification
        return None

    def _recount(self) -> None:
        self.unread_count = sum(1 for n in self.notifications if not n.read)

    async def fetch_notifications(self) -> list[Notification]:
        data = await self.api.list_notifications(self.user_id)
        self.notifications = [Notification.model_validate(item) for item in data or []]
        self._recount()

        logger.info(
            "Notifications fetched",
            count=len(self.notifications),
            unread_count=self.unread_count,
        )
        return self.notifications

    async def mark_as_read(self, notification_id: str) -> Notification | None:
        """
        Persist the read flag, then apply it locally.

        An expired token is refreshed once and the call retried once by the API
        client; any other failure propagates without retry.
        """
        try:
            await self.api.mark_notification_read(notification_id)
        except Exception as e:
            logger.error(
                "Failed to mark notification as read",
                notification_id=notification_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise

        notification = self.get(notification_id)
        if notification is not None and not notification.read:
            notification.read = True
            self.unread_count = max(0, self.unread_count - 1)
        return notification

    async def clear_all(self) -> None:
        """
        Delete every held notification, one request each.

        All deletes are awaited; confirmed ones are removed locally and any
        failures stay in the list and are reported together.
        """
        targets = list(self.notifications)
        if not targets:
            return

        results = await asyncio.gather(
            *(self.api.delete_notification(n.id) for n in targets),
            return_exceptions=True,
        )

        failed: list[str] = []
        deleted: set[str] = set()
        for notification, result in zip(targets, results, strict=True):
            if isinstance(result, BaseException):
                failed.append(notification.id)
                logger.warning(
                    "Failed to delete notification",
                    notification_id=notification.id,
                    error=str(result),
                )
            else:
                deleted.add(notification.id)

        self.notifications = [n for n in self.notifications if n.id not in deleted]
        self._recount()

        logger.info("Notifications cleared", deleted=len(deleted), failed=len(failed))

        if failed:
            raise NotificationServiceError(
                f"Failed to delete {len(failed)} of {len(targets)} notifications",
                failed_ids=failed,
            )

    # ------------------------------------------------------------------
    # Realtime handlers
    # ------------------------------------------------------------------

    def handle_new_notification(self, event: NewNotification) -> None:
        notification = event.notification
        if self.get(notification.id) is not None:
            return
        self.notifications.insert(0, notification)
        if not notification.read:
            self.unread_count += 1

    def handle_notification_updated(self, event: NotificationUpdated) -> None:
        updated = event.notification
        for index, notification in enumerate(self.notifications):
            if notification.id == updated.id:
                self.notifications[index] = updated
                self._recount()
                return
        logger.debug("Update for unknown notification dropped", notification_id=updated.id)

    def handle_notification_deleted(self, event: NotificationDeleted) -> None:
        remaining = [n for n in self.notifications if n.id != event.notification_id]
        if len(remaining) != len(self.notifications):
            self.notifications = remaining
            self._recount()

    def close(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

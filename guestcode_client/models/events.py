"""
Inbound realtime events.

Every event the realtime transport can deliver is a model in the closed
``RealtimeEvent`` union, tagged by ``kind`` (the wire event name). Consumers
subscribe to concrete event classes on the event bus instead of string names.
"""

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from guestcode_client.infrastructure.observability.logging import get_logger
from guestcode_client.models.domain.chat_domain import Message
from guestcode_client.models.domain.notification_domain import Notification

logger = get_logger(__name__)


class _Event(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)


# Connection lifecycle (synthesised by the connection manager)
class Connected(_Event):
    kind: Literal["connect"] = "connect"


class Disconnected(_Event):
    kind: Literal["disconnect"] = "disconnect"
    reason: str | None = None


class ReconnectAttempt(_Event):
    kind: Literal["reconnect_attempt"] = "reconnect_attempt"
    attempt: int
    delay: float


class Reconnected(_Event):
    kind: Literal["reconnect"] = "reconnect"
    attempts: int


class ConnectionFailed(_Event):
    """Terminal: the attempt ceiling was reached or the server rejected the session."""

    kind: Literal["connect_failed"] = "connect_failed"
    error: str
    attempts: int


# Presence
class OnlineUser(_Event):
    user_id: str = Field(alias="userId")
    user_data: dict[str, Any] = Field(default_factory=dict, alias="userData")


class InitialOnlineUsers(_Event):
    kind: Literal["initial_online_users"] = "initial_online_users"
    users: list[OnlineUser]


class UserConnected(_Event):
    kind: Literal["user_connected"] = "user_connected"
    user_id: str = Field(alias="userId")
    user_data: dict[str, Any] = Field(default_factory=dict, alias="userData")


class UserDisconnected(_Event):
    kind: Literal["user_disconnected"] = "user_disconnected"
    user_id: str = Field(alias="userId")


class UserStatus(_Event):
    """Combined presence event still emitted by older backend builds."""

    kind: Literal["user_status"] = "user_status"
    user_id: str = Field(alias="userId")
    status: Literal["online", "offline"]
    user_data: dict[str, Any] | None = Field(default=None, alias="userData")


# Chat
class NewMessage(_Event):
    kind: Literal["new_message"] = "new_message"
    chat_id: str = Field(alias="chatId")
    message: Message


class MessageRead(_Event):
    kind: Literal["message_read"] = "message_read"
    chat_id: str = Field(alias="chatId")
    user_id: str = Field(alias="userId")


# Notifications
class NewNotification(_Event):
    kind: Literal["new_notification"] = "new_notification"
    notification: Notification


class NotificationUpdated(_Event):
    kind: Literal["notification_updated"] = "notification_updated"
    notification: Notification


class NotificationDeleted(_Event):
    kind: Literal["notification_deleted"] = "notification_deleted"
    notification_id: str


RealtimeEvent = Annotated[
    Connected
    | Disconnected
    | ReconnectAttempt
    | Reconnected
    | ConnectionFailed
    | InitialOnlineUsers
    | UserConnected
    | UserDisconnected
    | UserStatus
    | NewMessage
    | MessageRead
    | NewNotification
    | NotificationUpdated
    | NotificationDeleted,
    Field(discriminator="kind"),
]

_event_adapter: TypeAdapter[RealtimeEvent] = TypeAdapter(RealtimeEvent)

# Server events the connection manager forwards from the transport
SERVER_EVENTS = (
    "initial_online_users",
    "user_connected",
    "user_disconnected",
    "user_status",
    "new_message",
    "message_read",
    "new_notification",
    "notification_updated",
    "notification_deleted",
)


def _bare_id(payload: Any, *keys: str) -> Any:
    if isinstance(payload, dict):
        for key in keys:
            if payload.get(key):
                return payload[key]
    return payload


def _shape_payload(name: str, payload: Any) -> dict:
    """Wrap wire payloads whose top level is not an object."""
    if name == "initial_online_users":
        return {"kind": name, "users": payload or []}
    if name == "user_disconnected":
        return {"kind": name, "userId": _bare_id(payload, "userId", "_id")}
    if name in ("new_notification", "notification_updated"):
        return {"kind": name, "notification": payload}
    if name == "notification_deleted":
        return {"kind": name, "notification_id": _bare_id(payload, "_id", "notificationId")}
    if isinstance(payload, dict):
        return {**payload, "kind": name}
    return {"kind": name}


def parse_event(name: str, payload: Any = None) -> RealtimeEvent | None:
    """
    Build a typed event from a wire event name and payload.

    Returns None for unknown event names and for payloads that do not match
    the event's shape; both are logged and otherwise ignored.
    """
    if name not in SERVER_EVENTS:
        logger.debug("Ignoring unknown realtime event", event_name=name)
        return None

    try:
        return _event_adapter.validate_python(_shape_payload(name, payload))
    except ValidationError as e:
        logger.warning(
            "Dropping malformed realtime event",
            event_name=name,
            error_count=e.error_count(),
        )
        return None

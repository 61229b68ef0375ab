# models/domain/chat_domain.py
"""
Conversation and message domain models.
"""

from datetime import UTC, datetime
from typing import Any

from pydantic import Field, field_validator, model_validator

from guestcode_client.models.domain.base import BackendDocument, ensure_aware

EPOCH = datetime.fromtimestamp(0, UTC)


class Message(BackendDocument):
    """A chat message; ``id`` is None while an optimistic send is pending."""

    id: str | None = Field(default=None, alias="_id")
    sender_id: str | None = Field(default=None, alias="senderId")
    sender: dict[str, Any] | None = None
    content: str = ""
    created_at: datetime | None = Field(default=None, alias="createdAt")
    client_id: str | None = Field(default=None, alias="clientId")
    pending: bool = False

    @model_validator(mode="before")
    @classmethod
    def _normalise_sender(cls, data: Any) -> Any:
        # sender arrives either populated ({_id, username, avatar}) or as a bare id
        if not isinstance(data, dict):
            return data
        data = dict(data)
        sender = data.get("sender")
        if isinstance(sender, dict):
            data.setdefault("senderId", sender.get("_id") or sender.get("id"))
        elif isinstance(sender, str):
            data.setdefault("senderId", sender)
            data["sender"] = None
        return data

    @field_validator("created_at")
    @classmethod
    def _aware_created_at(cls, value: datetime | None) -> datetime | None:
        return ensure_aware(value)


class Conversation(BackendDocument):
    """A conversation as held locally (current user removed from participants)."""

    id: str = Field(alias="_id")
    type: str | None = None
    participants: list[Any] = Field(default_factory=list)
    messages: list[Message] = Field(default_factory=list)
    last_message: Message | None = Field(default=None, alias="lastMessage")
    unread_count: int = Field(default=0, alias="unreadCount", ge=0)
    updated_at: datetime | None = Field(default=None, alias="updatedAt")

    @model_validator(mode="before")
    @classmethod
    def _drop_unpopulated_refs(cls, data: Any) -> Any:
        # unpopulated message references arrive as bare ObjectId strings
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if isinstance(data.get("lastMessage"), str):
            data["lastMessage"] = None
        if isinstance(data.get("messages"), list):
            data["messages"] = [m for m in data["messages"] if not isinstance(m, str)]
        elif data.get("messages") is None:
            data.pop("messages", None)
        return data

    @field_validator("updated_at")
    @classmethod
    def _aware_updated_at(cls, value: datetime | None) -> datetime | None:
        return ensure_aware(value)

    def activity_time(self) -> datetime:
        return self.updated_at or EPOCH

    def has_message(self, message: Message) -> bool:
        """True if the message (by server id or client correlation id) is already held."""
        for existing in self.messages:
            if message.id and existing.id == message.id:
                return True
            if message.client_id and existing.client_id == message.client_id:
                return True
        return False

    def without_participant(self, user_id: str) -> "Conversation":
        return self.model_copy(
            update={"participants": [p for p in self.participants if participant_id(p) != user_id]}
        )


def participant_id(participant: Any) -> str | None:
    """Participants are populated user objects or bare ids."""
    if isinstance(participant, dict):
        return participant.get("_id") or participant.get("id")
    if isinstance(participant, str):
        return participant
    return None

from datetime import datetime

from pydantic import Field, field_validator

from guestcode_client.models.domain.base import BackendDocument, ensure_aware


class Notification(BackendDocument):
    """Domain model for a user notification."""

    id: str = Field(alias="_id")
    type: str | None = None
    title: str | None = None
    message: str | None = None
    read: bool = False
    created_at: datetime | None = Field(default=None, alias="createdAt")

    @field_validator("created_at")
    @classmethod
    def _aware_created_at(cls, value: datetime | None) -> datetime | None:
        return ensure_aware(value)

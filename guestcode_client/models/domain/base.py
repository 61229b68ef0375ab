"""Shared pydantic base for backend documents."""

from datetime import UTC, datetime

from pydantic import BaseModel, ConfigDict


def ensure_aware(value: datetime | None) -> datetime | None:
    """Backend timestamps without an offset are UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class BackendDocument(BaseModel):
    """
    Base for documents returned by the REST API and realtime events.

    Accepts both the wire names (``_id``, ``createdAt``) and the Python field
    names, and keeps unknown fields so nothing the backend sends is lost.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

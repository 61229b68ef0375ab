from pydantic import Field

from guestcode_client.models.domain.base import BackendDocument


class User(BackendDocument):
    """Authenticated user as returned by login and /auth/user."""

    id: str = Field(alias="_id")
    username: str | None = None
    email: str | None = None
    first_name: str | None = Field(default=None, alias="firstName")
    last_name: str | None = Field(default=None, alias="lastName")
    avatar: str | dict | None = None

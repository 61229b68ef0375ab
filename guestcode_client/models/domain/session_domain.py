"""
Session token and connection state domain models.
"""

from datetime import UTC, datetime, timedelta
from enum import Enum

import jwt
from pydantic import BaseModel


class MalformedTokenError(ValueError):
    """Token cannot be decoded or lacks iat/exp claims."""


class SessionToken(BaseModel):
    """Decoded view of an access token (signature is never verified client-side)."""

    token: str
    issued_at: datetime
    expires_at: datetime

    @classmethod
    def decode(cls, token: str) -> "SessionToken":
        if not token:
            raise MalformedTokenError("Empty token")

        try:
            claims = jwt.decode(
                token,
                options={
                    "verify_signature": False,
                    "verify_exp": False,
                    "verify_iat": False,
                    "verify_nbf": False,
                },
            )
        except jwt.PyJWTError as e:
            raise MalformedTokenError(f"Undecodable token: {e}") from e

        iat = claims.get("iat")
        exp = claims.get("exp")
        if not isinstance(iat, int | float) or not isinstance(exp, int | float):
            raise MalformedTokenError("Token is missing iat/exp claims")
        if exp <= iat:
            raise MalformedTokenError("Token expires before it was issued")

        return cls(
            token=token,
            issued_at=datetime.fromtimestamp(iat, UTC),
            expires_at=datetime.fromtimestamp(exp, UTC),
        )

    @property
    def lifetime(self) -> timedelta:
        return self.expires_at - self.issued_at

    def refresh_at(self, threshold: float) -> datetime:
        """Point in time after which the token counts as near expiry."""
        return self.issued_at + self.lifetime * threshold

    def needs_refresh(self, now: datetime, threshold: float) -> bool:
        return now >= self.refresh_at(threshold)

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class StoredTokens(BaseModel):
    """What the token store persists between runs."""

    access_token: str
    refresh_token: str | None = None
    user_id: str | None = None


class ConnectionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"

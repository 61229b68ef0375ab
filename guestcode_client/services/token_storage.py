"""
Durable storage for the current session tokens.

The access token is read by the token lifecycle manager and by the API
client's auth-header injection, so both share one store instance.
"""

import json
import os
import tempfile
from pathlib import Path
from typing import Protocol

from pydantic import ValidationError

from guestcode_client.config import Settings
from guestcode_client.infrastructure.observability.logging import get_logger
from guestcode_client.models.domain.session_domain import StoredTokens
from guestcode_client.services.encryption_service import (
    EncryptionError,
    decrypt_data,
    encrypt_data,
)

logger = get_logger(__name__)


class TokenStorageError(Exception):
    """Raised when tokens cannot be persisted."""

    def __init__(self, message: str, path: str | None = None):
        super().__init__(message)
        self.path = path


class TokenStore(Protocol):
    def load(self) -> StoredTokens | None: ...

    def save(self, tokens: StoredTokens) -> None: ...

    def clear(self) -> None: ...


class MemoryTokenStore:
    """Process-local storage; the session ends with the process."""

    def __init__(self, tokens: StoredTokens | None = None):
        self._tokens = tokens

    def load(self) -> StoredTokens | None:
        return self._tokens

    def save(self, tokens: StoredTokens) -> None:
        self._tokens = tokens

    def clear(self) -> None:
        self._tokens = None


class EncryptedFileTokenStore:
    """
    Fernet-encrypted JSON file.

    Writes go to a temp file in the same directory and are moved into place,
    so a crash never leaves a half-written token file behind. An unreadable
    file is treated as "no stored session".
    """

    def __init__(self, path: str | Path, encryption_key: str | None = None):
        self.path = Path(path)
        self._key = encryption_key

    def load(self) -> StoredTokens | None:
        if not self.path.exists():
            return None

        try:
            raw = decrypt_data(self.path.read_bytes(), self._key)
            return StoredTokens.model_validate_json(raw)
        except (EncryptionError, ValidationError, OSError) as e:
            logger.warning(
                "Stored session unreadable, ignoring",
                path=str(self.path),
                error=str(e),
                error_type=type(e).__name__,
            )
            return None

    def save(self, tokens: StoredTokens) -> None:
        try:
            payload = encrypt_data(tokens.model_dump_json(), self._key)
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, prefix=".tokens-")
            try:
                with os.fdopen(fd, "wb") as fh:
                    fh.write(payload)
                os.chmod(tmp_path, 0o600)
                os.replace(tmp_path, self.path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise
        except (EncryptionError, OSError) as e:
            logger.error("Failed to persist session tokens", path=str(self.path), error=str(e))
            raise TokenStorageError(f"Failed to persist tokens: {e}", path=str(self.path)) from e

        logger.debug("Session tokens persisted", path=str(self.path))

    def clear(self) -> None:
        try:
            self.path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning("Failed to remove token file", path=str(self.path), error=str(e))


def build_token_store(config: Settings) -> TokenStore:
    """Pick the storage backend from settings."""
    store_config = config.token_store_config()
    if store_config["path"]:
        if not store_config["encrypted"]:
            raise TokenStorageError(
                "TOKEN_STORE_PATH requires ENCRYPTION_KEY", path=store_config["path"]
            )
        return EncryptedFileTokenStore(store_config["path"], config.ENCRYPTION_KEY)
    return MemoryTokenStore()


def dumps_for_debug(tokens: StoredTokens | None) -> str:
    """Redacted JSON view of stored tokens for log output."""
    if tokens is None:
        return "null"
    return json.dumps(
        {
            "access_token": tokens.access_token[:12] + "...",
            "has_refresh_token": bool(tokens.refresh_token),
            "user_id": tokens.user_id,
        }
    )

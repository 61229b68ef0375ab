"""
Encryption service for stored session tokens.
Uses Fernet symmetric encryption so tokens never touch disk in plain text.
"""

from cryptography.fernet import Fernet, InvalidToken

from guestcode_client.config import settings
from guestcode_client.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class EncryptionError(Exception):
    """Custom exception for encryption/decryption errors."""

    pass


def _get_fernet(key: str | None = None) -> Fernet:
    """
    Get Fernet instance for the given key or the configured ENCRYPTION_KEY.

    Raises:
        EncryptionError: If no key is configured or the key is invalid
    """
    key = key or settings.ENCRYPTION_KEY
    if not key:
        raise EncryptionError("ENCRYPTION_KEY not configured in environment")

    try:
        return Fernet(key.encode("utf-8"))
    except Exception as e:
        logger.error("Failed to initialize Fernet cipher", error=str(e))
        raise EncryptionError(f"Invalid encryption key: {e}") from e


def encrypt_data(data: str, key: str | None = None) -> bytes:
    """
    Encrypt a string payload.

    Args:
        data: Plain text to encrypt
        key: Fernet key; defaults to settings.ENCRYPTION_KEY

    Returns:
        bytes: Fernet token

    Raises:
        EncryptionError: If encryption fails
    """
    if not data or not isinstance(data, str):
        raise EncryptionError("Data must be a non-empty string")

    fernet = _get_fernet(key)
    try:
        return fernet.encrypt(data.encode("utf-8"))
    except Exception as e:
        logger.error("Failed to encrypt data", error=str(e))
        raise EncryptionError(f"Encryption failed: {e}") from e


def decrypt_data(encrypted: bytes, key: str | None = None) -> str:
    """
    Decrypt a payload produced by encrypt_data.

    Raises:
        EncryptionError: If decryption fails or the payload was tampered with
    """
    if not encrypted or not isinstance(encrypted, bytes):
        raise EncryptionError("Encrypted data must be non-empty bytes")

    fernet = _get_fernet(key)
    try:
        return fernet.decrypt(encrypted).decode("utf-8")
    except InvalidToken as e:
        logger.error("Decryption failed - invalid or corrupted payload")
        raise EncryptionError("Invalid or corrupted payload") from e
    except Exception as e:
        logger.error("Failed to decrypt data", error=str(e))
        raise EncryptionError(f"Decryption failed: {e}") from e


def validate_encryption_config(key: str | None = None) -> bool:
    """Round-trip a probe value to check the key is usable."""
    try:
        probe = "guestcode_probe"
        return decrypt_data(encrypt_data(probe, key), key) == probe
    except EncryptionError as e:
        logger.error("Encryption configuration validation failed", error=str(e))
        return False


def generate_new_key() -> str:
    """
    Generate a new Fernet encryption key.

    Note:
        Store the result in ENCRYPTION_KEY; rotating it invalidates stored sessions.
    """
    return Fernet.generate_key().decode("utf-8")

"""
Encryption service for stored integration credentials.
Uses Fernet symmetric encryption for secure token storage.
"""

from cryptography.fernet import Fernet, InvalidToken

from syncwatch.config import settings
from syncwatch.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class EncryptionError(Exception):
    """Custom exception for encryption/decryption errors."""

    pass


def _get_fernet() -> Fernet:
    """
    Get Fernet instance with encryption key from environment.

    Raises:
        EncryptionError: If encryption key is not configured
    """
    if not settings.ENCRYPTION_KEY:
        raise EncryptionError("ENCRYPTION_KEY not configured in environment")

    try:
        return Fernet(settings.ENCRYPTION_KEY.encode("utf-8"))
    except Exception as e:
        logger.error("Failed to initialize Fernet cipher", error=str(e))
        raise EncryptionError(f"Invalid encryption key: {e}") from e


def encrypt_token(token: str) -> bytes:
    """
    Encrypt a token string for database storage.

    Returns:
        bytes: Encrypted token (ready for BYTEA storage)
    """
    if not token or not isinstance(token, str):
        raise EncryptionError("Token must be a non-empty string")

    try:
        return _get_fernet().encrypt(token.encode("utf-8"))
    except EncryptionError:
        raise
    except Exception as e:
        logger.error("Failed to encrypt token", error=str(e))
        raise EncryptionError(f"Encryption failed: {e}") from e


def decrypt_token(encrypted_token: bytes) -> str:
    """
    Decrypt a token from database storage.

    Raises:
        EncryptionError: If decryption fails or token is invalid
    """
    if isinstance(encrypted_token, memoryview):
        encrypted_token = bytes(encrypted_token)
    if not encrypted_token or not isinstance(encrypted_token, bytes):
        raise EncryptionError("Encrypted token must be non-empty bytes")

    try:
        return _get_fernet().decrypt(encrypted_token).decode("utf-8")
    except InvalidToken as e:
        logger.error("Token decryption failed - invalid token", error=str(e))
        raise EncryptionError("Invalid or corrupted token") from e
    except EncryptionError:
        raise
    except Exception as e:
        logger.error("Failed to decrypt token", error=str(e))
        raise EncryptionError(f"Decryption failed: {e}") from e


def encrypt_credentials(
    access_token: str, refresh_token: str | None = None
) -> tuple[bytes, bytes | None]:
    """Encrypt an access/refresh token pair."""
    encrypted_access = encrypt_token(access_token)
    encrypted_refresh = encrypt_token(refresh_token) if refresh_token else None
    return encrypted_access, encrypted_refresh


def decrypt_credentials(
    encrypted_access: bytes, encrypted_refresh: bytes | None = None
) -> tuple[str, str | None]:
    """Decrypt an access/refresh token pair."""
    access_token = decrypt_token(encrypted_access)
    refresh_token = decrypt_token(encrypted_refresh) if encrypted_refresh else None
    return access_token, refresh_token


def validate_encryption_config() -> bool:
    """True if ENCRYPTION_KEY is configured and round-trips."""
    try:
        sample = "syncwatch_encryption_check"
        is_valid = decrypt_token(encrypt_token(sample)) == sample
        if not is_valid:
            logger.error("Encryption validation failed - data mismatch")
        return is_valid
    except Exception as e:
        logger.error("Encryption configuration validation failed", error=str(e))
        return False

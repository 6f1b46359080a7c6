"""
Token Encryption Utilities

Provides encryption and decryption of mailbox OAuth credentials at rest
using Fernet symmetric encryption with a key supplied by the environment.

Design Considerations:
- Credential-at-rest encryption is mandatory: a missing or malformed key
  is a configuration error raised at startup, never a silent fallback
- Lazily constructed cipher so the key is read once per process
- Clear error types for configuration and decryption failures
"""

import os
import logging
from functools import lru_cache
from typing import Optional, Union

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)

ENCRYPTION_KEY_ENV = "TOKEN_ENCRYPTION_KEY"


class EncryptionConfigError(RuntimeError):
    """Raised when the token encryption key is absent or unusable."""


def get_encryption_key() -> bytes:
    """
    Load the Fernet key used for token encryption.

    Returns:
        bytes: urlsafe-base64 encoded 32-byte Fernet key

    Raises:
        EncryptionConfigError: If the key is not set or is not a valid Fernet key
    """
    key_str = os.getenv(ENCRYPTION_KEY_ENV)
    if not key_str:
        raise EncryptionConfigError(
            f"{ENCRYPTION_KEY_ENV} is not set. Generate one with "
            "`python -c 'from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())'`"
        )

    key = key_str.strip().encode("utf-8")
    try:
        Fernet(key)
    except (ValueError, TypeError) as e:
        raise EncryptionConfigError(f"{ENCRYPTION_KEY_ENV} is not a valid Fernet key: {str(e)}")

    return key


@lru_cache(maxsize=1)
def get_cipher() -> Fernet:
    """Return the process-wide Fernet cipher, built from the configured key."""
    cipher = Fernet(get_encryption_key())
    logger.info("Encryption system initialized successfully")
    return cipher


def validate_encryption_config() -> None:
    """
    Fail fast when token encryption is not configured.

    Called during application startup so a deployment without a key
    refuses to run instead of storing credentials in clear text.

    Raises:
        EncryptionConfigError: If the key is missing or invalid
    """
    get_cipher.cache_clear()
    get_cipher()


def encrypt_value(value: Optional[Union[str, bytes]]) -> Optional[str]:
    """
    Encrypt a sensitive value.

    Args:
        value: String or bytes value to encrypt

    Returns:
        Fernet token as a string, or None when value is None

    Raises:
        ValueError: If encryption fails
    """
    if value is None:
        return None

    value_bytes = value.encode("utf-8") if isinstance(value, str) else value
    try:
        return get_cipher().encrypt(value_bytes).decode("utf-8")
    except EncryptionConfigError:
        raise
    except Exception as e:
        logger.error(f"Encryption error: {str(e)}")
        raise ValueError(f"Failed to encrypt value: {str(e)}")


def decrypt_value(encrypted_value: Optional[str]) -> Optional[str]:
    """
    Decrypt a value produced by encrypt_value.

    Args:
        encrypted_value: Fernet token string

    Returns:
        Decrypted string value, or None when encrypted_value is None

    Raises:
        ValueError: If the token is corrupt or was encrypted with another key
    """
    if encrypted_value is None:
        return None

    try:
        return get_cipher().decrypt(encrypted_value.encode("utf-8")).decode("utf-8")
    except InvalidToken:
        logger.error("Decryption error: token is invalid or was encrypted with a different key")
        raise ValueError("Failed to decrypt value: invalid token")

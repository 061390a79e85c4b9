"""
Secret storage helpers.

Tokens and API keys are Fernet-encrypted at rest when an encryption key is
configured, and stored as-is otherwise (development).
"""

import logging

from cryptography.fernet import Fernet, InvalidToken

from whatsapp_bridge.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


def encrypt_secret(value: str | None, encryption_key: str | None) -> str | None:
    """Encrypt a secret for storage."""
    if value is None or not encryption_key:
        return value
    f = Fernet(encryption_key.encode())
    return f.encrypt(value.encode()).decode()


def decrypt_secret(value: str | None, encryption_key: str | None) -> str | None:
    """Decrypt a stored secret."""
    if value is None or not encryption_key:
        return value
    f = Fernet(encryption_key.encode())
    try:
        return f.decrypt(value.encode()).decode()
    except InvalidToken as e:
        logger.error("Failed to decrypt stored secret")
        raise ConfigurationError(
            "Stored secret cannot be decrypted with the configured key",
            code="DECRYPT_FAILED",
        ) from e

"""
Token encryption helpers for the token store.

Wraps TokenEncryptionService for credential-specific use.

SECURITY REQUIREMENTS:
- Uses AES-256-GCM keyed from ENCRYPTION_SECRET
- No plaintext tokens outside process memory
- Encryption validated on startup
- Clear error messages without exposing sensitive data

Usage:
    from slack_connector.credentials.encryption import encrypt_token, decrypt_stored_token

    envelope = await encrypt_token(service, access_token)
    plaintext = await decrypt_stored_token(service, token_row)
"""

import logging

from slack_connector.config.settings import SecuritySettings
from slack_connector.models.slack_token import SlackToken
from slack_connector.utils.encryption import (
    DecryptionError,
    EncryptedToken,
    EncryptionConfigError,
    EncryptionError,
    TokenEncryptionService,
)

logger = logging.getLogger(__name__)


class CredentialEncryptionError(Exception):
    """Raised when token encryption/decryption fails."""

    def __init__(self, message: str, operation: str = "unknown"):
        self.operation = operation
        super().__init__(message)


def build_encryption_service(settings: SecuritySettings) -> TokenEncryptionService:
    """
    Create the process-wide encryption service.

    Raises:
        EncryptionConfigError: If ENCRYPTION_SECRET is missing or too short
    """
    return TokenEncryptionService(
        secret=settings.encryption_secret,
        key_id=settings.encryption_key_id,
        previous_secrets=settings.previous_secrets,
    )


async def encrypt_token(service: TokenEncryptionService, plaintext: str) -> EncryptedToken:
    """
    Encrypt a Slack token for storage.

    Raises:
        CredentialEncryptionError: If encryption fails
        ValueError: If plaintext is empty
    """
    if not plaintext:
        raise ValueError("Cannot encrypt empty token")

    try:
        return service.encrypt(plaintext)
    except EncryptionError as e:
        logger.error(
            "Token encryption failed",
            extra={"operation": "encrypt_token", "error_type": type(e).__name__}
        )
        raise CredentialEncryptionError("Failed to encrypt token", operation="encrypt") from e


async def decrypt_stored_token(service: TokenEncryptionService, token: SlackToken) -> str:
    """
    Decrypt a stored token row.

    SECURITY:
    - Decrypted value must NEVER be logged

    Raises:
        CredentialEncryptionError: If the envelope cannot be decrypted
    """
    try:
        return service.decrypt(
            token.encrypted_token,
            key_id=token.key_id,
            algorithm=token.encryption_algorithm,
        )
    except DecryptionError as e:
        logger.error(
            "Token decryption failed",
            extra={"operation": "decrypt_token", "token_id": token.id, "error_type": type(e).__name__}
        )
        raise CredentialEncryptionError(
            "Failed to decrypt token. Token may be corrupted or its key retired.",
            operation="decrypt"
        ) from e


async def reencrypt_token(service: TokenEncryptionService, token: SlackToken) -> bool:
    """
    Re-encrypt a token row under the active key, in place.

    Returns:
        False when the row already uses the active key

    Raises:
        CredentialEncryptionError: If decryption or encryption fails
    """
    if token.key_id == service.active_key_id:
        return False

    if not service.has_key(token.key_id):
        logger.error(
            "Token key is not loaded",
            extra={"operation": "reencrypt_token", "token_id": token.id, "key_id": token.key_id}
        )
        raise CredentialEncryptionError(
            f"Encryption key '{token.key_id}' is not configured",
            operation="reencrypt"
        )

    try:
        envelope = service.encrypt_envelope(EncryptedToken(
            encrypted_token=token.encrypted_token,
            algorithm=token.encryption_algorithm,
            key_id=token.key_id,
        ))
    except (DecryptionError, EncryptionError) as e:
        logger.error(
            "Token re-encryption failed",
            extra={"operation": "reencrypt_token", "token_id": token.id, "error_type": type(e).__name__}
        )
        raise CredentialEncryptionError(
            "Failed to re-encrypt token. Token may be corrupted.",
            operation="reencrypt"
        ) from e

    token.encrypted_token = envelope.encrypted_token
    token.encryption_algorithm = envelope.algorithm
    token.key_id = envelope.key_id
    return True


def validate_encryption_ready(service: TokenEncryptionService) -> bool:
    """
    Fail fast at startup if encryption does not round-trip.

    Raises:
        CredentialEncryptionError: If the self-test fails
    """
    if not service.self_test():
        raise CredentialEncryptionError(
            "Encryption self-test failed. Check ENCRYPTION_SECRET.",
            operation="validate"
        )

    logger.info("Token encryption validated successfully", extra={"key_id": service.active_key_id})
    return True


__all__ = [
    "CredentialEncryptionError",
    "EncryptionConfigError",
    "build_encryption_service",
    "encrypt_token",
    "decrypt_stored_token",
    "reencrypt_token",
    "validate_encryption_ready",
]

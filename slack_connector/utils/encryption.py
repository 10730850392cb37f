"""
Encryption utilities for Slack token storage.

Implements AES-256-GCM encryption of individual token strings.

SECURITY:
- The 256-bit key is derived from the master secret with PBKDF2-HMAC-SHA256
- Each encryption uses a unique random 96-bit nonce
- Envelopes carry an algorithm tag and key id so keys can rotate
- Tampered or truncated envelopes raise DecryptionError, never garbage

Usage:
    from slack_connector.utils.encryption import TokenEncryptionService

    service = TokenEncryptionService(secret=os.environ["ENCRYPTION_SECRET"])

    envelope = service.encrypt("xoxb-...")
    token = service.decrypt(envelope.encrypted_token, envelope.key_id)
"""

import base64
import binascii
import json
import logging
import secrets
from dataclasses import dataclass
from typing import Any, Dict, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

logger = logging.getLogger(__name__)


# AES-GCM constants
NONCE_SIZE = 12  # 96 bits, recommended for AES-GCM
TAG_SIZE = 16    # 128 bits, standard for AES-GCM
KEY_SIZE = 32    # 256 bits for AES-256

ALGORITHM = "AES-GCM-256"
DEFAULT_KEY_ID = "default"

MIN_SECRET_LENGTH = 32
PBKDF2_ITERATIONS = 100_000
# Changing the salt changes every derived key; bump the version suffix with it
KEY_DERIVATION_SALT = b"slack-connector-salt:v1"


class EncryptionConfigError(Exception):
    """Raised when the master secret or key ring is unusable."""
    pass


class EncryptionError(Exception):
    """Raised when encryption fails."""
    pass


class DecryptionError(Exception):
    """Raised when decryption fails."""
    pass


@dataclass(frozen=True)
class EncryptedToken:
    """Ciphertext envelope as persisted in the token table."""
    encrypted_token: str
    algorithm: str = ALGORITHM
    key_id: str = DEFAULT_KEY_ID

    def to_dict(self) -> Dict[str, str]:
        return {
            "encrypted_token": self.encrypted_token,
            "algorithm": self.algorithm,
            "key_id": self.key_id,
        }


def derive_key(secret: str, iterations: int = PBKDF2_ITERATIONS) -> bytes:
    """
    Derive a 256-bit key from the master secret using PBKDF2.

    Args:
        secret: Master secret, at least 32 characters
        iterations: PBKDF2 iterations (never below 100k)

    Returns:
        32-byte derived key
    """
    if iterations < PBKDF2_ITERATIONS:
        raise EncryptionConfigError(
            f"PBKDF2 iterations must be at least {PBKDF2_ITERATIONS}"
        )
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_SIZE,
        salt=KEY_DERIVATION_SALT,
        iterations=iterations,
    )
    return kdf.derive(secret.encode("utf-8"))


def _validate_secret(secret: Optional[str], key_id: str) -> str:
    if not secret:
        raise EncryptionConfigError(
            f"Encryption secret for key '{key_id}' is required"
        )
    if len(secret) < MIN_SECRET_LENGTH:
        raise EncryptionConfigError(
            f"Encryption secret for key '{key_id}' must be at least "
            f"{MIN_SECRET_LENGTH} characters"
        )
    return secret


class TokenEncryptionService:
    """
    AES-256-GCM encryptor for Slack tokens.

    Holds one active key (used for all new encryptions) plus any number
    of retired keys that remain valid for decryption until every row has
    been re-encrypted.
    """

    def __init__(
        self,
        secret: Optional[str],
        key_id: str = DEFAULT_KEY_ID,
        previous_secrets: Optional[Dict[str, str]] = None,
        iterations: int = PBKDF2_ITERATIONS,
    ):
        """
        Args:
            secret: Active master secret (>= 32 characters)
            key_id: Identifier stamped on envelopes made with the active key
            previous_secrets: Retired key ids mapped to their secrets
            iterations: PBKDF2 iterations

        Raises:
            EncryptionConfigError: If any secret is missing or too short
        """
        self._active_key_id = key_id
        self._keys: Dict[str, AESGCM] = {
            key_id: AESGCM(derive_key(_validate_secret(secret, key_id), iterations))
        }
        for old_id, old_secret in (previous_secrets or {}).items():
            if old_id == key_id:
                raise EncryptionConfigError(
                    f"Retired key id '{old_id}' collides with the active key id"
                )
            self._keys[old_id] = AESGCM(
                derive_key(_validate_secret(old_secret, old_id), iterations)
            )

    @property
    def active_key_id(self) -> str:
        return self._active_key_id

    def has_key(self, key_id: str) -> bool:
        return key_id in self._keys

    @staticmethod
    def generate_secret() -> str:
        """Generate a random master secret suitable for ENCRYPTION_SECRET."""
        return secrets.token_urlsafe(48)

    def encrypt(self, plaintext: str) -> EncryptedToken:
        """
        Encrypt a token string under the active key.

        Returns:
            EncryptedToken with base64(nonce + ciphertext + tag)

        Raises:
            EncryptionError: If encryption fails
        """
        if not isinstance(plaintext, str):
            raise EncryptionError("Only string values can be encrypted")
        try:
            nonce = secrets.token_bytes(NONCE_SIZE)
            sealed = self._keys[self._active_key_id].encrypt(
                nonce, plaintext.encode("utf-8"), None
            )
        except Exception as e:
            logger.error("Token encryption failed", extra={"error_type": type(e).__name__})
            raise EncryptionError(f"Failed to encrypt token: {type(e).__name__}") from e

        return EncryptedToken(
            encrypted_token=base64.b64encode(nonce + sealed).decode("ascii"),
            algorithm=ALGORITHM,
            key_id=self._active_key_id,
        )

    def decrypt(
        self,
        encrypted_token: str,
        key_id: Optional[str] = None,
        algorithm: str = ALGORITHM,
    ) -> str:
        """
        Decrypt an envelope produced by encrypt().

        Args:
            encrypted_token: base64(nonce + ciphertext + tag)
            key_id: Key the envelope was made with (active key if omitted)
            algorithm: Algorithm tag stored with the envelope

        Raises:
            DecryptionError: On unknown key/algorithm, bad encoding or tampering
        """
        key_id = key_id or self._active_key_id
        if algorithm != ALGORITHM:
            raise DecryptionError(f"Unsupported encryption algorithm: {algorithm}")
        aesgcm = self._keys.get(key_id)
        if aesgcm is None:
            raise DecryptionError(f"Unknown encryption key id: {key_id}")

        try:
            raw = base64.b64decode(encrypted_token, validate=True)
        except (binascii.Error, ValueError, TypeError) as e:
            raise DecryptionError("Encrypted token is not valid base64") from e

        if len(raw) < NONCE_SIZE + TAG_SIZE:
            raise DecryptionError("Encrypted token is truncated")

        nonce, sealed = raw[:NONCE_SIZE], raw[NONCE_SIZE:]
        try:
            plaintext = aesgcm.decrypt(nonce, sealed, None)
        except InvalidTag:
            logger.error("Decryption failed: authentication tag mismatch", extra={"key_id": key_id})
            raise DecryptionError(
                "Decryption failed: data may have been tampered with"
            )

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecryptionError("Decrypted token is not valid UTF-8") from e

    def encrypt_envelope(self, envelope: EncryptedToken) -> EncryptedToken:
        """Re-encrypt an envelope under the active key."""
        plaintext = self.decrypt(
            envelope.encrypted_token, envelope.key_id, envelope.algorithm
        )
        return self.encrypt(plaintext)

    def encrypt_json(self, data: Dict[str, Any]) -> EncryptedToken:
        """Encrypt a JSON-serializable dict (audit event details)."""
        return self.encrypt(json.dumps(data, sort_keys=True, default=str))

    def decrypt_json(self, encrypted: str, key_id: Optional[str] = None) -> Dict[str, Any]:
        plaintext = self.decrypt(encrypted, key_id)
        try:
            return json.loads(plaintext)
        except json.JSONDecodeError as e:
            raise DecryptionError(f"Decrypted data is not valid JSON: {e}") from e

    def self_test(self) -> bool:
        """Round-trip a random value through the active key."""
        sample = secrets.token_hex(16)
        try:
            return self.decrypt(self.encrypt(sample).encrypted_token) == sample
        except (EncryptionError, DecryptionError):
            logger.exception("Encryption self-test failed")
            return False

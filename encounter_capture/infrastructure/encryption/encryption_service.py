"""Encryption service for offline envelopes.

This service encrypts the encounter snapshots held in the local durability
layer, so PHI queued on a device while offline is never stored in clear.

Security Impact:
    - Uses AES-128-CBC with HMAC-SHA256 via Fernet (symmetric encryption)
    - Keys come from EC_ENCRYPTION_KEY or are derived from
      EC_ENCRYPTION_KEY_PASSWORD with PBKDF2
    - Bookkeeping columns (status, timestamps) stay queryable; only the
      record body is encrypted

Architecture:
    - Infrastructure layer component
    - Used by the DuckDB encounter store
    - Follows Hexagonal Architecture: isolated from domain core
"""

import base64
import hashlib
import json
import logging
import os
from typing import Any, Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

logger = logging.getLogger(__name__)

DEFAULT_SALT = "encounter-capture-salt"
PBKDF2_ITERATIONS = 480000


class EncryptionService:
    """Service for encrypting/decrypting offline envelope bodies.

    Security Impact:
        - All envelope bodies are encrypted before they reach disk
        - Keys should be stored securely (env vars, key management service)
        - Supports key rotation via key_id tracking
    """

    def __init__(self, key: Optional[bytes] = None, key_id: Optional[str] = None):
        """Initialize encryption service.

        Parameters:
            key: URL-safe base64-encoded 32-byte Fernet key (if None, read from env)
            key_id: Identifier for the encryption key (for rotation support)

        Raises:
            ValueError: If no key is configured or the key is malformed
        """
        if key is None:
            key = self.key_from_env()
        if key is None:
            raise ValueError(
                "No encryption key configured. Set EC_ENCRYPTION_KEY or EC_ENCRYPTION_KEY_PASSWORD."
            )

        try:
            self.cipher = Fernet(key)
        except ValueError as e:
            logger.error(f"Invalid encryption key: {str(e)}")
            raise ValueError("Invalid encryption key format. Key must be base64-encoded 32-byte key.") from e

        self.key_id = key_id or os.getenv('EC_ENCRYPTION_KEY_ID', 'default')
        logger.debug(f"EncryptionService initialized with key_id: {self.key_id}")

    @staticmethod
    def key_from_env() -> Optional[bytes]:
        """Read or derive the encryption key from environment variables.

        Looks for EC_ENCRYPTION_KEY (a Fernet key). If not found, derives one
        from EC_ENCRYPTION_KEY_PASSWORD using PBKDF2.

        Returns:
            bytes: Fernet key, or None when neither variable is set
        """
        key_str = os.getenv('EC_ENCRYPTION_KEY')
        if key_str:
            return key_str.encode('utf-8')

        password = os.getenv('EC_ENCRYPTION_KEY_PASSWORD')
        if password:
            salt = os.getenv('EC_ENCRYPTION_KEY_SALT', DEFAULT_SALT)
            return derive_key(password, salt)

        return None

    @staticmethod
    def generate_key() -> bytes:
        return Fernet.generate_key()

    def encrypt_bytes(self, payload: bytes) -> bytes:
        return self.cipher.encrypt(payload)

    def decrypt_bytes(self, token: bytes) -> bytes:
        """Decrypt a Fernet token.

        Raises:
            ValueError: If the token was not produced with this key or was tampered with
        """
        try:
            return self.cipher.decrypt(token)
        except InvalidToken as e:
            logger.error(f"Failed to decrypt envelope body with key_id {self.key_id}")
            raise ValueError("Envelope body could not be decrypted with the configured key") from e

    @staticmethod
    def hash_value(value: Any) -> Optional[str]:
        """Generate SHA256 hash of a value (for verification without decryption).

        Parameters:
            value: Value to hash

        Returns:
            str: Hex digest of SHA256 hash, or None if input is None
        """
        if value is None:
            return None

        if isinstance(value, bytes):
            return hashlib.sha256(value).hexdigest()
        value_str = str(value) if not isinstance(value, (dict, list)) else json.dumps(value, default=str, sort_keys=True)
        return hashlib.sha256(value_str.encode('utf-8')).hexdigest()

    def get_key_id(self) -> str:
        """Get the current encryption key ID."""
        return self.key_id


def derive_key(password: str, salt: str) -> bytes:
    """Derive a Fernet key from a password with PBKDF2-HMAC-SHA256."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt.encode('utf-8'),
        iterations=PBKDF2_ITERATIONS,
    )
    return base64.urlsafe_b64encode(kdf.derive(password.encode('utf-8')))

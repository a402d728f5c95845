"""Field-level AES-256-GCM encryption for payment references at rest.

Payment intent IDs are encrypted before they reach the bookings table and
decrypted on read. Checkout-session and scheduling refs stay in clear text
because webhooks are matched against them.
Uses 12-byte random nonces (96-bit, NIST recommended for GCM).
Stored format: base64(nonce || ciphertext || tag).

Usage:
    from bookingflow.security.encryption import field_encryptor

    encrypted = field_encryptor.encrypt("pi_3Nk2...")
    plaintext = field_encryptor.decrypt(encrypted)
"""

from __future__ import annotations

import base64
import logging
import os

from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from bookingflow.config import Settings, settings

logger = logging.getLogger(__name__)

_NONCE_SIZE = 12  # 96-bit nonce for AES-GCM


class FieldEncryptor:
    """AES-256-GCM encryptor for individual database fields.

    Thread-safe and stateless (each encrypt call generates a fresh nonce).
    """

    def __init__(self, key: bytes) -> None:
        if len(key) != 32:
            msg = f"AES-256 requires a 32-byte key, got {len(key)} bytes"
            raise ValueError(msg)
        self._aesgcm = AESGCM(key)

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a string field. Returns base64(nonce + ciphertext + tag)."""
        nonce = os.urandom(_NONCE_SIZE)
        ct = self._aesgcm.encrypt(nonce, plaintext.encode("utf-8"), None)
        return base64.b64encode(nonce + ct).decode("ascii")

    def decrypt(self, token: str) -> str:
        """Decrypt a base64-encoded encrypted field."""
        raw = base64.b64decode(token)
        if len(raw) < _NONCE_SIZE + 16:  # nonce + minimum GCM tag
            msg = "Invalid encrypted token: too short"
            raise ValueError(msg)
        nonce = raw[:_NONCE_SIZE]
        ct = raw[_NONCE_SIZE:]
        return self._aesgcm.decrypt(nonce, ct, None).decode("utf-8")

    def encrypt_optional(self, value: str | None) -> str | None:
        """Encrypt ``value`` unless it is None."""
        return None if value is None else self.encrypt(value)

    def decrypt_optional(self, token: str | None) -> str | None:
        """Decrypt ``token`` unless it is None."""
        return None if token is None else self.decrypt(token)


def decode_key(raw: str) -> bytes | None:
    """Decode a base64 ENCRYPTION_KEY. Returns None when missing or not 32 bytes."""
    if not raw:
        return None
    try:
        key = base64.b64decode(raw, validate=True)
    except ValueError:
        return None
    return key if len(key) == 32 else None


def require_encryption_key(config: Settings = settings) -> None:
    """Refuse to run in production without a usable ENCRYPTION_KEY.

    Without it every worker encrypts with its own ephemeral key and stored
    payment refs become unreadable after a restart.

    Raises:
        RuntimeError: Production environment and the key is missing or invalid.
    """
    if config.is_production and decode_key(config.security.encryption_key) is None:
        msg = "ENCRYPTION_KEY must be a base64-encoded 32-byte key in production"
        raise RuntimeError(msg)


def _load_key() -> bytes:
    """Load the encryption key from settings (base64-encoded)."""
    key = decode_key(settings.security.encryption_key)
    if key is None:
        logger.warning("ENCRYPTION_KEY missing or invalid — using a random ephemeral key (data won't survive restarts)")
        return os.urandom(32)
    return key


# Module-level singleton — import this wherever encryption is needed.
field_encryptor = FieldEncryptor(_load_key())

"""AES-GCM encryption for integration secrets stored in the database.

Ciphertexts are ``v1:`` + urlsafe base64 of ``nonce || ciphertext``. Values
without the prefix are treated as legacy plaintext rows and returned as-is,
so rows written before encryption was enabled stay readable.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

TOKEN_PREFIX = "v1:"
_NONCE_SIZE = 12


class SecretDecryptionError(ValueError):
    """Stored secret could not be decrypted with the configured key."""


def derive_key(raw: str) -> bytes:
    """Turn the configured key string into 16/24/32 raw key bytes.

    Accepts urlsafe base64 of a valid AES key length; any other string is
    hashed with SHA-256 into a 32-byte key.
    """
    if not raw:
        raise ValueError("SECRET_ENCRYPTION_KEY is not configured")

    try:
        padded = raw + "=" * (-len(raw) % 4)
        decoded = base64.urlsafe_b64decode(padded.encode("utf-8"))
        if len(decoded) in (16, 24, 32):
            return decoded
    except (binascii.Error, ValueError):
        pass
    return hashlib.sha256(raw.encode("utf-8")).digest()


class SecretCipher:
    """Encrypts and decrypts secret values with a single server-held key.

    Args:
        key: Key material as accepted by derive_key().
    """

    def __init__(self, key: str) -> None:
        self._aesgcm = AESGCM(derive_key(key))

    def encrypt(self, value: str) -> str:
        nonce = os.urandom(_NONCE_SIZE)
        ciphertext = self._aesgcm.encrypt(nonce, value.encode("utf-8"), None)
        payload = base64.urlsafe_b64encode(nonce + ciphertext).decode("utf-8").rstrip("=")
        return f"{TOKEN_PREFIX}{payload}"

    def decrypt(self, stored: str) -> str:
        if not is_encrypted(stored):
            return stored

        raw = stored[len(TOKEN_PREFIX):]
        padded = raw + "=" * (-len(raw) % 4)
        try:
            blob = base64.urlsafe_b64decode(padded.encode("utf-8"))
        except (binascii.Error, ValueError) as exc:
            raise SecretDecryptionError("Invalid secret encoding") from exc
        if len(blob) <= _NONCE_SIZE:
            raise SecretDecryptionError("Invalid secret payload")

        try:
            plaintext = self._aesgcm.decrypt(blob[:_NONCE_SIZE], blob[_NONCE_SIZE:], None)
        except InvalidTag as exc:
            raise SecretDecryptionError("Secret was encrypted with a different key") from exc
        return plaintext.decode("utf-8")


def is_encrypted(stored: str) -> bool:
    """Return True if the stored value carries the ciphertext prefix."""
    return stored.startswith(TOKEN_PREFIX)

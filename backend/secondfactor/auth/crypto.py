"""AES-256-GCM sealing for TOTP secrets at rest."""

import base64
import os
from typing import Protocol

from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from secondfactor.config import Settings, get_settings

_NONCE_SIZE = 12  # 96-bit nonce for AES-GCM


class SecretCipher(Protocol):
    """Seal/open capability for the stored shared secret."""

    def seal(self, plaintext: bytes, associated_data: bytes) -> str: ...

    def open(self, token: str, associated_data: bytes) -> bytes: ...


class AesGcmSecretCipher:
    """SecretCipher backed by a single AES-256-GCM key.

    The associated data binds a sealed secret to its owner, so a ciphertext
    copied onto another user's profile fails to open.
    """

    def __init__(self, key: bytes) -> None:
        if len(key) != 32:
            raise ValueError("AES-256-GCM key must be 32 bytes")
        self._aead = AESGCM(key)

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "AesGcmSecretCipher":
        settings = settings or get_settings()
        return cls(base64.b64decode(settings.secret_encryption_key))

    def seal(self, plaintext: bytes, associated_data: bytes) -> str:
        """Encrypt bytes. Returns base64(nonce + ciphertext)."""
        nonce = os.urandom(_NONCE_SIZE)
        ct = self._aead.encrypt(nonce, plaintext, associated_data)
        return base64.b64encode(nonce + ct).decode()

    def open(self, token: str, associated_data: bytes) -> bytes:
        """Decrypt a base64(nonce + ciphertext) token back to bytes."""
        raw = base64.b64decode(token)
        nonce, ct = raw[:_NONCE_SIZE], raw[_NONCE_SIZE:]
        return self._aead.decrypt(nonce, ct, associated_data)

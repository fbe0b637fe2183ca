"""AES-256-GCM secret codec applied at the connection-store boundary.

Ciphertexts are base64 strings laid out as ``iv (12 bytes) || tag (16 bytes)
|| ciphertext``.  The key is a base64-encoded 32-byte value read from the
``ENCRYPTION_KEY`` environment variable.  Generate one with::

    openssl rand -base64 32
"""

from __future__ import annotations

import base64
import binascii
import logging
import os
import secrets

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

logger = logging.getLogger(__name__)

ENCRYPTION_KEY_ENV = "ENCRYPTION_KEY"
_IV_LENGTH = 12
_TAG_LENGTH = 16


class SecretCodecError(Exception):
    """Raised when the codec key is missing/malformed or a ciphertext cannot be decoded."""


class SecretCodec:
    """Encrypt/decrypt opaque secret strings with a single symmetric key."""

    def __init__(self, key: bytes) -> None:
        if len(key) != 32:
            raise SecretCodecError(
                f"{ENCRYPTION_KEY_ENV} must be a base64-encoded 32-byte key. "
                "Generate one with: openssl rand -base64 32"
            )
        self._aead = AESGCM(key)

    def __repr__(self) -> str:
        return "SecretCodec(key=<redacted>)"

    @classmethod
    def from_env(cls) -> SecretCodec:
        raw = os.environ.get(ENCRYPTION_KEY_ENV)
        if not raw:
            raise SecretCodecError(
                f"{ENCRYPTION_KEY_ENV} env var is required. "
                "Generate one with: openssl rand -base64 32"
            )
        try:
            key = base64.b64decode(raw, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise SecretCodecError(f"{ENCRYPTION_KEY_ENV} is not valid base64") from exc
        return cls(key)

    @classmethod
    def generate_key(cls) -> str:
        """Return a fresh base64-encoded key suitable for ``ENCRYPTION_KEY``."""
        return base64.b64encode(secrets.token_bytes(32)).decode("ascii")

    def encrypt(self, plaintext: str) -> str:
        iv = secrets.token_bytes(_IV_LENGTH)
        sealed = self._aead.encrypt(iv, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-_TAG_LENGTH], sealed[-_TAG_LENGTH:]
        return base64.b64encode(iv + tag + ciphertext).decode("ascii")

    def decrypt(self, token: str) -> str:
        try:
            raw = base64.b64decode(token, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise SecretCodecError("Ciphertext is not valid base64") from exc
        if len(raw) < _IV_LENGTH + _TAG_LENGTH:
            raise SecretCodecError("Ciphertext is too short")
        iv = raw[:_IV_LENGTH]
        tag = raw[_IV_LENGTH : _IV_LENGTH + _TAG_LENGTH]
        ciphertext = raw[_IV_LENGTH + _TAG_LENGTH :]
        try:
            plaintext = self._aead.decrypt(iv, ciphertext + tag, None)
        except InvalidTag as exc:
            raise SecretCodecError("Ciphertext failed authentication") from exc
        return plaintext.decode("utf-8")

    def encrypt_if_present(self, value: str | None) -> str | None:
        if value is None:
            return None
        return self.encrypt(value)

    def decrypt_if_present(self, value: str | None) -> str | None:
        """Decrypt *value*, passing plaintext (legacy, unencrypted rows) through unchanged.

        Older writes could double-encrypt a field, so a second pass is applied
        when the first result is itself a valid ciphertext.
        """
        if value is None:
            return None
        decoded = self._try_decrypt(value)
        if decoded is None:
            return value
        second = self._try_decrypt(decoded)
        if second is not None:
            logger.debug("Double-encrypted secret detected; applied second decrypt pass")
            return second
        return decoded

    def _try_decrypt(self, value: str) -> str | None:
        try:
            return self.decrypt(value)
        except (SecretCodecError, UnicodeDecodeError):
            return None

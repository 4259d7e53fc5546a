"""
Credential Vault.

AES-256-GCM encryption of tool server credentials at rest.

Stored format: base64(nonce || ciphertext || tag) with a 96-bit random nonce
per call and a 128-bit authentication tag. Empty input maps to empty output.
"""

from __future__ import annotations

import base64
import binascii
import logging
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from mcplink.config import Settings
from mcplink.errors import CryptoError

logger = logging.getLogger(__name__)

KEY_BYTES = 32
NONCE_BYTES = 12
TAG_BYTES = 16


def generate_key() -> str:
    """Generate a new random AES-256 key encoded as base64."""
    return base64.b64encode(AESGCM.generate_key(bit_length=KEY_BYTES * 8)).decode("ascii")


class CredentialVault:
    """Encrypts and decrypts secrets with a single symmetric key."""

    def __init__(self, key_b64: Optional[str] = None):
        if key_b64 and key_b64.strip():
            key = _decode_key(key_b64.strip())
            self._ephemeral = False
            logger.info("Credential vault initialized with configured key")
        else:
            key = AESGCM.generate_key(bit_length=KEY_BYTES * 8)
            self._ephemeral = True
            logger.warning(
                "No ENCRYPTION_KEY configured! Generated a temporary key for this process. "
                "Credentials saved now cannot be decrypted after a restart. "
                "Run 'mcplink generate-key' and set ENCRYPTION_KEY for persistent storage."
            )
        self._aead = AESGCM(key)

    @classmethod
    def from_settings(cls, settings: Settings) -> "CredentialVault":
        return cls(settings.encryption_key)

    @property
    def is_ephemeral(self) -> bool:
        return self._ephemeral

    def encrypt(self, plaintext: Optional[str]) -> str:
        if not plaintext:
            return ""

        nonce = os.urandom(NONCE_BYTES)
        # AESGCM appends the tag to the ciphertext.
        sealed = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        return base64.b64encode(nonce + sealed).decode("ascii")

    def decrypt(self, blob: Optional[str]) -> str:
        if not blob:
            return ""

        try:
            raw = base64.b64decode(blob.encode("ascii"), validate=True)
        except (binascii.Error, UnicodeEncodeError) as exc:
            raise CryptoError("Stored credential is not valid base64") from exc

        if len(raw) < NONCE_BYTES + TAG_BYTES:
            raise CryptoError("Stored credential is truncated")

        nonce, sealed = raw[:NONCE_BYTES], raw[NONCE_BYTES:]
        try:
            plaintext = self._aead.decrypt(nonce, sealed, None)
        except InvalidTag as exc:
            raise CryptoError(
                "Unable to decrypt credential: authentication failed (wrong ENCRYPTION_KEY or corrupted data)"
            ) from exc

        return plaintext.decode("utf-8")


def _decode_key(key_b64: str) -> bytes:
    try:
        key = base64.b64decode(key_b64.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError) as exc:
        raise CryptoError("Invalid ENCRYPTION_KEY: must be base64 encoded") from exc

    if len(key) != KEY_BYTES:
        raise CryptoError(
            f"Invalid ENCRYPTION_KEY: expected {KEY_BYTES} bytes, got {len(key)}",
            details={"length": len(key)},
        )
    return key

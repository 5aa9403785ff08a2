"""
Token encryption — encrypt / decrypt OAuth tokens at rest.

Uses AES-256-GCM (``AESGCM`` from the ``cryptography`` library).  The key is
loaded from ``config.token_encryption_key`` (env var: ``TOKEN_ENCRYPTION_KEY``)
as 64 hex characters.  Generate one with::

    python -c "import secrets; print(secrets.token_hex(32))"

Stored layout is ``base64(nonce || tag || ciphertext)`` with a fresh 12-byte
nonce per call.  Decryption fails closed: any tampering, truncation or key
mismatch raises ``CredentialDecryptionError``.
"""

from __future__ import annotations

import base64
import binascii
import logging
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from core.errors import CredentialDecryptionError

logger = logging.getLogger(__name__)

NONCE_LENGTH = 12
TAG_LENGTH = 16
KEY_LENGTH = 32


class TokenVault:
    """Symmetric authenticated encryption for provider tokens."""

    def __init__(self, key: bytes) -> None:
        if len(key) != KEY_LENGTH:
            raise ValueError(f"Encryption key must be {KEY_LENGTH} bytes, got {len(key)}")
        self._aead = AESGCM(key)

    @classmethod
    def from_hex(cls, hex_key: str) -> "TokenVault":
        if not hex_key:
            raise ValueError(
                "TOKEN_ENCRYPTION_KEY not set. Generate a key: "
                "python -c \"import secrets; print(secrets.token_hex(32))\""
            )
        try:
            key = bytes.fromhex(hex_key)
        except ValueError as exc:
            raise ValueError("TOKEN_ENCRYPTION_KEY must be 64 hex characters") from exc
        vault = cls(key)
        logger.info("Token encryption enabled (AES-256-GCM)")
        return vault

    def encrypt(self, plaintext: str) -> str:
        nonce = os.urandom(NONCE_LENGTH)
        sealed = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        # AESGCM appends the tag; store it ahead of the ciphertext.
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return base64.b64encode(nonce + tag + ciphertext).decode("ascii")

    def decrypt(self, blob: str) -> str:
        try:
            data = base64.b64decode(blob, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise CredentialDecryptionError("Stored token is not valid base64") from exc

        if len(data) < NONCE_LENGTH + TAG_LENGTH:
            raise CredentialDecryptionError("Stored token is truncated")

        nonce = data[:NONCE_LENGTH]
        tag = data[NONCE_LENGTH:NONCE_LENGTH + TAG_LENGTH]
        ciphertext = data[NONCE_LENGTH + TAG_LENGTH:]
        try:
            plaintext = self._aead.decrypt(nonce, ciphertext + tag, None)
        except InvalidTag as exc:
            raise CredentialDecryptionError(
                "Stored token failed authentication (tampered or wrong key)"
            ) from exc
        return plaintext.decode("utf-8")

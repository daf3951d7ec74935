"""
Credential Vault: authenticated encryption for stored connector secrets.

AES-256-GCM with a fresh 12-byte nonce per call. The key is derived once
with scrypt from the configured secret. Blobs are ``v1:`` followed by the
urlsafe base64 of ``nonce || ciphertext || tag``.
"""
from __future__ import annotations

import base64
import binascii
import json
import logging
import os
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from core.integrations.errors import DecryptionFailed

logger = logging.getLogger(__name__)

BLOB_VERSION = "v1"
NONCE_SIZE = 12
TAG_SIZE = 16
_KDF_SALT = b"connector-credential-vault"
_DEV_SECRET = "dev-only-insecure-credential-key"


def derive_key(secret: str) -> bytes:
    kdf = Scrypt(salt=_KDF_SALT, length=32, n=2**14, r=8, p=1)
    return kdf.derive(secret.encode("utf-8"))


class CredentialVault:
    """Encrypts plaintext credential maps into opaque blobs and back."""

    def __init__(self, secret: str | None = None):
        if not secret:
            logger.warning(
                "[vault] CREDENTIAL_ENCRYPTION_KEY is not set; using the built-in development key. "
                "Credentials stored now become undecryptable once a real key is configured."
            )
            secret = _DEV_SECRET
            self.using_dev_key = True
        else:
            self.using_dev_key = False
        self._aesgcm = AESGCM(derive_key(secret))

    def encrypt(self, plaintext: dict[str, Any]) -> str:
        payload = json.dumps(plaintext, sort_keys=True, separators=(",", ":")).encode("utf-8")
        nonce = os.urandom(NONCE_SIZE)
        sealed = self._aesgcm.encrypt(nonce, payload, BLOB_VERSION.encode())
        token = base64.urlsafe_b64encode(nonce + sealed).decode("ascii")
        return f"{BLOB_VERSION}:{token}"

    def decrypt(self, blob: str) -> dict[str, Any]:
        """Return the plaintext map or raise DecryptionFailed; never partial data."""
        if not isinstance(blob, str):
            raise DecryptionFailed("Credential blob must be a string")
        version, sep, token = blob.partition(":")
        if not sep or version != BLOB_VERSION:
            raise DecryptionFailed("Unrecognized credential blob format")

        try:
            raw = base64.b64decode(token.encode("ascii"), altchars=b"-_", validate=True)
        except (binascii.Error, ValueError, UnicodeEncodeError) as exc:
            raise DecryptionFailed("Credential blob is not valid base64") from exc
        # Reject non-canonical encodings so every accepted blob maps to exactly one byte string.
        if base64.urlsafe_b64encode(raw).decode("ascii") != token:
            raise DecryptionFailed("Credential blob is not canonically encoded")
        if len(raw) < NONCE_SIZE + TAG_SIZE:
            raise DecryptionFailed("Credential blob is truncated")

        nonce, sealed = raw[:NONCE_SIZE], raw[NONCE_SIZE:]
        try:
            payload = self._aesgcm.decrypt(nonce, sealed, BLOB_VERSION.encode())
        except InvalidTag as exc:
            raise DecryptionFailed("Credential blob failed integrity check") from exc

        try:
            value = json.loads(payload.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise DecryptionFailed("Credential payload is not valid JSON") from exc
        if not isinstance(value, dict):
            raise DecryptionFailed("Credential payload is not a map")
        return value

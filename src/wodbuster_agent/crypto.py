"""AES-GCM encryption for passwords kept at rest."""

from __future__ import annotations

import base64
import binascii
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .errors import CryptoError

NONCE_SIZE = 12
VALID_KEY_SIZES = (16, 24, 32)


def _cipher(key: str) -> AESGCM:
    key_bytes = key.encode("utf-8")
    if len(key_bytes) not in VALID_KEY_SIZES:
        raise CryptoError("invalid key size: must be 16, 24, or 32 bytes")
    return AESGCM(key_bytes)


def encrypt_password(password: str, key: str) -> str:
    """Encrypt ``password`` and return base64(nonce || ciphertext)."""
    cipher = _cipher(key)
    nonce = os.urandom(NONCE_SIZE)
    sealed = cipher.encrypt(nonce, password.encode("utf-8"), None)
    return base64.b64encode(nonce + sealed).decode("ascii")


def decrypt_password(token: str, key: str) -> str:
    """Reverse :func:`encrypt_password`."""
    cipher = _cipher(key)
    try:
        raw = base64.b64decode(token, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise CryptoError("failed to decode base64 payload") from exc

    if len(raw) <= NONCE_SIZE:
        raise CryptoError("invalid ciphertext")

    nonce, sealed = raw[:NONCE_SIZE], raw[NONCE_SIZE:]
    try:
        return cipher.decrypt(nonce, sealed, None).decode("utf-8")
    except InvalidTag as exc:
        raise CryptoError("failed to decrypt password") from exc

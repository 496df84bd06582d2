"""AES-256-GCM encryption for device secrets stored at rest.

Ciphertext format is ``ivHex:authTagHex:cipherHex``. The key is a 32 byte
UTF-8 string taken from configuration.
"""

from __future__ import annotations

import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

KEY_LENGTH = 32
IV_LENGTH = 16
TAG_LENGTH = 16


class EncryptionKeyError(ValueError):
    """Raised when the configured key is not usable for AES-256."""


class DecryptionError(ValueError):
    """Raised when ciphertext is malformed or was produced with another key."""


def _key_bytes(key: str | bytes) -> bytes:
    raw = key.encode("utf-8") if isinstance(key, str) else key
    if len(raw) != KEY_LENGTH:
        raise EncryptionKeyError("Encryption key must be exactly 32 characters")
    return raw


def encrypt(plaintext: str, key: str | bytes) -> str:
    """Encrypt text and return ``iv:authTag:cipher`` (hex encoded)."""

    iv = os.urandom(IV_LENGTH)
    sealed = AESGCM(_key_bytes(key)).encrypt(iv, plaintext.encode("utf-8"), None)
    cipher, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
    return f"{iv.hex()}:{tag.hex()}:{cipher.hex()}"


def decrypt(token: str, key: str | bytes) -> str:
    """Decrypt a value produced by :func:`encrypt`."""

    aes = AESGCM(_key_bytes(key))
    parts = token.split(":")
    if len(parts) != 3:
        raise DecryptionError("Invalid encrypted text format")

    try:
        iv, tag, cipher = (bytes.fromhex(part) for part in parts)
    except ValueError as exc:
        raise DecryptionError("Invalid encrypted text format") from exc

    if not iv or len(tag) != TAG_LENGTH:
        raise DecryptionError("Invalid encrypted text format")

    try:
        plain = aes.decrypt(iv, cipher + tag, None)
    except InvalidTag as exc:
        raise DecryptionError("Unable to decrypt value: wrong key or corrupted data") from exc

    return plain.decode("utf-8")

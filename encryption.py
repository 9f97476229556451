"""
Symmetric encryption for secrets stored alongside endpoint records.

Values are AES-256-GCM encrypted and serialized as ``ivHex:cipherHex``
(the GCM tag is the last 16 bytes of the ciphertext). The key is the
SHA-256 digest of ``settings.encryption_key``, which must be configured.
"""

import hashlib
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from config import settings

IV_LENGTH = 16
SEPARATOR = ":"


class EncryptionError(Exception):
    """Base class for encryption failures."""


class EncryptionConfigError(EncryptionError):
    """Raised when no encryption secret is configured."""


class DecryptionError(EncryptionError):
    """Raised when a token is malformed, tampered with, or encrypted under another key."""


def _derive_key(secret: Optional[str]) -> bytes:
    secret = secret if secret is not None else settings.encryption_key
    if not secret:
        raise EncryptionConfigError(
            "ENCRYPTION_KEY is not set. Stored scraper keys cannot be encrypted or recovered without it."
        )
    return hashlib.sha256(secret.encode()).digest()


def encrypt(plaintext: str, secret: Optional[str] = None) -> str:
    """Encrypt ``plaintext`` with a fresh random IV."""
    iv = os.urandom(IV_LENGTH)
    ciphertext = AESGCM(_derive_key(secret)).encrypt(iv, plaintext.encode(), None)
    return f"{iv.hex()}{SEPARATOR}{ciphertext.hex()}"


def decrypt(token: str, secret: Optional[str] = None) -> str:
    """Invert :func:`encrypt`."""
    key = _derive_key(secret)
    parts = token.split(SEPARATOR) if isinstance(token, str) else []
    if len(parts) != 2 or not all(parts):
        raise DecryptionError("Encrypted value must have the form 'ivHex:cipherHex'")
    try:
        iv = bytes.fromhex(parts[0])
        ciphertext = bytes.fromhex(parts[1])
    except ValueError as exc:
        raise DecryptionError("Encrypted value is not valid hex") from exc
    if len(iv) != IV_LENGTH:
        raise DecryptionError(f"IV must be {IV_LENGTH} bytes")

    try:
        plaintext = AESGCM(key).decrypt(iv, ciphertext, None)
    except InvalidTag as exc:
        raise DecryptionError("Decryption failed: wrong key or corrupted ciphertext") from exc
    return plaintext.decode()

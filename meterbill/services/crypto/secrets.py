from __future__ import annotations

import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from meterbill.core.config import get_settings
from meterbill.core.errors import ConfigurationError, SecretFormatError


IV_BYTES = 12
TAG_BYTES = 16
KEY_BYTES = 32


def load_encryption_key(value: str | None = None) -> bytes:
    """Decode the 256-bit hex key from settings (or an explicit value)."""
    raw = value if value is not None else get_settings().secrets_encryption_key
    if not raw:
        raise ConfigurationError("SECRETS_ENCRYPTION_KEY is not configured")
    try:
        key = bytes.fromhex(raw.strip())
    except ValueError as exc:
        raise ConfigurationError("SECRETS_ENCRYPTION_KEY must be hex encoded") from exc
    if len(key) != KEY_BYTES:
        raise ConfigurationError("SECRETS_ENCRYPTION_KEY must be 64 hex characters (256 bits)")
    return key


def encrypt_secret(plaintext: str, key: bytes | None = None) -> str:
    # AESGCM appends the 16-byte tag to the ciphertext; split it out for the stored format.
    key = key or load_encryption_key()
    iv = os.urandom(IV_BYTES)
    sealed = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
    ciphertext, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
    return f"{iv.hex()}:{tag.hex()}:{ciphertext.hex()}"


def decrypt_secret(encrypted: str, key: bytes | None = None) -> str:
    """Decrypt an ``iv:authTag:ciphertext`` hex string; tampering raises SecretFormatError."""
    key = key or load_encryption_key()
    parts = encrypted.split(":")
    if len(parts) != 3:
        raise SecretFormatError("Invalid encrypted secret format")
    try:
        iv, tag, ciphertext = (bytes.fromhex(part) for part in parts)
    except ValueError as exc:
        raise SecretFormatError("Invalid encrypted secret format") from exc
    if len(iv) != IV_BYTES or len(tag) != TAG_BYTES:
        raise SecretFormatError("Invalid encrypted secret format")
    try:
        plaintext = AESGCM(key).decrypt(iv, ciphertext + tag, None)
    except InvalidTag as exc:
        raise SecretFormatError("Encrypted secret failed authentication") from exc
    return plaintext.decode("utf-8")

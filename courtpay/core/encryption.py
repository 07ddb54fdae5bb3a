"""Symmetric encryption for tenant secrets stored at rest.

Secrets are stored as ``iv_hex:authTag_hex:ciphertext_hex`` using AES-256-GCM
with a 16-byte IV and a 16-byte authentication tag. The 32-byte key comes
from CREDENTIAL_ENCRYPTION_KEY (64 hex characters) and is never stored with
the data.
"""
import os
import re
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from courtpay.core.config import settings
from courtpay.core.exceptions import EncryptionError, EncryptionKeyMissing

IV_LENGTH = 16
AUTH_TAG_LENGTH = 16

_KEY_PATTERN = re.compile(r"^[0-9a-fA-F]{64}$")
_ENCRYPTED_PATTERN = re.compile(r"^[0-9a-fA-F]+:[0-9a-fA-F]+:[0-9a-fA-F]+$")


def _get_key(key_hex: Optional[str] = None) -> bytes:
    key_hex = key_hex if key_hex is not None else settings.CREDENTIAL_ENCRYPTION_KEY
    if not key_hex:
        raise EncryptionKeyMissing(
            "CREDENTIAL_ENCRYPTION_KEY is not configured; it must be 64 hex characters (32 bytes)"
        )
    if not _KEY_PATTERN.match(key_hex):
        raise EncryptionKeyMissing(
            "CREDENTIAL_ENCRYPTION_KEY must be 64 hex characters (32 bytes)"
        )
    return bytes.fromhex(key_hex)


def looks_encrypted(value: str) -> bool:
    """True when value has the iv:tag:ciphertext hex triple shape."""
    return bool(value) and bool(_ENCRYPTED_PATTERN.match(value))


def encrypt_credential(plaintext: str, key_hex: Optional[str] = None) -> str:
    """
    Encrypt a secret with AES-256-GCM.

    Args:
        plaintext: Secret to encrypt
        key_hex: Override for the configured key

    Returns:
        ``iv:authTag:ciphertext``, all hex encoded
    """
    if not plaintext:
        raise EncryptionError("Cannot encrypt an empty value")

    key = _get_key(key_hex)
    iv = os.urandom(IV_LENGTH)
    sealed = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
    ciphertext, auth_tag = sealed[:-AUTH_TAG_LENGTH], sealed[-AUTH_TAG_LENGTH:]

    return f"{iv.hex()}:{auth_tag.hex()}:{ciphertext.hex()}"


def decrypt_credential(encrypted: str, key_hex: Optional[str] = None) -> str:
    """
    Decrypt a value produced by encrypt_credential.

    Raises:
        EncryptionKeyMissing: If no usable key is configured
        EncryptionError: If the value is malformed or fails authentication
    """
    if not encrypted:
        raise EncryptionError("Cannot decrypt an empty value")

    parts = encrypted.split(":")
    if len(parts) != 3:
        raise EncryptionError("Invalid encrypted format, expected iv:authTag:ciphertext")

    iv_hex, tag_hex, ciphertext_hex = parts
    key = _get_key(key_hex)

    try:
        iv = bytes.fromhex(iv_hex)
        auth_tag = bytes.fromhex(tag_hex)
        ciphertext = bytes.fromhex(ciphertext_hex)
    except ValueError as e:
        raise EncryptionError(f"Invalid hex in encrypted value: {e}") from e

    if len(iv) != IV_LENGTH or len(auth_tag) != AUTH_TAG_LENGTH:
        raise EncryptionError("Invalid IV or authentication tag length")

    try:
        plaintext = AESGCM(key).decrypt(iv, ciphertext + auth_tag, None)
    except InvalidTag as e:
        # Wrong key or tampered data; do not leak which
        raise EncryptionError("Invalid encryption key or corrupt data") from e

    return plaintext.decode("utf-8")


def generate_encryption_key() -> str:
    """Return a fresh 32-byte key as 64 hex characters."""
    return os.urandom(32).hex()

"""Envelope encryption for record payloads.

A sealed blob is the standard base64 encoding of ``nonce || ciphertext``,
where the nonce is 12 random bytes and the ciphertext is AES-256-GCM over
the JSON-serialized payload (authentication tag included).
"""

import base64
import binascii
import json
import logging
import os
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.hashes import SHA256
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

logger = logging.getLogger(__name__)

ITERATIONS = 100_000
KEY_SIZE = 32
NONCE_SIZE = 12

# Shared by every user so existing blobs stay readable. Pass a per-user salt
# to derive_key() for new deployments.
STATIC_SALT = b"nephtrack-salt-static"


def derive_key(passphrase: str, salt: bytes = STATIC_SALT) -> bytes:
    """Derive the symmetric payload key from a passphrase.

    Deterministic: the same passphrase and salt always yield the same key.

    Args:
        passphrase: User-held passphrase.
        salt: KDF salt, STATIC_SALT unless a per-user salt is configured.

    Returns:
        32-byte AES-256 key.
    """
    kdf = PBKDF2HMAC(
        algorithm=SHA256(),
        length=KEY_SIZE,
        salt=salt,
        iterations=ITERATIONS,
    )
    return kdf.derive(passphrase.encode("utf-8"))


def seal(payload: Any, key: bytes) -> str:
    """Encrypt a JSON-serializable payload under a fresh random nonce."""
    nonce = os.urandom(NONCE_SIZE)
    plaintext = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    ciphertext = AESGCM(key).encrypt(nonce, plaintext, None)
    return base64.b64encode(nonce + ciphertext).decode("ascii")


def unseal(blob: str, key: bytes) -> Any | None:
    """Decrypt a sealed blob.

    Returns:
        The decoded payload, or None if the blob is corrupt, truncated,
        fails authentication, or was sealed under a different key.
    """
    try:
        raw = base64.b64decode(blob, validate=True)
    except (binascii.Error, ValueError, TypeError):
        logger.debug("Sealed payload is not valid base64")
        return None

    # AES-GCM tag is 16 bytes; anything shorter cannot authenticate
    if len(raw) < NONCE_SIZE + 16:
        logger.debug("Sealed payload too short")
        return None

    nonce, ciphertext = raw[:NONCE_SIZE], raw[NONCE_SIZE:]
    try:
        plaintext = AESGCM(key).decrypt(nonce, ciphertext, None)
    except (InvalidTag, ValueError):
        logger.debug("Sealed payload failed authentication")
        return None

    try:
        return json.loads(plaintext.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        logger.debug("Sealed payload is not JSON")
        return None

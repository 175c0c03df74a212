"""End-to-end payload encryption.

The server only ever sees sealed blobs; keys are derived on the client from
the user's passphrase.
"""

from .envelope import ITERATIONS, KEY_SIZE, NONCE_SIZE, STATIC_SALT, derive_key, seal, unseal

__all__ = [
    "ITERATIONS",
    "KEY_SIZE",
    "NONCE_SIZE",
    "STATIC_SALT",
    "derive_key",
    "seal",
    "unseal",
]

"""
Key derivation from the master secret.

Algorithm: PBKDF2-HMAC-SHA256
- 100,000 iterations (DEFAULT_ITERATIONS), configurable only via settings
- 16-byte random salt per derivation (SALT_LENGTH)
- 32-byte output (KEY_LENGTH), used directly as an AES-256 key

Derivation is a pure function of (secret, salt, iterations) so it can be
recomputed on decrypt from the salt stored in the envelope.
"""

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from aegis_engine.crypto.primitives import random_bytes

DEFAULT_ITERATIONS = 100_000
KEY_LENGTH = 32
SALT_LENGTH = 16


def generate_salt() -> bytes:
    return random_bytes(SALT_LENGTH)


def derive(master_secret: bytes, salt: bytes, iterations: int = DEFAULT_ITERATIONS) -> bytearray:
    """
    Derive a fixed-length symmetric key.

    Args:
        master_secret: Root secret bytes
        salt: Per-operation salt (SALT_LENGTH bytes)
        iterations: PBKDF2 iteration count

    Returns:
        KEY_LENGTH-byte key in a mutable buffer the caller can wipe
    """
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=salt,
        iterations=iterations,
    )
    return bytearray(kdf.derive(master_secret))

"""Secure random, hashing and comparison helpers shared by every component."""

import base64
import hashlib
import hmac
import secrets
import uuid


def random_bytes(n: int) -> bytes:
    """Return ``n`` cryptographically secure random bytes."""
    return secrets.token_bytes(n)


def random_hex(n: int = 16) -> str:
    """Return ``n`` random bytes as lowercase hex (2n characters)."""
    return secrets.token_hex(n)


def generate_uuid() -> str:
    return str(uuid.uuid4())


def sha256_hex(data: bytes | str) -> str:
    if isinstance(data, str):
        data = data.encode()
    return hashlib.sha256(data).hexdigest()


def sha512_hex(data: bytes | str) -> str:
    if isinstance(data, str):
        data = data.encode()
    return hashlib.sha512(data).hexdigest()


def hmac_sha256_hex(key: bytes | str, message: bytes | str) -> str:
    if isinstance(key, str):
        key = key.encode()
    if isinstance(message, str):
        message = message.encode()
    return hmac.new(key, message, hashlib.sha256).hexdigest()


def timing_safe_equal(a: bytes | str, b: bytes | str) -> bool:
    """Constant-time comparison; str and bytes are compared as UTF-8."""
    if isinstance(a, str):
        a = a.encode()
    if isinstance(b, str):
        b = b.encode()
    return hmac.compare_digest(a, b)


def b64e(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def b64d(data: str) -> bytes:
    return base64.b64decode(data.encode("ascii"), validate=True)


def wipe(buf: bytearray) -> None:
    """Overwrite a key buffer in place."""
    for i in range(len(buf)):
        buf[i] = 0

"""
Encrypted envelope format and the AES-256-GCM seal/open primitives.

An envelope is self-describing: method, iv, salt, auth tag, ciphertext and
the key id whose lineage produced the key.  Stored form is canonical JSON
with base64 byte fields:

    {"method": "aes-256-gcm", "key_id": "mk-1", "iv": "...", "salt": "...",
     "auth_tag": "...", "ciphertext": "...", "encrypted_at": "2026-..."}

The method and key id are bound into the GCM associated data, so an
envelope relabelled with another key id fails authentication.
"""

import binascii
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from aegis_engine.common.exceptions import (
    DecryptionError,
    EnvelopeFormatError,
    UnsupportedMethodError,
)
from aegis_engine.crypto.primitives import b64d, b64e, random_bytes

IV_LENGTH = 12
TAG_LENGTH = 16

_REQUIRED_FIELDS = ("method", "key_id", "iv", "salt", "auth_tag", "ciphertext")


class EncryptionMethod(str, Enum):
    AES_256_GCM = "aes-256-gcm"


@dataclass(frozen=True)
class EncryptedEnvelope:
    """Unit of ciphertext at rest. Never mutated; decrypt consumes it."""

    method: EncryptionMethod
    ciphertext: bytes
    iv: bytes
    salt: bytes
    auth_tag: bytes
    key_id: str
    encrypted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "method": self.method.value,
            "key_id": self.key_id,
            "iv": b64e(self.iv),
            "salt": b64e(self.salt),
            "auth_tag": b64e(self.auth_tag),
            "ciphertext": b64e(self.ciphertext),
            "encrypted_at": self.encrypted_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Any) -> "EncryptedEnvelope":
        """Parse a stored envelope dict.

        Raises EnvelopeFormatError for anything that is not envelope-shaped
        and UnsupportedMethodError for an envelope naming an unknown method.
        """
        if not isinstance(data, dict) or any(k not in data for k in _REQUIRED_FIELDS):
            raise EnvelopeFormatError()
        try:
            method = EncryptionMethod(data["method"])
        except ValueError as exc:
            raise UnsupportedMethodError(
                f"Unsupported encryption method: {data['method']!r}"
            ) from exc
        try:
            encrypted_at = data.get("encrypted_at")
            return cls(
                method=method,
                ciphertext=b64d(data["ciphertext"]),
                iv=b64d(data["iv"]),
                salt=b64d(data["salt"]),
                auth_tag=b64d(data["auth_tag"]),
                key_id=str(data["key_id"]),
                encrypted_at=(
                    datetime.fromisoformat(encrypted_at)
                    if encrypted_at else datetime.now(timezone.utc)
                ),
            )
        except (AttributeError, TypeError, ValueError, binascii.Error) as exc:
            raise EnvelopeFormatError() from exc

    def serialize(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))

    @classmethod
    def deserialize(cls, text: str | bytes) -> "EncryptedEnvelope":
        try:
            data = json.loads(text)
        except (json.JSONDecodeError, TypeError, UnicodeDecodeError) as exc:
            raise EnvelopeFormatError() from exc
        return cls.from_dict(data)


def _associated_data(method: EncryptionMethod, key_id: str) -> bytes:
    return f"{method.value}|{key_id}".encode()


def seal(plaintext: bytes, key: bytes | bytearray, salt: bytes, key_id: str) -> EncryptedEnvelope:
    """Encrypt under ``key`` with a fresh IV. The IV is never caller-supplied."""
    iv = random_bytes(IV_LENGTH)
    method = EncryptionMethod.AES_256_GCM
    sealed = AESGCM(bytes(key)).encrypt(iv, plaintext, _associated_data(method, key_id))
    return EncryptedEnvelope(
        method=method,
        ciphertext=sealed[:-TAG_LENGTH],
        iv=iv,
        salt=salt,
        auth_tag=sealed[-TAG_LENGTH:],
        key_id=key_id,
    )


def open_envelope(envelope: EncryptedEnvelope, key: bytes | bytearray) -> bytes:
    """Verify the tag and return plaintext, or raise DecryptionError."""
    try:
        method = EncryptionMethod(envelope.method)
    except ValueError as exc:
        raise UnsupportedMethodError(
            f"Unsupported encryption method: {envelope.method!r}"
        ) from exc
    if len(envelope.iv) != IV_LENGTH or len(envelope.auth_tag) != TAG_LENGTH:
        raise DecryptionError()
    try:
        return AESGCM(bytes(key)).decrypt(
            envelope.iv,
            envelope.ciphertext + envelope.auth_tag,
            _associated_data(method, envelope.key_id),
        )
    except (InvalidTag, ValueError) as exc:
        raise DecryptionError() from exc

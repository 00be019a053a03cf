"""Master key manager: keyring, derivation, data-key wrapping and lifecycle.

One KeyManager is constructed at startup and passed to every component
that needs key material.  Lifecycle:

    init       from_settings() loads the keyring (or an ephemeral key)
    stage      add a new master secret that is not yet current
    escrow     seal a staged secret under the current one for persistence
    restore    stage an escrowed secret again after a restart
    promote    flip the current-key pointer (rotation only)
    retire     drop a non-current key once nothing depends on it
    shutdown   wipe every secret; further use raises ConfigError

Older keys stay in the keyring for decryption (dual-read) until retired.
"""

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterator

from aegis_engine.common.config import AegisSettings
from aegis_engine.common.exceptions import ConfigError, DecryptionError
from aegis_engine.crypto.envelope import EncryptedEnvelope, open_envelope, seal
from aegis_engine.crypto.primitives import (
    generate_uuid,
    hmac_sha256_hex,
    random_bytes,
    random_hex,
    wipe,
)
from aegis_engine.keys.derivation import DEFAULT_ITERATIONS, KEY_LENGTH, derive, generate_salt

logger = logging.getLogger(__name__)

MASTER_SECRET_LENGTH = 32
_PASSPHRASE_LABEL = "aegis-private-key-passphrase"


def parse_secret(value: str) -> bytearray:
    """Master secrets are hex when they look like hex, otherwise UTF-8."""
    try:
        if len(value) >= 2 * KEY_LENGTH and len(value) % 2 == 0:
            return bytearray(bytes.fromhex(value))
    except ValueError:
        pass
    return bytearray(value.encode())


@dataclass
class DataKey:
    """A plaintext DEK held in memory only for the duration of an operation.

    Use as a context manager so the material is wiped on exit.
    """

    id: str
    material: bytearray
    wrapped: EncryptedEnvelope
    _wiped: bool = field(default=False, repr=False)

    def wipe(self) -> None:
        wipe(self.material)
        self._wiped = True

    @property
    def wiped(self) -> bool:
        return self._wiped

    def __enter__(self) -> "DataKey":
        return self

    def __exit__(self, *exc) -> None:
        self.wipe()


class KeyManager:
    """Holds the master keyring and derives per-operation keys from it."""

    def __init__(
        self,
        keyring: dict[str, bytes | bytearray],
        current_key_id: str,
        iterations: int = DEFAULT_ITERATIONS,
        ephemeral: bool = False,
    ):
        if not keyring:
            raise ConfigError("Master keyring is empty")
        if current_key_id not in keyring:
            raise ConfigError(f"Current master key '{current_key_id}' is not in the keyring")
        self._keys: dict[str, bytearray] = {k: bytearray(v) for k, v in keyring.items()}
        self._current = current_key_id
        self._iterations = iterations
        self._lock = threading.RLock()
        self._closed = False
        self.ephemeral = ephemeral

    @classmethod
    def from_settings(cls, settings: AegisSettings) -> "KeyManager":
        ring = settings.master_keyring
        if not ring:
            logger.warning(
                "No master secret configured; generated an ephemeral master key. "
                "Data encrypted in this process will be unreadable after restart."
            )
            return cls(
                {"ephemeral": random_bytes(MASTER_SECRET_LENGTH)},
                "ephemeral",
                iterations=settings.kdf_iterations,
                ephemeral=True,
            )
        return cls(
            {key_id: parse_secret(secret) for key_id, secret in ring.items()},
            settings.active_master_key_id,
            iterations=settings.kdf_iterations,
        )

    # ── Keyring ──

    @property
    def current_key_id(self) -> str:
        self._check_open()
        return self._current

    def key_ids(self) -> list[str]:
        self._check_open()
        return list(self._keys.keys())

    def has_key(self, key_id: str) -> bool:
        return not self._closed and key_id in self._keys

    def _secret(self, key_id: str | None) -> bytearray:
        self._check_open()
        key_id = key_id or self._current
        secret = self._keys.get(key_id)
        if secret is None:
            # Unknown lineage is indistinguishable from a bad tag to callers
            raise DecryptionError()
        return secret

    def _check_open(self) -> None:
        if self._closed:
            raise ConfigError("KeyManager has been shut down")

    # ── Derivation ──

    def derive(self, salt: bytes, key_id: str | None = None) -> bytearray:
        """Derive a key from a master secret. The caller must wipe the result."""
        return derive(bytes(self._secret(key_id)), salt, self._iterations)

    @contextmanager
    def derived_key(self, salt: bytes, key_id: str | None = None) -> Iterator[bytearray]:
        """Scoped derivation: the key is wiped when the block exits."""
        key = self.derive(salt, key_id)
        try:
            yield key
        finally:
            wipe(key)

    def private_key_passphrase(self, key_id: str | None = None) -> bytes:
        """Deterministic passphrase protecting stored private keys under a master key."""
        return hmac_sha256_hex(bytes(self._secret(key_id)), _PASSPHRASE_LABEL).encode()

    # ── Data keys ──

    def wrap_data_key(self, material: bytes | bytearray, key_id: str | None = None) -> EncryptedEnvelope:
        key_id = key_id or self.current_key_id
        salt = generate_salt()
        with self.derived_key(salt, key_id) as kek:
            return seal(bytes(material), kek, salt, key_id)

    def generate_data_key(self, key_id: str | None = None) -> DataKey:
        material = bytearray(random_bytes(KEY_LENGTH))
        return DataKey(
            id=generate_uuid(),
            material=material,
            wrapped=self.wrap_data_key(material, key_id),
        )

    def unwrap_data_key(self, data_key_id: str, wrapped: EncryptedEnvelope) -> DataKey:
        with self.derived_key(wrapped.salt, wrapped.key_id) as kek:
            material = bytearray(open_envelope(wrapped, kek))
        return DataKey(id=data_key_id, material=material, wrapped=wrapped)

    def rewrap(self, wrapped: EncryptedEnvelope, new_key_id: str) -> EncryptedEnvelope:
        """Re-encrypt a wrapped DEK under another master key."""
        with self.derived_key(wrapped.salt, wrapped.key_id) as kek:
            material = bytearray(open_envelope(wrapped, kek))
        try:
            return self.wrap_data_key(material, new_key_id)
        finally:
            wipe(material)

    # ── Lifecycle ──

    def stage(self, secret: bytes | None = None, key_id: str | None = None) -> str:
        """Add a new master secret without making it current. Returns its key id."""
        self._check_open()
        with self._lock:
            key_id = key_id or f"mk-{random_hex(6)}"
            if key_id in self._keys:
                raise ConfigError(f"Master key '{key_id}' already exists")
            self._keys[key_id] = bytearray(secret or random_bytes(MASTER_SECRET_LENGTH))
            return key_id

    def escrow(self, key_id: str, wrapping_key_id: str) -> EncryptedEnvelope:
        """Seal one master secret under another so it can be persisted."""
        return self.wrap_data_key(self._secret(key_id), wrapping_key_id)

    def restore(self, key_id: str, escrowed: EncryptedEnvelope) -> bool:
        """Stage a secret sealed by escrow(). False if the key is already present."""
        if self.has_key(key_id):
            return False
        with self.derived_key(escrowed.salt, escrowed.key_id) as kek:
            secret = bytearray(open_envelope(escrowed, kek))
        try:
            self.stage(bytes(secret), key_id=key_id)
        finally:
            wipe(secret)
        return True

    def promote(self, key_id: str) -> None:
        self._check_open()
        with self._lock:
            if key_id not in self._keys:
                raise ConfigError(f"Master key '{key_id}' is not in the keyring")
            self._current = key_id

    def retire(self, key_id: str) -> None:
        """Remove a key. Ciphertexts under it become unreadable."""
        self._check_open()
        with self._lock:
            if key_id == self._current:
                raise ConfigError("Cannot retire the current master key")
            secret = self._keys.pop(key_id, None)
            if secret is not None:
                wipe(secret)

    def export_keyring(self) -> dict[str, str]:
        """Hex secrets for the operator to persist in AEGIS_MASTER_KEYS."""
        self._check_open()
        return {key_id: bytes(secret).hex() for key_id, secret in self._keys.items()}

    def shutdown(self) -> None:
        with self._lock:
            for secret in self._keys.values():
                wipe(secret)
            self._keys.clear()
            self._closed = True

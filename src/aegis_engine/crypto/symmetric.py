"""Symmetric envelope engine: authenticated encryption of arbitrary bytes."""

from aegis_engine.common.exceptions import DecryptionError
from aegis_engine.crypto.envelope import EncryptedEnvelope, open_envelope, seal
from aegis_engine.keys.derivation import generate_salt
from aegis_engine.keys.manager import DataKey, KeyManager


class SymmetricEngine:
    """Encrypt/decrypt into self-describing AES-256-GCM envelopes.

    Without an explicit DEK the key is derived from the current master key
    and a fresh salt; decrypt re-derives it from the envelope's salt and
    key id.  With a DEK the envelope carries the DEK id and an empty salt.
    """

    def __init__(self, key_manager: KeyManager):
        self.key_manager = key_manager

    def encrypt(
        self, plaintext: bytes, key: DataKey | None = None, key_id: str | None = None,
    ) -> EncryptedEnvelope:
        """Seal under a DEK, or under a master key (the current one unless ``key_id`` is given)."""
        if key is not None:
            return seal(plaintext, key.material, b"", key.id)
        salt = generate_salt()
        key_id = key_id or self.key_manager.current_key_id
        with self.key_manager.derived_key(salt, key_id) as derived:
            return seal(plaintext, derived, salt, key_id)

    def decrypt(self, envelope: EncryptedEnvelope, key: DataKey | None = None) -> bytes:
        if key is not None:
            if envelope.key_id != key.id:
                raise DecryptionError()
            return open_envelope(envelope, key.material)
        if not envelope.salt:
            # DEK-sealed envelope presented without its DEK
            raise DecryptionError()
        with self.key_manager.derived_key(envelope.salt, envelope.key_id) as derived:
            return open_envelope(envelope, derived)

    def encrypt_text(self, text: str, key: DataKey | None = None) -> str:
        """Encrypt a string and return the serialized envelope."""
        return self.encrypt(text.encode("utf-8"), key).serialize()

    def decrypt_text(self, serialized: str, key: DataKey | None = None) -> str:
        return self.decrypt(EncryptedEnvelope.deserialize(serialized), key).decode("utf-8")

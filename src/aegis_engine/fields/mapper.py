"""Field-level encryption of records at the persistence boundary."""

import json
import logging
import threading
from typing import Any, Iterable

from aegis_engine.common.config import AegisSettings
from aegis_engine.common.exceptions import DecryptionError, EnvelopeFormatError
from aegis_engine.crypto.envelope import EncryptedEnvelope
from aegis_engine.crypto.symmetric import SymmetricEngine
from aegis_engine.keys.manager import DataKey

logger = logging.getLogger(__name__)

# Stored field value: the envelope dict plus how to rebuild the original value.
ENCODING_KEY = "encoding"
ENCODING_TEXT = "utf-8"
ENCODING_JSON = "json"


class FieldRegistry:
    """Which fields of which entity are sensitive. Loaded from configuration."""

    def __init__(self, entities: dict[str, Iterable[str]] | None = None):
        self._entities: dict[str, tuple[str, ...]] = {}
        for entity, fields in (entities or {}).items():
            self.register(entity, fields)

    @classmethod
    def from_settings(cls, settings: AegisSettings) -> "FieldRegistry":
        return cls(settings.field_registry_map)

    def register(self, entity: str, fields: Iterable[str]) -> None:
        self._entities[entity] = tuple(dict.fromkeys(fields))

    def fields_for(self, entity: str) -> tuple[str, ...]:
        return self._entities.get(entity, ())

    def entities(self) -> list[str]:
        return list(self._entities)


class LegacyPlaintextFallback:
    """Pass-through path for stored values that are not decryptable envelopes.

    Mixed encrypted/plaintext rows exist while a table is being migrated, so
    decrypt_fields hands such values back unchanged.  The counters keep the
    path observable: ``plaintext`` counts values that were never envelopes,
    ``undecryptable`` counts envelopes that failed authentication.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self.plaintext = 0
        self.undecryptable = 0

    def passthrough_plaintext(self, field: str, value: Any) -> Any:
        with self._lock:
            self.plaintext += 1
        logger.debug("Field '%s' is not encrypted; passing through", field)
        return value

    def passthrough_undecryptable(self, field: str, value: Any) -> Any:
        with self._lock:
            self.undecryptable += 1
        logger.warning("Field '%s' holds an envelope that failed to decrypt; passing through", field)
        return value

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return {"plaintext": self.plaintext, "undecryptable": self.undecryptable}


class FieldEncryptionMapper:
    """Encrypts/decrypts named fields of dict records."""

    def __init__(
        self,
        engine: SymmetricEngine,
        registry: FieldRegistry | None = None,
        fallback: LegacyPlaintextFallback | None = None,
    ):
        self.engine = engine
        self.registry = registry or FieldRegistry()
        self.fallback = fallback or LegacyPlaintextFallback()

    # ── Explicit field lists ──

    def encrypt_fields(
        self, record: dict[str, Any], field_names: Iterable[str], key: DataKey | None = None,
    ) -> dict[str, Any]:
        """Return a copy with each named, non-null field replaced by a serialized envelope."""
        result = dict(record)
        for name in field_names:
            if name in result and result[name] is not None:
                result[name] = self.encrypt_value(result[name], key)
        return result

    def decrypt_fields(
        self, record: dict[str, Any], field_names: Iterable[str], key: DataKey | None = None,
    ) -> dict[str, Any]:
        """Inverse of encrypt_fields. Values that are not envelopes pass through."""
        result = dict(record)
        for name in field_names:
            if name in result and result[name] is not None:
                result[name] = self.decrypt_value(name, result[name], key)
        return result

    # ── Registry-driven ──

    def encrypt_entity(self, entity: str, record: dict[str, Any], key: DataKey | None = None) -> dict[str, Any]:
        return self.encrypt_fields(record, self.registry.fields_for(entity), key)

    def decrypt_entity(self, entity: str, record: dict[str, Any], key: DataKey | None = None) -> dict[str, Any]:
        return self.decrypt_fields(record, self.registry.fields_for(entity), key)

    # ── Single values ──

    def encrypt_value(self, value: Any, key: DataKey | None = None) -> str:
        if isinstance(value, str):
            plaintext, encoding = value.encode("utf-8"), ENCODING_TEXT
        else:
            plaintext, encoding = json.dumps(value).encode("utf-8"), ENCODING_JSON
        stored = self.engine.encrypt(plaintext, key).to_dict()
        stored[ENCODING_KEY] = encoding
        return json.dumps(stored, sort_keys=True, separators=(",", ":"))

    def decrypt_value(self, field: str, value: Any, key: DataKey | None = None) -> Any:
        if not isinstance(value, str):
            return self.fallback.passthrough_plaintext(field, value)
        try:
            stored = json.loads(value)
        except json.JSONDecodeError:
            return self.fallback.passthrough_plaintext(field, value)
        try:
            envelope = EncryptedEnvelope.from_dict(stored)
        except EnvelopeFormatError:
            return self.fallback.passthrough_plaintext(field, value)
        try:
            plaintext = self.engine.decrypt(envelope, key).decode("utf-8")
        except (DecryptionError, UnicodeDecodeError):
            return self.fallback.passthrough_undecryptable(field, value)
        if stored.get(ENCODING_KEY) == ENCODING_JSON:
            return json.loads(plaintext)
        return plaintext

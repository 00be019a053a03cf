"""Tests for field-level encryption and the legacy plaintext fallback."""

import json

import pytest

from aegis_engine.common.exceptions import UnsupportedMethodError
from aegis_engine.crypto.primitives import b64e
from aegis_engine.fields.mapper import FieldEncryptionMapper, FieldRegistry


@pytest.fixture
def mapper(engine):
    return FieldEncryptionMapper(engine, FieldRegistry({"guest": ["ssn", "card_number"]}))


RECORD = {"id": 1, "name": "Ada", "ssn": "123-45-6789", "card_number": "4111111111111111"}


class TestEncryptFields:
    def test_round_trip(self, mapper):
        encrypted = mapper.encrypt_fields(RECORD, ["ssn", "card_number"])
        assert encrypted["ssn"] != RECORD["ssn"]
        assert "123-45-6789" not in encrypted["ssn"]
        assert encrypted["name"] == "Ada"
        assert mapper.decrypt_fields(encrypted, ["ssn", "card_number"]) == RECORD

    def test_returns_copy(self, mapper):
        original = dict(RECORD)
        mapper.encrypt_fields(original, ["ssn"])
        assert original == RECORD

    def test_stored_value_is_envelope_json(self, mapper):
        stored = json.loads(mapper.encrypt_fields(RECORD, ["ssn"])["ssn"])
        assert stored["method"] == "aes-256-gcm"
        assert stored["encoding"] == "utf-8"

    def test_none_and_missing_skipped(self, mapper):
        record = {"ssn": None}
        assert mapper.encrypt_fields(record, ["ssn", "card_number"]) == {"ssn": None}

    def test_structured_values(self, mapper):
        record = {"meta": {"dob": "1990-01-01", "tags": [1, 2]}, "pin": 1234}
        encrypted = mapper.encrypt_fields(record, ["meta", "pin"])
        assert isinstance(encrypted["meta"], str)
        assert isinstance(encrypted["pin"], str)
        assert mapper.decrypt_fields(encrypted, ["meta", "pin"]) == record

    def test_with_data_key(self, mapper, key_manager):
        with key_manager.generate_data_key() as dek:
            encrypted = mapper.encrypt_fields(RECORD, ["ssn"], key=dek)
            assert mapper.decrypt_fields(encrypted, ["ssn"], key=dek) == RECORD


class TestRegistry:
    def test_entity_round_trip(self, mapper):
        encrypted = mapper.encrypt_entity("guest", RECORD)
        assert encrypted["ssn"] != RECORD["ssn"]
        assert encrypted["card_number"] != RECORD["card_number"]
        assert mapper.decrypt_entity("guest", encrypted) == RECORD

    def test_unknown_entity_untouched(self, mapper):
        assert mapper.encrypt_entity("host", RECORD) == RECORD

    def test_from_settings(self, settings_factory):
        registry = FieldRegistry.from_settings(
            settings_factory(field_registry=json.dumps({"host": ["iban", "iban", "tax_id"]}))
        )
        assert registry.fields_for("host") == ("iban", "tax_id")
        assert registry.entities() == ["host"]

    def test_register(self):
        registry = FieldRegistry()
        registry.register("guest", ["ssn"])
        assert registry.fields_for("guest") == ("ssn",)
        assert registry.fields_for("other") == ()


class TestLegacyPlaintextFallback:
    def test_plain_text_passes_through(self, mapper):
        legacy = {"ssn": "123-45-6789"}
        assert mapper.decrypt_fields(legacy, ["ssn"]) == legacy
        assert mapper.fallback.snapshot() == {"plaintext": 1, "undecryptable": 0}

    def test_non_envelope_json_passes_through(self, mapper):
        legacy = {"ssn": '{"value": "123-45-6789"}'}
        assert mapper.decrypt_fields(legacy, ["ssn"]) == legacy
        assert mapper.fallback.plaintext == 1

    def test_non_string_passes_through(self, mapper):
        assert mapper.decrypt_fields({"pin": 1234}, ["pin"]) == {"pin": 1234}
        assert mapper.fallback.plaintext == 1

    def test_mixed_record(self, mapper):
        stored = mapper.encrypt_fields(RECORD, ["ssn"])
        stored["card_number"] = "4111111111111111"
        assert mapper.decrypt_fields(stored, ["ssn", "card_number"]) == RECORD
        assert mapper.fallback.snapshot() == {"plaintext": 1, "undecryptable": 0}

    def test_tampered_envelope_passes_through_and_is_counted(self, mapper, caplog):
        stored = json.loads(mapper.encrypt_fields(RECORD, ["ssn"])["ssn"])
        stored["auth_tag"] = b64e(bytes(16))
        value = json.dumps(stored)
        assert mapper.decrypt_fields({"ssn": value}, ["ssn"]) == {"ssn": value}
        assert mapper.fallback.snapshot() == {"plaintext": 0, "undecryptable": 1}
        assert "failed to decrypt" in caplog.text

    def test_data_key_envelope_without_key_is_undecryptable(self, mapper, key_manager):
        with key_manager.generate_data_key() as dek:
            encrypted = mapper.encrypt_fields(RECORD, ["ssn"], key=dek)
        assert mapper.decrypt_fields(encrypted, ["ssn"])["ssn"] == encrypted["ssn"]
        assert mapper.fallback.undecryptable == 1

    def test_unsupported_method_fails_fast(self, mapper):
        stored = json.loads(mapper.encrypt_fields(RECORD, ["ssn"])["ssn"])
        stored["method"] = "rot13"
        with pytest.raises(UnsupportedMethodError):
            mapper.decrypt_fields({"ssn": json.dumps(stored)}, ["ssn"])

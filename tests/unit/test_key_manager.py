"""Tests for the master KeyManager: keyring, derivation, data keys and lifecycle."""

import json
import logging

import pytest

from aegis_engine.common.exceptions import ConfigError, DecryptionError
from aegis_engine.keys.manager import KeyManager, parse_secret


MASTER_HEX = "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff"


class TestParseSecret:
    def test_hex_secret(self):
        assert parse_secret(MASTER_HEX) == bytearray(bytes.fromhex(MASTER_HEX))

    def test_short_text_secret(self):
        assert parse_secret("passphrase") == bytearray(b"passphrase")

    def test_long_non_hex_secret(self):
        value = "z" * 64
        assert parse_secret(value) == bytearray(value.encode())


class TestConstruction:
    def test_from_settings(self, settings):
        manager = KeyManager.from_settings(settings)
        assert manager.current_key_id == "mk-1"
        assert manager.ephemeral is False

    def test_from_keyring(self, settings_factory):
        settings = settings_factory(
            master_keys=json.dumps({"mk-1": "old-secret", "mk-2": "new-secret"}),
            current_master_key_id="mk-1",
        )
        manager = KeyManager.from_settings(settings)
        assert manager.current_key_id == "mk-1"
        assert sorted(manager.key_ids()) == ["mk-1", "mk-2"]

    def test_keyring_defaults_to_last_entry(self, settings_factory):
        settings = settings_factory(master_keys=json.dumps({"mk-1": "a", "mk-2": "b"}))
        assert KeyManager.from_settings(settings).current_key_id == "mk-2"

    def test_ephemeral_without_secret(self, settings_factory, caplog):
        with caplog.at_level(logging.WARNING, logger="aegis_engine"):
            manager = KeyManager.from_settings(settings_factory(master_secret=""))
        assert manager.ephemeral is True
        assert manager.current_key_id == "ephemeral"
        assert "ephemeral" in caplog.text

    def test_empty_keyring(self):
        with pytest.raises(ConfigError):
            KeyManager({}, "mk-1")

    def test_current_not_in_keyring(self):
        with pytest.raises(ConfigError):
            KeyManager({"mk-1": b"x" * 32}, "mk-2")


class TestDerivation:
    def test_deterministic(self, key_manager):
        salt = b"s" * 16
        assert key_manager.derive(salt) == key_manager.derive(salt)

    def test_differs_per_master_key(self, key_manager):
        staged = key_manager.stage()
        salt = b"s" * 16
        assert key_manager.derive(salt) != key_manager.derive(salt, staged)

    def test_scoped_key_wiped_on_exit(self, key_manager):
        with key_manager.derived_key(b"s" * 16) as key:
            held = key
            assert any(held)
        assert held == bytearray(32)

    def test_scoped_key_wiped_on_error(self, key_manager):
        with pytest.raises(RuntimeError):
            with key_manager.derived_key(b"s" * 16) as key:
                held = key
                raise RuntimeError("boom")
        assert held == bytearray(32)

    def test_unknown_key_id(self, key_manager):
        with pytest.raises(DecryptionError):
            key_manager.derive(b"s" * 16, "unknown")

    def test_private_key_passphrase(self, key_manager):
        staged = key_manager.stage()
        first = key_manager.private_key_passphrase()
        assert first == key_manager.private_key_passphrase()
        assert first != key_manager.private_key_passphrase(staged)


class TestDataKeys:
    def test_generate_and_unwrap(self, key_manager):
        dek = key_manager.generate_data_key()
        assert len(dek.material) == 32
        assert dek.wrapped.key_id == key_manager.current_key_id
        unwrapped = key_manager.unwrap_data_key(dek.id, dek.wrapped)
        assert unwrapped.material == dek.material
        assert unwrapped.id == dek.id

    def test_wrapped_form_hides_material(self, key_manager):
        dek = key_manager.generate_data_key()
        assert bytes(dek.material) not in dek.wrapped.ciphertext
        assert dek.wrapped.serialize().find(bytes(dek.material).hex()) == -1

    def test_context_manager_wipes(self, key_manager):
        with key_manager.generate_data_key() as dek:
            assert any(dek.material)
        assert dek.wiped
        assert dek.material == bytearray(32)

    def test_rewrap_under_new_master(self, key_manager):
        dek = key_manager.generate_data_key()
        staged = key_manager.stage()
        rewrapped = key_manager.rewrap(dek.wrapped, staged)
        assert rewrapped.key_id == staged
        assert key_manager.unwrap_data_key(dek.id, rewrapped).material == dek.material


class TestLifecycle:
    def test_stage_does_not_change_current(self, key_manager):
        staged = key_manager.stage()
        assert staged.startswith("mk-")
        assert key_manager.has_key(staged)
        assert key_manager.current_key_id == "mk-1"

    def test_stage_with_explicit_id(self, key_manager):
        assert key_manager.stage(b"k" * 32, key_id="mk-2") == "mk-2"

    def test_stage_duplicate(self, key_manager):
        with pytest.raises(ConfigError):
            key_manager.stage(key_id="mk-1")

    def test_promote(self, key_manager):
        staged = key_manager.stage()
        key_manager.promote(staged)
        assert key_manager.current_key_id == staged

    def test_promote_unknown(self, key_manager):
        with pytest.raises(ConfigError):
            key_manager.promote("mk-missing")

    def test_old_key_still_reads_after_promote(self, key_manager):
        dek = key_manager.generate_data_key()
        key_manager.promote(key_manager.stage())
        assert key_manager.unwrap_data_key(dek.id, dek.wrapped).material == dek.material

    def test_retire_current_rejected(self, key_manager):
        with pytest.raises(ConfigError):
            key_manager.retire("mk-1")

    def test_retire_old_key(self, key_manager):
        dek = key_manager.generate_data_key()
        key_manager.promote(key_manager.stage())
        key_manager.retire("mk-1")
        assert not key_manager.has_key("mk-1")
        with pytest.raises(DecryptionError):
            key_manager.unwrap_data_key(dek.id, dek.wrapped)

    def test_escrow_and_restore(self, key_manager, settings):
        staged = key_manager.stage(b"n" * 32, key_id="mk-2")
        escrowed = key_manager.escrow(staged, "mk-1")
        assert escrowed.key_id == "mk-1"
        assert b"n" * 32 not in escrowed.ciphertext

        fresh = KeyManager.from_settings(settings)
        try:
            assert fresh.restore("mk-2", escrowed) is True
            assert fresh.restore("mk-2", escrowed) is False
            assert fresh.export_keyring()["mk-2"] == (b"n" * 32).hex()
            assert fresh.current_key_id == "mk-1"
        finally:
            fresh.shutdown()

    def test_restore_without_wrapping_key(self, key_manager, settings_factory):
        escrowed = key_manager.escrow(key_manager.stage(), "mk-1")
        stranger = KeyManager.from_settings(settings_factory(master_keys='{"mk-9": "other"}'))
        try:
            with pytest.raises(DecryptionError):
                stranger.restore("mk-2", escrowed)
        finally:
            stranger.shutdown()

    def test_export_keyring(self, key_manager):
        exported = key_manager.export_keyring()
        assert exported == {"mk-1": MASTER_HEX}

    def test_shutdown(self, settings):
        manager = KeyManager.from_settings(settings)
        manager.shutdown()
        assert not manager.has_key("mk-1")
        with pytest.raises(ConfigError):
            manager.current_key_id
        with pytest.raises(ConfigError):
            manager.generate_data_key()

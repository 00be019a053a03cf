"""Shared test fixtures for Aegis-Engine."""

import pytest

from aegis_engine.common.config import AegisSettings
from aegis_engine.common.database import DatabaseManager
from aegis_engine.crypto.symmetric import SymmetricEngine
from aegis_engine.keys.manager import KeyManager


MASTER_SECRET = "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff"
AUDIT_HMAC_KEY = "test-audit-hmac-key-for-unit-tests"


def make_settings(**overrides) -> AegisSettings:
    defaults = {
        "environment": "test",
        "master_secret": MASTER_SECRET,
        "audit_hmac_key": AUDIT_HMAC_KEY,
        "db_url": "sqlite+aiosqlite://",
        "kdf_iterations": 1000,
        "bcrypt_rounds": 4,
        "rsa_key_size": 2048,
    }
    defaults.update(overrides)
    return AegisSettings(**defaults)


@pytest.fixture
def settings_factory():
    return make_settings


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def key_manager(settings):
    manager = KeyManager.from_settings(settings)
    yield manager
    manager.shutdown()


@pytest.fixture
def engine(key_manager):
    return SymmetricEngine(key_manager)


@pytest.fixture
async def db(settings):
    manager = DatabaseManager(settings)
    await manager.init()
    await manager.create_all()
    yield manager
    await manager.close()

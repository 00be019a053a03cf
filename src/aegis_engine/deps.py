"""Dependency injection singletons for Aegis-Engine.

One KeyManager per process; every component receives it explicitly.
"""

from aegis_engine.common.config import get_settings
from aegis_engine.common.database import DatabaseManager
from aegis_engine.audit.service import AuditService
from aegis_engine.crypto.asymmetric import AsymmetricEngine
from aegis_engine.crypto.passwords import PasswordHasher
from aegis_engine.crypto.symmetric import SymmetricEngine
from aegis_engine.fields.mapper import FieldEncryptionMapper, FieldRegistry
from aegis_engine.keys.manager import KeyManager
from aegis_engine.keys.service import ApiKeyService, DataKeyService
from aegis_engine.rotation.service import RotationCoordinator
from aegis_engine.vault.tokenizer import TokenizationVault

_db: DatabaseManager | None = None
_key_manager: KeyManager | None = None
_symmetric: SymmetricEngine | None = None
_asymmetric: AsymmetricEngine | None = None
_passwords: PasswordHasher | None = None
_fields: FieldEncryptionMapper | None = None
_vault: TokenizationVault | None = None
_audit: AuditService | None = None
_data_keys: DataKeyService | None = None
_api_keys: ApiKeyService | None = None
_rotation: RotationCoordinator | None = None


def get_db() -> DatabaseManager:
    global _db
    if _db is None:
        _db = DatabaseManager(get_settings())
    return _db


def get_key_manager() -> KeyManager:
    global _key_manager
    if _key_manager is None:
        _key_manager = KeyManager.from_settings(get_settings())
    return _key_manager


def get_symmetric_engine() -> SymmetricEngine:
    global _symmetric
    if _symmetric is None:
        _symmetric = SymmetricEngine(get_key_manager())
    return _symmetric


def get_asymmetric_engine() -> AsymmetricEngine:
    global _asymmetric
    if _asymmetric is None:
        _asymmetric = AsymmetricEngine(get_key_manager(), key_size=get_settings().rsa_key_size)
    return _asymmetric


def get_password_hasher() -> PasswordHasher:
    global _passwords
    if _passwords is None:
        settings = get_settings()
        _passwords = PasswordHasher(
            rounds=settings.bcrypt_rounds,
            min_length=settings.password_min_length,
            max_length=settings.password_max_length,
        )
    return _passwords


def get_field_mapper() -> FieldEncryptionMapper:
    global _fields
    if _fields is None:
        _fields = FieldEncryptionMapper(
            get_symmetric_engine(), FieldRegistry.from_settings(get_settings()),
        )
    return _fields


def get_tokenization_vault() -> TokenizationVault:
    global _vault
    if _vault is None:
        _vault = TokenizationVault(get_symmetric_engine())
    return _vault


def get_audit_service() -> AuditService:
    global _audit
    if _audit is None:
        _audit = AuditService(get_settings())
    return _audit


def get_data_key_service() -> DataKeyService:
    global _data_keys
    if _data_keys is None:
        _data_keys = DataKeyService(get_key_manager())
    return _data_keys


def get_api_key_service() -> ApiKeyService:
    global _api_keys
    if _api_keys is None:
        _api_keys = ApiKeyService(get_symmetric_engine())
    return _api_keys


def get_rotation_coordinator() -> RotationCoordinator:
    global _rotation
    if _rotation is None:
        _rotation = RotationCoordinator(
            get_settings(),
            get_db(),
            get_key_manager(),
            get_symmetric_engine(),
            get_asymmetric_engine(),
            get_audit_service(),
            data_keys=get_data_key_service(),
            api_keys=get_api_key_service(),
            vault=get_tokenization_vault(),
        )
    return _rotation


def reset_singletons() -> None:
    """Reset all singletons (for testing). Wipes the master keyring."""
    global _db, _key_manager, _symmetric, _asymmetric, _passwords, _fields
    global _vault, _audit, _data_keys, _api_keys, _rotation
    if _key_manager is not None:
        _key_manager.shutdown()
    _db = None
    _key_manager = None
    _symmetric = None
    _asymmetric = None
    _passwords = None
    _fields = None
    _vault = None
    _audit = None
    _data_keys = None
    _api_keys = None
    _rotation = None

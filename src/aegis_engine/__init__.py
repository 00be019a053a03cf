"""Aegis-Engine: envelope encryption, tokenization and tamper-evident audit."""

from aegis_engine.crypto.envelope import EncryptedEnvelope, EncryptionMethod
from aegis_engine.crypto.passwords import PasswordHasher, check_strength
from aegis_engine.crypto.symmetric import SymmetricEngine
from aegis_engine.crypto.asymmetric import AsymmetricEngine, KeyPair
from aegis_engine.fields.mapper import FieldEncryptionMapper, FieldRegistry, LegacyPlaintextFallback
from aegis_engine.keys.manager import DataKey, KeyManager
from aegis_engine.privacy.sanitizer import detect_pii, redact_pii, sanitize_for_logging
from aegis_engine.vault.tokenizer import Token, TokenizationVault

__all__ = [
    "EncryptedEnvelope",
    "EncryptionMethod",
    "PasswordHasher",
    "check_strength",
    "SymmetricEngine",
    "AsymmetricEngine",
    "KeyPair",
    "FieldEncryptionMapper",
    "FieldRegistry",
    "LegacyPlaintextFallback",
    "DataKey",
    "KeyManager",
    "detect_pii",
    "redact_pii",
    "sanitize_for_logging",
    "Token",
    "TokenizationVault",
]
__version__ = "0.1.0"

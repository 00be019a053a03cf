"""Aegis-Engine configuration via pydantic-settings."""

import json
import warnings
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict

from aegis_engine.common.exceptions import ConfigError

_INSECURE_DEFAULTS = {
    "audit_hmac_key": "insecure-audit-hmac-key-change-me",
}

_PERMISSIVE_ENVIRONMENTS = {"development", "test"}


class AegisSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="AEGIS_")

    environment: str = "development"

    # Master key material.  Empty means an ephemeral key is generated at
    # startup, which is only acceptable outside production.
    master_secret: str = ""
    master_key_id: str = "mk-1"

    # Master keyring: JSON dict mapping key id to secret.
    # e.g. '{"mk-1": "old-secret", "mk-2": "new-secret"}'
    # When set, master_secret/master_key_id are ignored.
    master_keys: str = ""
    current_master_key_id: str = ""

    # Audit signing keyring, keyed by integer version:
    # '{"0": "old-key", "1": "new-key"}'.  Empty means audit_hmac_key is v0.
    audit_hmac_key: str = "insecure-audit-hmac-key-change-me"
    audit_hmac_keys: str = ""

    # Database
    db_url: str = "sqlite+aiosqlite:///./data/aegis.db"

    # Key derivation (PBKDF2-HMAC-SHA256, 32-byte output)
    kdf_iterations: int = 100_000

    # Passwords
    bcrypt_rounds: int = 12
    password_min_length: int = 8
    password_max_length: int = 72  # bcrypt truncates beyond 72 bytes

    # Asymmetric keys
    rsa_key_size: int = 2048

    # Rotation
    rotation_batch_size: int = 100
    master_key_rotation_days: int = 90

    # Audit
    audit_append_retries: int = 3
    default_partition: str = "default"
    security_partition: str = "security"

    # Field registry: JSON dict mapping entity name to sensitive fields.
    # e.g. '{"guest": ["ssn", "card_number"], "host": ["bank_account"]}'
    field_registry: str = ""

    @property
    def master_keyring(self) -> dict[str, str]:
        """Return the master keyring as {key_id: secret}.

        Empty when no master secret is configured at all.
        """
        if self.master_keys:
            raw = _parse_json_setting("AEGIS_MASTER_KEYS", self.master_keys)
            return {str(k): str(v) for k, v in raw.items()}
        if self.master_secret:
            return {self.master_key_id: self.master_secret}
        return {}

    @property
    def active_master_key_id(self) -> str | None:
        ring = self.master_keyring
        if not ring:
            return None
        if self.current_master_key_id:
            if self.current_master_key_id not in ring:
                raise ConfigError(
                    f"AEGIS_CURRENT_MASTER_KEY_ID '{self.current_master_key_id}' "
                    "is not present in the master keyring"
                )
            return self.current_master_key_id
        return list(ring.keys())[-1]

    @property
    def audit_hmac_keyring(self) -> dict[int, str]:
        """Return the audit HMAC keyring as {version_int: key_str}."""
        if self.audit_hmac_keys:
            raw = _parse_json_setting("AEGIS_AUDIT_HMAC_KEYS", self.audit_hmac_keys)
            return {int(k): v for k, v in raw.items()}
        return {0: self.audit_hmac_key}

    @property
    def current_audit_hmac_version(self) -> int:
        return max(self.audit_hmac_keyring.keys())

    @property
    def current_audit_hmac_key(self) -> str:
        ring = self.audit_hmac_keyring
        return ring[max(ring.keys())]

    @property
    def field_registry_map(self) -> dict[str, list[str]]:
        if not self.field_registry:
            return {}
        raw = _parse_json_setting("AEGIS_FIELD_REGISTRY", self.field_registry)
        return {str(entity): list(fields) for entity, fields in raw.items()}

    def validate_for_production(self) -> None:
        """Raise if insecure defaults are used in non-development environments."""
        if self.kdf_iterations < 1 or self.bcrypt_rounds < 4 or self.bcrypt_rounds > 31:
            raise ConfigError("Invalid KDF iteration count or bcrypt cost factor")
        if not 0 < self.password_min_length <= self.password_max_length:
            raise ConfigError(
                "AEGIS_PASSWORD_MIN_LENGTH must be positive and not exceed "
                "AEGIS_PASSWORD_MAX_LENGTH"
            )
        if self.rotation_batch_size < 1:
            raise ConfigError("AEGIS_ROTATION_BATCH_SIZE must be at least 1")

        insecure_fields = [
            field
            for field, default in _INSECURE_DEFAULTS.items()
            if getattr(self, field) == default and not self.audit_hmac_keys
        ]
        missing_master = not self.master_keyring

        if self.environment not in _PERMISSIVE_ENVIRONMENTS:
            if missing_master:
                raise ConfigError(
                    f"No master secret configured for '{self.environment}' environment. "
                    "Set AEGIS_MASTER_SECRET or AEGIS_MASTER_KEYS. "
                    "Generate one with: aegis generate-secret"
                )
            if insecure_fields:
                env_vars = ", ".join(f"AEGIS_{f.upper()}" for f in insecure_fields)
                raise ConfigError(
                    f"Insecure default values detected in '{self.environment}' environment. "
                    f"Set these environment variables to secure values: {env_vars}."
                )

        if insecure_fields or missing_master:
            warnings.warn(
                "Using insecure default key material; set AEGIS_MASTER_SECRET and "
                "AEGIS_AUDIT_HMAC_KEY for production",
                UserWarning,
                stacklevel=2,
            )


def _parse_json_setting(name: str, value: str) -> dict:
    try:
        raw = json.loads(value)
    except (json.JSONDecodeError, TypeError) as exc:
        raise ConfigError(f"{name} must be a valid JSON object") from exc
    if not isinstance(raw, dict):
        raise ConfigError(f"{name} must be a valid JSON object")
    return raw


@lru_cache
def get_settings() -> AegisSettings:
    settings = AegisSettings()
    settings.validate_for_production()
    return settings

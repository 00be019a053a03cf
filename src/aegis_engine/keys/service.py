"""Data key, stored key pair and API key services."""

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from aegis_engine.audit.models import AuditRecordModel
from aegis_engine.audit.schemas import AuditCategory, AuditSeverity
from aegis_engine.audit.service import AuditService
from aegis_engine.crypto.asymmetric import KeyPair
from aegis_engine.crypto.envelope import EncryptedEnvelope
from aegis_engine.crypto.primitives import random_hex, sha256_hex, timing_safe_equal
from aegis_engine.crypto.symmetric import SymmetricEngine
from aegis_engine.keys.manager import DataKey, KeyManager
from aegis_engine.keys.models import (
    KIND_DATA_KEY,
    KIND_PRIVATE_KEY,
    STATUS_ACTIVE,
    STATUS_RETIRED,
    STATUS_ROTATING,
    ApiKeyModel,
    WrappedKeyModel,
)

logger = logging.getLogger(__name__)

API_KEY_PREFIX = "ak_"
API_KEY_BYTES = 24
API_KEY_DISPLAY_LEN = 11  # "ak_" + 8 hex chars


class DataKeyService:
    """Creates and loads DEKs. Only the wrapped form ever reaches the database."""

    def __init__(self, key_manager: KeyManager):
        self.key_manager = key_manager

    async def create_data_key(
        self, session: AsyncSession, label: str = "",
    ) -> tuple[WrappedKeyModel, DataKey]:
        data_key = self.key_manager.generate_data_key()
        row = WrappedKeyModel(
            id=data_key.id,
            kind=KIND_DATA_KEY,
            master_key_id=data_key.wrapped.key_id,
            wrapped=data_key.wrapped.serialize(),
            label=label,
        )
        session.add(row)
        await session.flush()
        return row, data_key

    async def load_data_key(self, session: AsyncSession, data_key_id: str) -> DataKey | None:
        row = await session.get(WrappedKeyModel, data_key_id)
        if row is None or row.kind != KIND_DATA_KEY:
            return None
        return self.key_manager.unwrap_data_key(row.id, EncryptedEnvelope.deserialize(row.wrapped))

    async def active_data_key(self, session: AsyncSession) -> WrappedKeyModel | None:
        """The most recently created active DEK."""
        result = await session.execute(
            select(WrappedKeyModel)
            .where(
                WrappedKeyModel.kind == KIND_DATA_KEY,
                WrappedKeyModel.status == STATUS_ACTIVE,
            )
            .order_by(WrappedKeyModel.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def retire_data_key(self, session: AsyncSession, data_key_id: str) -> bool:
        """Stop using a DEK for new data. It stays loadable for decryption."""
        row = await session.get(WrappedKeyModel, data_key_id)
        if row is None or row.kind != KIND_DATA_KEY:
            return False
        row.status = STATUS_RETIRED
        await session.flush()
        return True

    async def store_key_pair(
        self, session: AsyncSession, key_pair: KeyPair, label: str = "",
    ) -> WrappedKeyModel:
        row = WrappedKeyModel(
            kind=KIND_PRIVATE_KEY,
            master_key_id=key_pair.key_id,
            wrapped=key_pair.private_pem.decode("ascii"),
            public_pem=key_pair.public_pem.decode("ascii"),
            label=label,
        )
        session.add(row)
        await session.flush()
        return row

    async def load_key_pair(self, session: AsyncSession, key_pair_id: str) -> KeyPair | None:
        row = await session.get(WrappedKeyModel, key_pair_id)
        if row is None or row.kind != KIND_PRIVATE_KEY:
            return None
        return KeyPair(
            public_pem=(row.public_pem or "").encode("ascii"),
            private_pem=row.wrapped.encode("ascii"),
            key_id=row.master_key_id,
        )


class ApiKeyService:
    """API keys: looked up by SHA-256 hash, secret kept encrypted for reveal."""

    def __init__(self, engine: SymmetricEngine):
        self.engine = engine

    async def issue(
        self, session: AsyncSession, name: str, rotated_from_id: str | None = None,
    ) -> tuple[ApiKeyModel, str]:
        """Create a key. Returns (model, raw_key)."""
        raw_key = f"{API_KEY_PREFIX}{random_hex(API_KEY_BYTES)}"
        envelope = self.engine.encrypt(raw_key.encode())
        row = ApiKeyModel(
            name=name,
            prefix=raw_key[:API_KEY_DISPLAY_LEN],
            key_hash=sha256_hex(raw_key),
            wrapped_secret=envelope.serialize(),
            master_key_id=envelope.key_id,
            rotated_from_id=rotated_from_id,
        )
        session.add(row)
        await session.flush()
        return row, raw_key

    async def verify(self, session: AsyncSession, raw_key: str) -> ApiKeyModel | None:
        """The matching usable key, or None. Keys mid-rotation remain usable."""
        if not raw_key or not raw_key.startswith(API_KEY_PREFIX):
            return None
        digest = sha256_hex(raw_key)
        result = await session.execute(
            select(ApiKeyModel).where(ApiKeyModel.key_hash == digest)
        )
        row = result.scalar_one_or_none()
        if row is None or not timing_safe_equal(row.key_hash, digest):
            return None
        if row.status not in (STATUS_ACTIVE, STATUS_ROTATING):
            return None
        return row

    async def reveal(self, session: AsyncSession, api_key_id: str) -> str | None:
        row = await session.get(ApiKeyModel, api_key_id)
        if row is None:
            return None
        return self.engine.decrypt_text(row.wrapped_secret)

    async def list_usable(self, session: AsyncSession) -> list[ApiKeyModel]:
        result = await session.execute(
            select(ApiKeyModel)
            .where(ApiKeyModel.status.in_([STATUS_ACTIVE, STATUS_ROTATING]))
            .order_by(ApiKeyModel.created_at)
        )
        return list(result.scalars().all())


async def report_key_configuration(
    session: AsyncSession, audit: AuditService, key_manager: KeyManager,
) -> AuditRecordModel | None:
    """Audit a missing master secret at startup. Returns the record, if any."""
    if not key_manager.ephemeral:
        return None
    logger.warning("Master key is ephemeral; data encrypted now is lost on restart")
    return await audit.append(
        session,
        AuditCategory.SECURITY,
        AuditSeverity.WARNING,
        actor="system",
        target="master_key",
        details={"key_id": key_manager.current_key_id, "ephemeral": True},
        action="keys.ephemeral_master_key",
        partition=audit.settings.security_partition,
    )

"""SQLAlchemy models for persisted (always wrapped) key material."""

from sqlalchemy import ForeignKey, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from aegis_engine.common.models import Base, TimestampMixin, generate_uuid

KIND_DATA_KEY = "data_key"
KIND_PRIVATE_KEY = "private_key"

STATUS_ACTIVE = "active"
STATUS_RETIRED = "retired"
STATUS_ROTATING = "rotating"
STATUS_REVOKED = "revoked"


class WrappedKeyModel(Base, TimestampMixin):
    """A DEK (serialized envelope) or a private key (encrypted PKCS#8 PEM)."""

    __tablename__ = "wrapped_keys"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    kind: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    master_key_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    wrapped: Mapped[str] = mapped_column(Text, nullable=False)
    public_pem: Mapped[str | None] = mapped_column(Text, nullable=True)
    label: Mapped[str] = mapped_column(String(255), default="")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=STATUS_ACTIVE)


class ApiKeyModel(Base, TimestampMixin):
    __tablename__ = "api_keys"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    prefix: Mapped[str] = mapped_column(String(16), nullable=False)
    key_hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True, index=True)
    wrapped_secret: Mapped[str] = mapped_column(Text, nullable=False)
    master_key_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=STATUS_ACTIVE)
    rotated_from_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("api_keys.id"), nullable=True
    )

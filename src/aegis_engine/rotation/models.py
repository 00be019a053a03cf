"""SQLAlchemy model for key rotation tickets."""

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from aegis_engine.common.models import Base, TimestampMixin, generate_uuid, utcnow


class KeyRotationTicketModel(Base, TimestampMixin):
    __tablename__ = "key_rotation_tickets"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    scope: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="PENDING", index=True)
    old_key_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    new_key_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    # Rows created at or after the cutoff belong to the new generation.
    cutoff_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    checkpoint: Mapped[str | None] = mapped_column(String(36), nullable=True)
    processed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error: Mapped[str | None] = mapped_column(String(255), nullable=True)
    # MASTER_KEY: the new secret sealed under the old one, until the old key is retired.
    escrowed_key: Mapped[str | None] = mapped_column(Text, nullable=True)
    resumed_from_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("key_rotation_tickets.id"), nullable=True
    )
    initiated_by: Mapped[str] = mapped_column(String(255), nullable=False, default="system")

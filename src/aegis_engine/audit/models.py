"""SQLAlchemy models for the hash-chained audit log."""

from datetime import datetime

from sqlalchemy import DateTime, Index, Integer, JSON, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from aegis_engine.common.models import Base, generate_uuid, utcnow


class AuditRecordModel(Base):
    __tablename__ = "audit_records"
    __table_args__ = (
        # One record per chain position: a second writer computing from a
        # stale head fails on insert instead of forking the chain.
        UniqueConstraint("partition", "sequence", name="uq_audit_partition_sequence"),
        Index("ix_audit_partition_timestamp", "partition", "timestamp"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    partition: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    category: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    severity: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    actor: Mapped[str] = mapped_column(String(255), nullable=False, default="system")
    target: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    details: Mapped[dict] = mapped_column(JSON, default=dict)
    corrects_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    prev_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    self_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    signature: Mapped[str] = mapped_column(String(64), nullable=False)
    signature_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

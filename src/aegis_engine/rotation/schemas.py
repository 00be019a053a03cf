"""Rotation scopes, ticket states and the serializable ticket view."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel


class RotationScope(str, Enum):
    DATA_KEYS = "DATA_KEYS"
    API_KEYS = "API_KEYS"
    MASTER_KEY = "MASTER_KEY"


class TicketStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class KeyRotationTicket(BaseModel):
    id: str
    scope: RotationScope
    status: TicketStatus
    old_key_id: Optional[str] = None
    new_key_id: Optional[str] = None
    started_at: datetime
    completed_at: Optional[datetime] = None
    checkpoint: Optional[str] = None
    processed_count: int = 0
    total: int = 0
    error: Optional[str] = None
    resumed_from_id: Optional[str] = None
    initiated_by: str = "system"

    model_config = {"from_attributes": True}

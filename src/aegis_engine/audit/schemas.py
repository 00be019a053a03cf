"""Audit enums and the plain, serializable result structures."""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class AuditCategory(str, Enum):
    AUTH = "AUTH"
    AUTHORIZATION = "AUTHORIZATION"
    DATA_ACCESS = "DATA_ACCESS"
    DATA_MODIFICATION = "DATA_MODIFICATION"
    ADMIN = "ADMIN"
    CONFIGURATION = "CONFIGURATION"
    SECURITY = "SECURITY"
    COMPLIANCE = "COMPLIANCE"
    FINANCIAL = "FINANCIAL"


class AuditSeverity(str, Enum):
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    def at_or_above(self) -> list["AuditSeverity"]:
        return [s for s in AuditSeverity if s.rank >= self.rank]


_SEVERITY_RANK = {
    AuditSeverity.INFO: 0,
    AuditSeverity.WARNING: 1,
    AuditSeverity.ERROR: 2,
    AuditSeverity.CRITICAL: 3,
}

# Threat-level vocabulary used by callers, mapped onto audit severities.
_THREAT_LEVELS = {
    "LOW": AuditSeverity.INFO,
    "MEDIUM": AuditSeverity.WARNING,
    "HIGH": AuditSeverity.ERROR,
    "CRITICAL": AuditSeverity.CRITICAL,
}

_CATEGORY_ALIASES = {
    "AUTHENTICATION": AuditCategory.AUTH,
    "CONFIG": AuditCategory.CONFIGURATION,
}


def map_severity(value: "AuditSeverity | str") -> AuditSeverity:
    """Accept an AuditSeverity, its name, or a LOW/MEDIUM/HIGH/CRITICAL level.

    Anything unrecognised is INFO.
    """
    if isinstance(value, AuditSeverity):
        return value
    name = str(value).upper()
    if name in _THREAT_LEVELS:
        return _THREAT_LEVELS[name]
    try:
        return AuditSeverity(name)
    except ValueError:
        return AuditSeverity.INFO


def map_category(value: "AuditCategory | str") -> AuditCategory:
    """Accept an AuditCategory or its (case-insensitive) name. Unknown names raise ValueError."""
    if isinstance(value, AuditCategory):
        return value
    name = str(value).upper()
    if name in _CATEGORY_ALIASES:
        return _CATEGORY_ALIASES[name]
    return AuditCategory(name)


class AuditRecordResponse(BaseModel):
    id: str
    partition: str
    sequence: int
    timestamp: datetime
    category: str
    severity: str
    action: str
    actor: str
    target: str
    details: Optional[dict[str, Any]] = None
    corrects_id: Optional[str] = None
    prev_hash: str
    self_hash: str

    model_config = {"from_attributes": True}


class ChainVerification(BaseModel):
    partition: str
    valid: bool
    records_checked: int
    broken_at: Optional[int] = None
    broken_id: Optional[str] = None
    # Positions from the first break onward; none of them can be trusted.
    unverified: list[int] = []


class ReportRange(BaseModel):
    start: datetime
    end: datetime


class ComplianceCheck(BaseModel):
    name: str
    passed: bool
    details: str = ""


class ComplianceFinding(BaseModel):
    severity: AuditSeverity
    partition: str
    message: str
    broken_at: Optional[int] = None


class ComplianceReport(BaseModel):
    id: str
    standard: Optional[str] = None
    range: ReportRange
    total_records: int
    totals_by_category: dict[str, int] = {}
    totals_by_severity: dict[str, int] = {}
    chain_integrity: list[ChainVerification] = []
    checks: list[ComplianceCheck] = []
    findings: list[ComplianceFinding] = []
    generated_at: datetime
    generated_by: str = "system"
    signature: str = Field(default="", description="HMAC-SHA256 over the report without this field")

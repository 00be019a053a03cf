"""Audit service: append, verify, query and report on the hash-chained log."""

import asyncio
import csv
import hashlib
import hmac as hmac_mod
import io
import json
import logging
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from aegis_engine.common.config import AegisSettings
from aegis_engine.common.exceptions import AuditAppendError, ChainIntegrityError
from aegis_engine.common.models import generate_uuid, utcnow
from aegis_engine.audit.models import AuditRecordModel
from aegis_engine.audit.schemas import (
    AuditCategory,
    AuditRecordResponse,
    AuditSeverity,
    ChainVerification,
    ComplianceCheck,
    ComplianceFinding,
    ComplianceReport,
    ReportRange,
    map_category,
    map_severity,
)
from aegis_engine.privacy.sanitizer import contains_pii, sanitize_for_logging

logger = logging.getLogger(__name__)

GENESIS_HASH = "0" * 64

HIGH_RISK_ACTIONS: frozenset[str] = frozenset({
    "password_reset",
    "role_changed",
    "permission_granted",
    "api_key_created",
    "data_exported",
    "configuration_changed",
    "security_incident",
    "compliance_violation",
})

# Categories in scope per compliance standard; None means every category.
STANDARD_CATEGORIES: dict[str, frozenset[AuditCategory] | None] = {
    "SOC2": None,
    "ISO27001": None,
    "GDPR": frozenset({AuditCategory.DATA_ACCESS, AuditCategory.DATA_MODIFICATION}),
    "CCPA": frozenset({AuditCategory.DATA_ACCESS, AuditCategory.DATA_MODIFICATION}),
    "PCI": frozenset({
        AuditCategory.FINANCIAL, AuditCategory.DATA_ACCESS, AuditCategory.SECURITY,
    }),
    "HIPAA": frozenset({
        AuditCategory.DATA_ACCESS, AuditCategory.DATA_MODIFICATION, AuditCategory.SECURITY,
    }),
}

EXPORT_COLUMNS = tuple(AuditRecordResponse.model_fields)

AUTHENTICATION_EVENTS = frozenset({"login_success", "login_failed", "logout", "password_reset"})
DATA_OPERATIONS = frozenset({"create", "update", "delete"})
LARGE_READ_THRESHOLD = 100
LARGE_TRANSACTION_THRESHOLD = 10_000


class _PositionTaken(Exception):
    """Another writer committed the (partition, sequence) slot first."""


def calculate_diff(before: dict[str, Any] | None, after: dict[str, Any] | None) -> dict[str, Any]:
    """Field-level {key: {"before": ..., "after": ...}} for changed, added and removed keys."""
    if not before or not after:
        return {}
    diff: dict[str, Any] = {}
    for key in after:
        if before.get(key) != after[key] or key not in before:
            diff[key] = {"before": before.get(key), "after": after[key]}
    for key in before:
        if key not in after:
            diff[key] = {"before": before[key], "after": None}
    return diff


class AuditService:
    """Append-only, hash-chained, partitioned event log.

    Appends sharing a session are serialized by a per-partition lock held in
    the session.  Separate sessions are serialized by the database: the head
    is read FOR UPDATE (SQLite transactions start IMMEDIATE), and the unique
    (partition, sequence) constraint rejects a second record for the same
    position.  A rejected record was never stored, so the append re-reads the
    head and links onto the winner; the chain can never fork.
    """

    def __init__(self, settings: AegisSettings):
        self.settings = settings

    # ── Write ──

    async def append(
        self,
        session: AsyncSession,
        category: AuditCategory | str,
        severity: AuditSeverity | str,
        actor: str = "system",
        target: str = "",
        details: dict[str, Any] | None = None,
        action: str = "",
        partition: str | None = None,
        corrects_id: str | None = None,
    ) -> AuditRecordModel:
        """Append a record to the partition's chain."""
        category = map_category(category)
        severity = map_severity(severity)
        partition = partition or self.settings.default_partition
        # Round-trip through JSON so the hashed form equals the stored form
        clean_details = json.loads(
            json.dumps(sanitize_for_logging(details or {}), default=str)
        )

        attempts = max(1, self.settings.audit_append_retries)
        conflict: _PositionTaken | None = None
        async with self._append_lock(session, partition):
            for attempt in range(1, attempts + 1):
                head = await self.get_chain_head(session, partition, for_update=True)
                record = AuditRecordModel(
                    id=generate_uuid(),
                    partition=partition,
                    sequence=head.sequence + 1 if head else 1,
                    timestamp=utcnow(),
                    category=category.value,
                    severity=severity.value,
                    action=action,
                    actor=actor,
                    target=target,
                    details=clean_details,
                    corrects_id=corrects_id,
                    prev_hash=head.self_hash if head else GENESIS_HASH,
                )
                record.self_hash = self.compute_self_hash(record.prev_hash, self._hash_fields(record))
                record.signature_version = self.settings.current_audit_hmac_version
                record.signature = self._sign(record.self_hash)
                try:
                    await self._persist_with_retry(session, record)
                    break
                except _PositionTaken as exc:
                    conflict = exc
                    logger.warning(
                        "Audit chain position %d in partition '%s' taken by another writer "
                        "(attempt %d/%d); re-reading the head",
                        record.sequence, partition, attempt, attempts,
                    )
            else:
                raise AuditAppendError(
                    f"Chain head of partition '{partition}' kept moving; "
                    f"gave up after {attempts} attempts"
                ) from conflict

        if action in HIGH_RISK_ACTIONS:
            logger.warning(
                "High-risk audit action '%s' recorded (partition=%s, sequence=%d)",
                action, partition, record.sequence,
            )
        return record

    async def append_change(
        self,
        session: AsyncSession,
        actor: str,
        target: str,
        before: dict[str, Any] | None,
        after: dict[str, Any] | None,
        action: str = "data.modified",
        severity: AuditSeverity | str = AuditSeverity.INFO,
        partition: str | None = None,
    ) -> AuditRecordModel:
        """Record a data modification with sanitized before/after and their diff."""
        clean_before = sanitize_for_logging(before or {})
        clean_after = sanitize_for_logging(after or {})
        return await self.append(
            session,
            AuditCategory.DATA_MODIFICATION,
            severity,
            actor=actor,
            target=target,
            details={
                "before": clean_before,
                "after": clean_after,
                "diff": calculate_diff(clean_before, clean_after),
            },
            action=action,
            partition=partition,
        )

    async def append_correction(
        self,
        session: AsyncSession,
        original_id: str,
        actor: str,
        reason: str,
        correction: dict[str, Any] | None = None,
    ) -> AuditRecordModel:
        """Append a compensating record that references an earlier one."""
        original = await session.get(AuditRecordModel, original_id)
        if original is None:
            raise AuditAppendError(f"Audit record '{original_id}' not found")
        return await self.append(
            session,
            original.category,
            AuditSeverity.INFO,
            actor=actor,
            target=original.target,
            details={"reason": reason, "correction": correction or {}},
            action="audit.correction",
            partition=original.partition,
            corrects_id=original.id,
        )

    # ── Typed events ──
    #
    # Severities below use the LOW/MEDIUM/HIGH threat vocabulary; map_severity
    # turns them into INFO/WARNING/ERROR.

    async def audit_authentication(
        self,
        session: AsyncSession,
        event_type: str,
        user_id: str | None = None,
        ip: str = "",
        user_agent: str = "",
        details: dict[str, Any] | None = None,
    ) -> AuditRecordModel:
        """login_success, login_failed, logout or password_reset. Failed logins are MEDIUM."""
        if event_type not in AUTHENTICATION_EVENTS:
            raise ValueError(f"Unknown authentication event: {event_type!r}")
        return await self.append(
            session,
            AuditCategory.AUTH,
            "MEDIUM" if event_type == "login_failed" else "LOW",
            actor=user_id or "anonymous",
            target=f"authentication:{user_id}" if user_id else "authentication",
            details={**(details or {}), "ip": ip, "user_agent": user_agent},
            action=event_type,
        )

    async def audit_authorization(
        self,
        session: AsyncSession,
        granted: bool,
        user_id: str,
        resource: str,
        permissions: Iterable[str] = (),
        ip: str = "",
        user_agent: str = "",
    ) -> AuditRecordModel:
        return await self.append(
            session,
            AuditCategory.AUTHORIZATION,
            "LOW" if granted else "MEDIUM",
            actor=user_id,
            target=resource,
            details={
                "decision": "access_granted" if granted else "access_denied",
                "permissions": list(permissions),
                "ip": ip,
                "user_agent": user_agent,
            },
            action="permission_granted" if granted else "permission_denied",
        )

    async def audit_data_access(
        self,
        session: AsyncSession,
        user_id: str,
        resource: str,
        resource_id: str,
        record_count: int,
        fields: Iterable[str] | None = None,
        ip: str = "",
        user_agent: str = "",
    ) -> AuditRecordModel:
        """A read of ``record_count`` rows; bulk reads are MEDIUM."""
        return await self.append(
            session,
            AuditCategory.DATA_ACCESS,
            "MEDIUM" if record_count > LARGE_READ_THRESHOLD else "LOW",
            actor=user_id,
            target=f"{resource}:{resource_id}",
            details={
                "record_count": record_count,
                "fields": list(fields or []),
                "ip": ip,
                "user_agent": user_agent,
            },
            action="data_accessed",
        )

    async def audit_data_modification(
        self,
        session: AsyncSession,
        user_id: str,
        resource: str,
        resource_id: str,
        operation: str,
        before: dict[str, Any] | None,
        after: dict[str, Any] | None,
    ) -> AuditRecordModel:
        if operation not in DATA_OPERATIONS:
            raise ValueError(f"Unknown data operation: {operation!r}")
        return await self.append_change(
            session,
            actor=user_id,
            target=f"{resource}:{resource_id}",
            before=before,
            after=after,
            action=f"data_{operation}d",
            severity="HIGH" if operation == "delete" else "MEDIUM",
        )

    async def audit_configuration_change(
        self,
        session: AsyncSession,
        user_id: str,
        setting: str,
        old_value: Any,
        new_value: Any,
        ip: str = "",
    ) -> AuditRecordModel:
        """Always HIGH. Values of secret-looking settings are redacted."""
        return await self.append(
            session,
            AuditCategory.CONFIGURATION,
            "HIGH",
            actor=user_id,
            target=f"system_configuration:{setting}",
            details={
                "before": {setting: old_value},
                "after": {setting: new_value},
                "ip": ip,
            },
            action="configuration_changed",
        )

    async def audit_security_event(
        self,
        session: AsyncSession,
        event_type: str,
        severity: AuditSeverity | str,
        source: str,
        target: str,
        details: dict[str, Any] | None = None,
        blocked: bool = False,
    ) -> AuditRecordModel:
        """Recorded in the security partition, with the caller's severity."""
        return await self.append(
            session,
            AuditCategory.SECURITY,
            severity,
            actor=source,
            target=f"security:{target}",
            details={
                **(details or {}),
                "blocked": blocked,
                "outcome": "blocked" if blocked else "detected",
            },
            action=event_type,
            partition=self.settings.security_partition,
        )

    async def audit_financial_transaction(
        self,
        session: AsyncSession,
        user_id: str,
        transaction_type: str,
        amount: float,
        currency: str,
        transaction_id: str = "",
        account_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> AuditRecordModel:
        """Transactions above 10,000 (in any currency) are HIGH, the rest MEDIUM."""
        return await self.append(
            session,
            AuditCategory.FINANCIAL,
            "HIGH" if amount > LARGE_TRANSACTION_THRESHOLD else "MEDIUM",
            actor=user_id,
            target=f"transaction:{transaction_id}",
            details={
                **(details or {}),
                "amount": amount,
                "currency": currency,
                "account_id": account_id,
            },
            action=f"transaction_{transaction_type}",
        )

    def _append_lock(self, session: AsyncSession, partition: str) -> asyncio.Lock:
        locks: dict[str, asyncio.Lock] = session.info.setdefault("audit_append_locks", {})
        if partition not in locks:
            locks[partition] = asyncio.Lock()
        return locks[partition]

    async def _persist_with_retry(self, session: AsyncSession, record: AuditRecordModel) -> None:
        """Retry transient failures with the same prev_hash.

        A unique-constraint conflict is not transient: it raises _PositionTaken
        so the caller re-reads the head.
        """
        attempts = max(1, self.settings.audit_append_retries)
        last_exc: Exception | None = None
        for attempt in range(1, attempts + 1):
            try:
                await self._persist(session, record)
                return
            except IntegrityError as exc:
                raise _PositionTaken(record.partition, record.sequence) from exc
            except SQLAlchemyError as exc:
                last_exc = exc
                logger.warning(
                    "Audit append attempt %d/%d failed (partition=%s)",
                    attempt, attempts, record.partition,
                )
        raise AuditAppendError() from last_exc

    async def _persist(self, session: AsyncSession, record: AuditRecordModel) -> None:
        async with session.begin_nested():
            session.add(record)
            await session.flush()

    # ── Read ──

    async def get_chain_head(
        self, session: AsyncSession, partition: str, for_update: bool = False,
    ) -> AuditRecordModel | None:
        """Return the most recent record in a partition."""
        query = (
            select(AuditRecordModel)
            .where(AuditRecordModel.partition == partition)
            .order_by(AuditRecordModel.sequence.desc())
            .limit(1)
        )
        if for_update:
            query = query.with_for_update()
        result = await session.execute(query)
        return result.scalar_one_or_none()

    async def list_partitions(self, session: AsyncSession) -> list[str]:
        result = await session.execute(
            select(AuditRecordModel.partition).distinct().order_by(AuditRecordModel.partition)
        )
        return list(result.scalars().all())

    async def query_records(
        self,
        session: AsyncSession,
        partition: str | None = None,
        category: AuditCategory | str | None = None,
        min_severity: AuditSeverity | str | None = None,
        actor: str | None = None,
        target: str | None = None,
        action: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int | None = 50,
        offset: int = 0,
    ) -> list[AuditRecordModel]:
        """Filtered record list, newest first. ``limit=None`` returns every match."""
        query = select(AuditRecordModel)
        if partition:
            query = query.where(AuditRecordModel.partition == partition)
        if category:
            query = query.where(AuditRecordModel.category == map_category(category).value)
        if min_severity:
            allowed = [s.value for s in map_severity(min_severity).at_or_above()]
            query = query.where(AuditRecordModel.severity.in_(allowed))
        if actor:
            query = query.where(AuditRecordModel.actor == actor)
        if target:
            query = query.where(AuditRecordModel.target == target)
        if action:
            query = query.where(AuditRecordModel.action == action)
        if since:
            query = query.where(AuditRecordModel.timestamp >= since)
        if until:
            query = query.where(AuditRecordModel.timestamp <= until)
        query = (
            query.order_by(AuditRecordModel.timestamp.desc(), AuditRecordModel.sequence.desc())
            .offset(offset)
            .limit(limit)
        )
        result = await session.execute(query)
        return list(result.scalars().all())

    async def get_resource_audit_trail(
        self, session: AsyncSession, resource: str, resource_id: str, limit: int = 100,
    ) -> list[AuditRecordModel]:
        """Records targeting ``resource:resource_id`` in any partition, newest first."""
        return await self.query_records(session, target=f"{resource}:{resource_id}", limit=limit)

    async def get_user_activity_log(
        self, session: AsyncSession, user_id: str, days: int = 30,
    ) -> list[AuditRecordModel]:
        """Everything ``user_id`` did in the last ``days`` days, newest first."""
        since = utcnow() - timedelta(days=days)
        return await self.query_records(session, actor=user_id, since=since, limit=None)

    async def export_records(
        self,
        session: AsyncSession,
        since: datetime,
        until: datetime,
        partition: str | None = None,
        fmt: str = "json",
    ) -> str:
        """Export records in a time range, oldest first, as JSON or CSV."""
        query = select(AuditRecordModel).where(
            AuditRecordModel.timestamp >= since,
            AuditRecordModel.timestamp <= until,
        )
        if partition:
            query = query.where(AuditRecordModel.partition == partition)
        query = query.order_by(AuditRecordModel.partition, AuditRecordModel.sequence)
        records = list((await session.execute(query)).scalars().all())
        rows = [self._export_row(r) for r in records]

        if fmt == "csv":
            if not rows:
                return ""
            buf = io.StringIO()
            writer = csv.DictWriter(buf, fieldnames=EXPORT_COLUMNS)
            writer.writeheader()
            for row in rows:
                writer.writerow({**row, "details": json.dumps(row["details"], sort_keys=True)})
            return buf.getvalue()
        if fmt != "json":
            raise ValueError(f"Unsupported export format: {fmt!r}")
        return json.dumps(rows, indent=2, sort_keys=True)

    # ── Verify ──

    async def verify_chain(
        self,
        session: AsyncSession,
        partition: str,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> ChainVerification:
        """Walk the chain in sequence order, recomputing every hash.

        With ``since``, the last record before the range anchors the walk.
        Reports the first break; every record from there on is unverified.
        """
        prev_hash, expected_sequence = GENESIS_HASH, 1
        if since is not None:
            anchor = (await session.execute(
                select(AuditRecordModel)
                .where(
                    AuditRecordModel.partition == partition,
                    AuditRecordModel.timestamp < since,
                )
                .order_by(AuditRecordModel.sequence.desc())
                .limit(1)
            )).scalar_one_or_none()
            if anchor is not None:
                prev_hash, expected_sequence = anchor.self_hash, anchor.sequence + 1

        query = select(AuditRecordModel).where(AuditRecordModel.partition == partition)
        if since is not None:
            query = query.where(AuditRecordModel.timestamp >= since)
        if until is not None:
            query = query.where(AuditRecordModel.timestamp <= until)
        records = list(
            (await session.execute(query.order_by(AuditRecordModel.sequence.asc()))).scalars().all()
        )

        for index, record in enumerate(records):
            if not self._record_intact(record, prev_hash, expected_sequence):
                logger.warning(
                    "Audit chain broken (partition=%s, position=%d)", partition, record.sequence,
                )
                return ChainVerification(
                    partition=partition,
                    valid=False,
                    records_checked=index,
                    broken_at=record.sequence,
                    broken_id=record.id,
                    unverified=[r.sequence for r in records[index:]],
                )
            prev_hash = record.self_hash
            expected_sequence = record.sequence + 1

        return ChainVerification(partition=partition, valid=True, records_checked=len(records))

    async def ensure_chain_intact(self, session: AsyncSession, partition: str) -> ChainVerification:
        """Like verify_chain, but raise ChainIntegrityError on a break."""
        result = await self.verify_chain(session, partition)
        if not result.valid:
            raise ChainIntegrityError(
                f"Audit chain for partition '{partition}' is broken at position {result.broken_at}",
                broken_at=result.broken_at,
            )
        return result

    def _record_intact(self, record: AuditRecordModel, prev_hash: str, expected_sequence: int) -> bool:
        if record.sequence != expected_sequence or record.prev_hash != prev_hash:
            return False
        expected_hash = self.compute_self_hash(record.prev_hash, self._hash_fields(record))
        if not hmac_mod.compare_digest(expected_hash, record.self_hash):
            return False
        return self._verify_signature(record.self_hash, record.signature)

    # ── Compliance ──

    async def generate_compliance_report(
        self,
        session: AsyncSession,
        since: datetime,
        until: datetime,
        standard: str | None = None,
        partitions: Iterable[str] | None = None,
        categories: Iterable[AuditCategory | str] | None = None,
        min_severity: AuditSeverity | str | None = None,
        generated_by: str = "system",
    ) -> ComplianceReport:
        """Aggregate a time range and verify every partition's chain within it.

        A broken chain becomes a CRITICAL finding and is itself audited in the
        security partition.
        """
        if standard is not None and standard.upper() not in STANDARD_CATEGORIES:
            raise ValueError(f"Unknown compliance standard: {standard!r}")
        standard = standard.upper() if standard else None

        in_scope: set[str] | None = None
        if categories:
            in_scope = {map_category(c).value for c in categories}
        if standard and STANDARD_CATEGORIES[standard] is not None:
            std = {c.value for c in STANDARD_CATEGORIES[standard]}
            in_scope = std if in_scope is None else in_scope & std

        query = select(AuditRecordModel).where(
            AuditRecordModel.timestamp >= since,
            AuditRecordModel.timestamp <= until,
        )
        partition_list = list(partitions) if partitions is not None else None
        if partition_list is not None:
            query = query.where(AuditRecordModel.partition.in_(partition_list))
        if in_scope is not None:
            query = query.where(AuditRecordModel.category.in_(sorted(in_scope)))
        if min_severity:
            allowed = [s.value for s in map_severity(min_severity).at_or_above()]
            query = query.where(AuditRecordModel.severity.in_(allowed))
        records = list((await session.execute(query)).scalars().all())

        if partition_list is None:
            partition_list = sorted({r.partition for r in records})

        integrity = [
            await self.verify_chain(session, p, since=since, until=until)
            for p in partition_list
        ]
        findings = [
            ComplianceFinding(
                severity=AuditSeverity.CRITICAL,
                partition=v.partition,
                message=(
                    f"Audit chain broken at position {v.broken_at}; "
                    f"{len(v.unverified)} record(s) unverified"
                ),
                broken_at=v.broken_at,
            )
            for v in integrity if not v.valid
        ]

        report = ComplianceReport(
            id=f"report_{standard or 'GENERAL'}_{generate_uuid()}",
            standard=standard,
            range=ReportRange(start=since, end=until),
            total_records=len(records),
            totals_by_category=dict(sorted(Counter(r.category for r in records).items())),
            totals_by_severity=dict(sorted(Counter(r.severity for r in records).items())),
            chain_integrity=integrity,
            checks=self._compliance_checks(standard, records, integrity),
            findings=findings,
            generated_at=datetime.now(timezone.utc),
            generated_by=generated_by,
        )
        report.signature = self.sign_report(report)

        for finding in findings:
            await self.append(
                session,
                AuditCategory.SECURITY,
                AuditSeverity.CRITICAL,
                actor=generated_by,
                target=f"audit:{finding.partition}",
                details={"broken_at": finding.broken_at, "report_id": report.id},
                action="audit.chain_broken",
                partition=self.settings.security_partition,
            )
        return report

    @staticmethod
    def _compliance_checks(
        standard: str | None,
        records: list[AuditRecordModel],
        integrity: list[ChainVerification],
    ) -> list[ComplianceCheck]:
        critical = sum(1 for r in records if r.severity == AuditSeverity.CRITICAL.value)
        broken = [v.partition for v in integrity if not v.valid]
        checks = [
            ComplianceCheck(
                name="Audit Logging",
                passed=len(records) > 0,
                details=f"{len(records)} audit records collected",
            ),
            ComplianceCheck(
                name="Audit Chain Integrity",
                passed=not broken,
                details=(
                    f"Broken partitions: {', '.join(broken)}" if broken
                    else f"{len(integrity)} partition chain(s) verified"
                ),
            ),
        ]
        if standard in (None, "SOC2", "ISO27001"):
            checks.append(ComplianceCheck(
                name="Access Control",
                passed=critical == 0,
                details=f"{critical} critical event(s) in range",
            ))
        if standard in ("PCI", "GDPR", "CCPA", "HIPAA"):
            leaking = sum(
                1 for r in records
                if contains_pii(json.dumps(r.details or {}, sort_keys=True))
            )
            checks.append(ComplianceCheck(
                name="No Raw PII In Audit Details",
                passed=leaking == 0,
                details=f"{leaking} record(s) with PII-shaped content",
            ))
        return checks

    def sign_report(self, report: ComplianceReport) -> str:
        payload = report.model_dump_json(exclude={"signature"})
        return self._sign(hashlib.sha256(payload.encode()).hexdigest())

    def verify_report_signature(self, report: ComplianceReport) -> bool:
        payload = report.model_dump_json(exclude={"signature"})
        return self._verify_signature(hashlib.sha256(payload.encode()).hexdigest(), report.signature)

    # ── Internal helpers ──

    @staticmethod
    def _canonical_timestamp(ts: datetime) -> str:
        # SQLite returns naive UTC; normalise both forms to the same text
        if ts.tzinfo is not None:
            ts = ts.astimezone(timezone.utc).replace(tzinfo=None)
        return ts.isoformat(timespec="microseconds")

    @classmethod
    def _hash_fields(cls, record: AuditRecordModel) -> dict[str, Any]:
        return {
            "id": record.id,
            "partition": record.partition,
            "sequence": record.sequence,
            "timestamp": cls._canonical_timestamp(record.timestamp),
            "category": record.category,
            "severity": record.severity,
            "action": record.action,
            "actor": record.actor,
            "target": record.target,
            "details": record.details or {},
            "corrects_id": record.corrects_id,
        }

    @staticmethod
    def compute_self_hash(prev_hash: str, fields: dict[str, Any]) -> str:
        """SHA-256 of prev_hash followed by the canonical JSON of the other fields."""
        canonical = json.dumps(fields, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256((prev_hash + canonical).encode()).hexdigest()

    def _sign(self, digest: str) -> str:
        """HMAC-SHA256 of a digest with the current audit HMAC key."""
        return hmac_mod.new(
            self.settings.current_audit_hmac_key.encode(),
            digest.encode(),
            hashlib.sha256,
        ).hexdigest()

    def _verify_signature(self, digest: str, signature: str) -> bool:
        """Verify against all keys in the keyring (supports rotated keys)."""
        for _version, key in self.settings.audit_hmac_keyring.items():
            expected = hmac_mod.new(key.encode(), digest.encode(), hashlib.sha256).hexdigest()
            if hmac_mod.compare_digest(expected, signature):
                return True
        return False

    def _export_row(self, record: AuditRecordModel) -> dict[str, Any]:
        row = AuditRecordResponse.model_validate(record).model_dump()
        row["timestamp"] = self._canonical_timestamp(record.timestamp)
        row["details"] = row["details"] or {}
        return row

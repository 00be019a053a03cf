"""Key rotation coordinator: checkpointed, resumable rotation tickets.

MASTER_KEY rotation:

    stage      a new master secret is added to the keyring (not current) and
               escrowed on the ticket, sealed under the old key, before any
               row moves
    re-wrap    every persisted DEK, private key and API key secret still
               under the old key is re-encrypted under the new one, one
               committed batch at a time; the ticket records the checkpoint.
               Tokenization vault entries are re-sealed after the last batch
    promote    only after the last batch does the current-key pointer flip
    audit      a SECURITY record describes the rotation

Until the ticket is COMPLETED both keys stay in the keyring, so rows from
either generation decrypt.  A process that did not stage the new key
(a restart, or another worker) gets it back from the escrow through
``restore_staged_keys()``; ``resume()`` does this itself.

The old key is only dropped by an explicit ``retire_old_key()`` on a
COMPLETED ticket, which also clears the escrow.
"""

import logging
from datetime import timedelta, timezone

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from aegis_engine.audit.schemas import AuditCategory, AuditSeverity
from aegis_engine.audit.service import AuditService
from aegis_engine.common.config import AegisSettings
from aegis_engine.common.database import DatabaseManager
from aegis_engine.common.exceptions import AegisError, RotationError, TicketNotFoundError
from aegis_engine.common.models import utcnow
from aegis_engine.crypto.asymmetric import AsymmetricEngine
from aegis_engine.crypto.envelope import EncryptedEnvelope
from aegis_engine.crypto.symmetric import SymmetricEngine
from aegis_engine.keys.manager import KeyManager
from aegis_engine.keys.models import (
    KIND_DATA_KEY,
    KIND_PRIVATE_KEY,
    STATUS_ACTIVE,
    STATUS_RETIRED,
    STATUS_REVOKED,
    STATUS_ROTATING,
    ApiKeyModel,
    WrappedKeyModel,
)
from aegis_engine.keys.service import ApiKeyService, DataKeyService
from aegis_engine.rotation.models import KeyRotationTicketModel
from aegis_engine.rotation.schemas import RotationScope, TicketStatus
from aegis_engine.vault.tokenizer import TokenizationVault

logger = logging.getLogger(__name__)

_OPEN_STATUSES = (TicketStatus.PENDING.value, TicketStatus.IN_PROGRESS.value)


class RotationCoordinator:
    """Runs rotation tickets in batches, each batch in its own transaction."""

    def __init__(
        self,
        settings: AegisSettings,
        db: DatabaseManager,
        key_manager: KeyManager,
        symmetric: SymmetricEngine,
        asymmetric: AsymmetricEngine,
        audit: AuditService,
        data_keys: DataKeyService | None = None,
        api_keys: ApiKeyService | None = None,
        vault: TokenizationVault | None = None,
    ):
        self.settings = settings
        self.db = db
        self.key_manager = key_manager
        self.symmetric = symmetric
        self.asymmetric = asymmetric
        self.audit = audit
        self.data_keys = data_keys or DataKeyService(key_manager)
        self.api_keys = api_keys or ApiKeyService(symmetric)
        self.vault = vault
        self._running: set[str] = set()
        self._cancelled: set[str] = set()

    @property
    def batch_size(self) -> int:
        return max(1, self.settings.rotation_batch_size)

    # ── Public API ──

    async def rotate(
        self,
        scope: RotationScope | str,
        initiated_by: str = "system",
        new_key_id: str | None = None,
    ) -> KeyRotationTicketModel:
        """Open a ticket for ``scope`` and run it to COMPLETED or FAILED.

        For MASTER_KEY, ``new_key_id`` selects a secret already in the
        keyring (e.g. configured ahead of time); otherwise one is generated.
        """
        scope = RotationScope(scope)
        async with self.db.get_session() as session:
            await self._ensure_no_open_ticket(session, scope)
            ticket = KeyRotationTicketModel(
                scope=scope.value,
                status=TicketStatus.PENDING.value,
                initiated_by=initiated_by,
            )
            await self._prepare(session, ticket, new_key_id)
            session.add(ticket)
            await session.flush()
            ticket_id = ticket.id

        logger.info("Rotation %s opened (scope=%s, total=%d)", ticket_id, scope.value, ticket.total)
        return await self._run(ticket_id)

    async def resume(
        self, ticket_id: str, initiated_by: str | None = None,
    ) -> KeyRotationTicketModel:
        """Continue a FAILED (or crashed IN_PROGRESS) ticket from its checkpoint.

        A new ticket is opened that inherits key ids, cutoff, progress and
        total; the interrupted one is left FAILED for the record.
        """
        async with self.db.get_session() as session:
            previous = await self._load(session, ticket_id)
            if previous.status == TicketStatus.IN_PROGRESS.value and previous.id not in self._running:
                previous.status = TicketStatus.FAILED.value
                previous.error = "Interrupted"
            if previous.status != TicketStatus.FAILED.value:
                raise RotationError(f"Ticket {ticket_id} is {previous.status}; only FAILED tickets resume")
            successor = (await session.execute(
                select(KeyRotationTicketModel.id).where(
                    KeyRotationTicketModel.resumed_from_id == previous.id
                )
            )).scalar_one_or_none()
            if successor is not None:
                raise RotationError(f"Ticket {ticket_id} was already resumed as {successor}")

            scope = RotationScope(previous.scope)
            await self._ensure_no_open_ticket(session, scope)
            if scope is RotationScope.MASTER_KEY:
                self._restore_escrowed(previous)
                for key_id in (previous.old_key_id, previous.new_key_id):
                    if not self.key_manager.has_key(key_id):
                        raise RotationError(
                            f"Master key '{key_id}' is no longer in the keyring; "
                            "restore it before resuming"
                        )

            ticket = KeyRotationTicketModel(
                scope=previous.scope,
                status=TicketStatus.PENDING.value,
                old_key_id=previous.old_key_id,
                new_key_id=previous.new_key_id,
                cutoff_at=previous.cutoff_at,
                checkpoint=previous.checkpoint,
                processed_count=previous.processed_count,
                total=previous.total,
                escrowed_key=previous.escrowed_key,
                resumed_from_id=previous.id,
                initiated_by=initiated_by or previous.initiated_by,
            )
            session.add(ticket)
            await session.flush()
            new_ticket_id = ticket.id

        logger.info(
            "Rotation %s resumes %s at checkpoint %s (%d/%d done)",
            new_ticket_id, ticket_id, ticket.checkpoint, ticket.processed_count, ticket.total,
        )
        return await self._run(new_ticket_id)

    async def restore_staged_keys(self) -> list[str]:
        """Put escrowed master keys back into the keyring; returns the ids restored.

        Call at startup: rows a rotation already re-wrapped under its new key
        are only readable once that key is loaded.  Escrows whose old key is
        not in the keyring are skipped.
        """
        async with self.db.get_session() as session:
            result = await session.execute(
                select(KeyRotationTicketModel)
                .where(
                    KeyRotationTicketModel.scope == RotationScope.MASTER_KEY.value,
                    KeyRotationTicketModel.escrowed_key.is_not(None),
                )
                .order_by(KeyRotationTicketModel.started_at)
            )
            tickets = list(result.scalars().all())
        return [t.new_key_id for t in tickets if self._restore_escrowed(t)]

    def cancel(self, ticket_id: str | None = None) -> bool:
        """Request cancellation; honoured before the next batch starts.

        With no id, every ticket running in this coordinator is cancelled.
        Returns False if nothing matching is running.
        """
        targets = set(self._running) if ticket_id is None else {ticket_id} & self._running
        self._cancelled |= targets
        return bool(targets)

    async def get_ticket(self, ticket_id: str) -> KeyRotationTicketModel:
        async with self.db.get_session() as session:
            return await self._load(session, ticket_id)

    async def list_tickets(
        self, scope: RotationScope | str | None = None, limit: int = 50,
    ) -> list[KeyRotationTicketModel]:
        query = select(KeyRotationTicketModel)
        if scope is not None:
            query = query.where(KeyRotationTicketModel.scope == RotationScope(scope).value)
        query = query.order_by(KeyRotationTicketModel.started_at.desc()).limit(limit)
        async with self.db.get_session() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def rotation_due(self, scope: RotationScope | str = RotationScope.MASTER_KEY) -> bool:
        """True when the last COMPLETED rotation of ``scope`` is older than the configured period."""
        scope = RotationScope(scope)
        async with self.db.get_session() as session:
            last = (await session.execute(
                select(KeyRotationTicketModel.completed_at)
                .where(
                    KeyRotationTicketModel.scope == scope.value,
                    KeyRotationTicketModel.status == TicketStatus.COMPLETED.value,
                )
                .order_by(KeyRotationTicketModel.completed_at.desc())
                .limit(1)
            )).scalar_one_or_none()
        if last is None:
            return True
        if last.tzinfo is None:
            last = last.replace(tzinfo=timezone.utc)
        return utcnow() - last >= timedelta(days=self.settings.master_key_rotation_days)

    async def retire_old_key(self, ticket_id: str, actor: str = "system") -> str:
        """Drop the previous master key after a COMPLETED rotation. Returns its id."""
        async with self.db.get_session() as session:
            ticket = await self._load(session, ticket_id)
            if ticket.scope != RotationScope.MASTER_KEY.value:
                raise RotationError("Only MASTER_KEY rotations retire a key")
            if ticket.status != TicketStatus.COMPLETED.value:
                raise RotationError(f"Ticket {ticket_id} is {ticket.status}, not COMPLETED")
            old_key_id = ticket.old_key_id
            if old_key_id == self.key_manager.current_key_id:
                raise RotationError(f"Master key '{old_key_id}' is current again")
            remaining = await self._count_under_master(session, old_key_id)
            if self.vault is not None:
                remaining += self.vault.count_under(old_key_id)
            if remaining:
                raise RotationError(
                    f"{remaining} persisted key(s) or vault entries are still sealed under '{old_key_id}'"
                )
            self.key_manager.retire(old_key_id)
            # The escrows were sealed under the retired key and can no longer open
            await session.execute(
                update(KeyRotationTicketModel)
                .where(KeyRotationTicketModel.old_key_id == old_key_id)
                .values(escrowed_key=None)
            )
            await self.audit.append(
                session,
                AuditCategory.SECURITY,
                AuditSeverity.WARNING,
                actor=actor,
                target=f"master_key:{old_key_id}",
                details={"ticket_id": ticket.id, "retired_key_id": old_key_id},
                action="keys.master_retired",
                partition=self.settings.security_partition,
            )
        logger.info("Master key %s retired (ticket %s)", old_key_id, ticket_id)
        return old_key_id

    # ── Ticket lifecycle ──

    async def _prepare(
        self, session: AsyncSession, ticket: KeyRotationTicketModel, new_key_id: str | None,
    ) -> None:
        ticket.cutoff_at = utcnow()
        scope = RotationScope(ticket.scope)

        if scope is RotationScope.MASTER_KEY:
            old_key_id = self.key_manager.current_key_id
            if new_key_id is not None:
                if not self.key_manager.has_key(new_key_id):
                    raise RotationError(f"Master key '{new_key_id}' is not in the keyring")
                if new_key_id == old_key_id:
                    raise RotationError(f"Master key '{new_key_id}' is already current")
            else:
                new_key_id = self.key_manager.stage()
            ticket.old_key_id = old_key_id
            ticket.new_key_id = new_key_id
            # Committed with the ticket, before the first batch moves a row
            ticket.escrowed_key = self.key_manager.escrow(new_key_id, old_key_id).serialize()
            ticket.total = await self._count_under_master(session, old_key_id)
            if self.vault is not None:
                ticket.total += self.vault.count_under(old_key_id)

        elif scope is RotationScope.DATA_KEYS:
            active = await self.data_keys.active_data_key(session)
            ticket.old_key_id = active.id if active else None
            ticket.total = await self._count(
                session, WrappedKeyModel, *self._stale_data_key_filter(ticket)
            )

        else:
            ticket.total = (
                await self._count(session, ApiKeyModel, *self._expiring_api_key_filter(ticket))
                + await self._count(session, ApiKeyModel, *self._active_api_key_filter(ticket))
            )

    async def _run(self, ticket_id: str) -> KeyRotationTicketModel:
        self._running.add(ticket_id)
        try:
            async with self.db.get_session() as session:
                ticket = await self._load(session, ticket_id)
                ticket.status = TicketStatus.IN_PROGRESS.value
                scope = RotationScope(ticket.scope)

            if scope is RotationScope.MASTER_KEY:
                await self._rotate_master_key(ticket_id)
            elif scope is RotationScope.DATA_KEYS:
                await self._rotate_data_keys(ticket_id)
            else:
                await self._rotate_api_keys(ticket_id)

            return await self._complete(ticket_id)
        except Exception as exc:
            ticket = await self._fail(ticket_id, exc)
            if not isinstance(exc, (AegisError, SQLAlchemyError)):
                raise
            return ticket
        finally:
            self._running.discard(ticket_id)
            self._cancelled.discard(ticket_id)

    async def _complete(self, ticket_id: str) -> KeyRotationTicketModel:
        async with self.db.get_session() as session:
            ticket = await self._load(session, ticket_id)
            ticket.status = TicketStatus.COMPLETED.value
            ticket.completed_at = utcnow()
            ticket.checkpoint = None
            await self.audit.append(
                session,
                AuditCategory.SECURITY,
                AuditSeverity.INFO,
                actor=ticket.initiated_by,
                target=f"rotation:{ticket.scope}",
                details=self._ticket_details(ticket),
                action="keys.rotated",
                partition=self.settings.security_partition,
            )
        logger.info(
            "Rotation %s completed (scope=%s, processed=%d)",
            ticket_id, ticket.scope, ticket.processed_count,
        )
        return ticket

    async def _fail(self, ticket_id: str, exc: Exception) -> KeyRotationTicketModel:
        # Only our own messages are recorded; library errors are reduced to their type.
        error = exc.message if isinstance(exc, RotationError) else f"Rotation failed ({type(exc).__name__})"
        logger.warning("Rotation %s failed: %s", ticket_id, error)
        async with self.db.get_session() as session:
            ticket = await self._load(session, ticket_id)
            ticket.status = TicketStatus.FAILED.value
            ticket.error = error[:255]
            await self.audit.append(
                session,
                AuditCategory.SECURITY,
                AuditSeverity.ERROR,
                actor=ticket.initiated_by,
                target=f"rotation:{ticket.scope}",
                details={**self._ticket_details(ticket), "error": ticket.error},
                action="keys.rotation_failed",
                partition=self.settings.security_partition,
            )
        return ticket

    def _check_cancelled(self, ticket_id: str) -> None:
        if ticket_id in self._cancelled:
            raise RotationError("Rotation cancelled")

    async def _advance(self, session: AsyncSession, ticket_id: str, rows: list) -> None:
        ticket = await self._load(session, ticket_id)
        ticket.processed_count += len(rows)
        ticket.checkpoint = rows[-1].id
        logger.debug(
            "Rotation %s checkpoint %s (%d/%d)",
            ticket_id, ticket.checkpoint, ticket.processed_count, ticket.total,
        )

    # ── MASTER_KEY ──

    async def _rotate_master_key(self, ticket_id: str) -> None:
        async with self.db.get_session() as session:
            ticket = await self._load(session, ticket_id)
            old_key_id, new_key_id = ticket.old_key_id, ticket.new_key_id

        while True:
            self._check_cancelled(ticket_id)
            async with self.db.get_session() as session:
                rows = await self._next_master_batch(session, old_key_id)
                if not rows:
                    break
                for row in rows:
                    self._rewrap_row(row, old_key_id, new_key_id)
                await self._advance(session, ticket_id, rows)

        if self.vault is not None:
            self._check_cancelled(ticket_id)
            resealed = self.vault.rewrap(old_key_id, new_key_id)
            async with self.db.get_session() as session:
                ticket = await self._load(session, ticket_id)
                ticket.processed_count += resealed
            logger.info("Rotation %s re-sealed %d vault entries", ticket_id, resealed)

        # Every persisted key now reads under the new secret
        self.key_manager.promote(new_key_id)
        logger.info("Master key %s is now current (was %s)", new_key_id, old_key_id)

    async def _next_master_batch(self, session: AsyncSession, old_key_id: str) -> list:
        # Rows leave the old-key set as they are re-wrapped, so the query is its own cursor
        result = await session.execute(
            select(WrappedKeyModel)
            .where(WrappedKeyModel.master_key_id == old_key_id)
            .order_by(WrappedKeyModel.id)
            .limit(self.batch_size)
        )
        rows: list = list(result.scalars().all())
        if rows:
            return rows
        result = await session.execute(
            select(ApiKeyModel)
            .where(ApiKeyModel.master_key_id == old_key_id)
            .order_by(ApiKeyModel.id)
            .limit(self.batch_size)
        )
        return list(result.scalars().all())

    def _rewrap_row(self, row: WrappedKeyModel | ApiKeyModel, old_key_id: str, new_key_id: str) -> None:
        if isinstance(row, ApiKeyModel):
            secret = self.symmetric.decrypt(EncryptedEnvelope.deserialize(row.wrapped_secret))
            row.wrapped_secret = self.symmetric.encrypt(secret, key_id=new_key_id).serialize()
        elif row.kind == KIND_DATA_KEY:
            wrapped = EncryptedEnvelope.deserialize(row.wrapped)
            row.wrapped = self.key_manager.rewrap(wrapped, new_key_id).serialize()
        elif row.kind == KIND_PRIVATE_KEY:
            pem = self.asymmetric.rewrap_private_key(row.wrapped.encode("ascii"), old_key_id, new_key_id)
            row.wrapped = pem.decode("ascii")
        else:
            raise RotationError(f"Unknown wrapped key kind '{row.kind}'")
        row.master_key_id = new_key_id

    def _restore_escrowed(self, ticket: KeyRotationTicketModel) -> bool:
        if not ticket.escrowed_key or not self.key_manager.has_key(ticket.old_key_id):
            return False
        escrowed = EncryptedEnvelope.deserialize(ticket.escrowed_key)
        if not self.key_manager.restore(ticket.new_key_id, escrowed):
            return False
        logger.warning(
            "Master key %s restored from the escrow on rotation ticket %s; "
            "add it to AEGIS_MASTER_KEYS",
            ticket.new_key_id, ticket.id,
        )
        return True

    async def _count_under_master(self, session: AsyncSession, key_id: str) -> int:
        return (
            await self._count(session, WrappedKeyModel, WrappedKeyModel.master_key_id == key_id)
            + await self._count(session, ApiKeyModel, ApiKeyModel.master_key_id == key_id)
        )

    # ── DATA_KEYS ──

    async def _rotate_data_keys(self, ticket_id: str) -> None:
        """Create a fresh DEK, then retire every older active one.

        Retired DEKs stay loadable so existing ciphertexts still decrypt.
        """
        async with self.db.get_session() as session:
            ticket = await self._load(session, ticket_id)
            if ticket.new_key_id is None:
                row, data_key = await self.data_keys.create_data_key(
                    session, label=f"rotation:{ticket.id}"
                )
                data_key.wipe()
                ticket.new_key_id = row.id
            filters = self._stale_data_key_filter(ticket)

        while True:
            self._check_cancelled(ticket_id)
            async with self.db.get_session() as session:
                result = await session.execute(
                    select(WrappedKeyModel).where(*filters)
                    .order_by(WrappedKeyModel.id).limit(self.batch_size)
                )
                rows = list(result.scalars().all())
                if not rows:
                    break
                for row in rows:
                    row.status = STATUS_RETIRED
                await self._advance(session, ticket_id, rows)

    @staticmethod
    def _stale_data_key_filter(ticket: KeyRotationTicketModel) -> tuple:
        filters = (
            WrappedKeyModel.kind == KIND_DATA_KEY,
            WrappedKeyModel.status == STATUS_ACTIVE,
            WrappedKeyModel.created_at < ticket.cutoff_at,
        )
        if ticket.new_key_id:
            filters += (WrappedKeyModel.id != ticket.new_key_id,)
        return filters

    # ── API_KEYS ──

    async def _rotate_api_keys(self, ticket_id: str) -> None:
        """Revoke keys left ``rotating`` by the previous rotation, then give
        every active key a successor and mark it ``rotating``.

        A ``rotating`` key keeps verifying until the next API key rotation.
        """
        async with self.db.get_session() as session:
            ticket = await self._load(session, ticket_id)
            expiring = self._expiring_api_key_filter(ticket)
            active = self._active_api_key_filter(ticket)

        while True:
            self._check_cancelled(ticket_id)
            async with self.db.get_session() as session:
                rows = await self._api_key_batch(session, expiring)
                if not rows:
                    break
                for row in rows:
                    row.status = STATUS_REVOKED
                await self._advance(session, ticket_id, rows)

        while True:
            self._check_cancelled(ticket_id)
            async with self.db.get_session() as session:
                rows = await self._api_key_batch(session, active)
                if not rows:
                    break
                for row in rows:
                    await self.api_keys.issue(session, row.name, rotated_from_id=row.id)
                    row.status = STATUS_ROTATING
                await self._advance(session, ticket_id, rows)

    async def _api_key_batch(self, session: AsyncSession, filters: tuple) -> list[ApiKeyModel]:
        result = await session.execute(
            select(ApiKeyModel).where(*filters).order_by(ApiKeyModel.id).limit(self.batch_size)
        )
        return list(result.scalars().all())

    @staticmethod
    def _expiring_api_key_filter(ticket: KeyRotationTicketModel) -> tuple:
        # Keys this rotation marked rotating were updated after the cutoff
        return (
            ApiKeyModel.status == STATUS_ROTATING,
            ApiKeyModel.updated_at < ticket.cutoff_at,
        )

    @staticmethod
    def _active_api_key_filter(ticket: KeyRotationTicketModel) -> tuple:
        # Successors issued by this rotation were created after the cutoff
        return (
            ApiKeyModel.status == STATUS_ACTIVE,
            ApiKeyModel.created_at < ticket.cutoff_at,
        )

    # ── Internal helpers ──

    async def _load(self, session: AsyncSession, ticket_id: str) -> KeyRotationTicketModel:
        ticket = await session.get(KeyRotationTicketModel, ticket_id)
        if ticket is None:
            raise TicketNotFoundError(f"Rotation ticket '{ticket_id}' not found")
        return ticket

    async def _ensure_no_open_ticket(self, session: AsyncSession, scope: RotationScope) -> None:
        open_id = (await session.execute(
            select(KeyRotationTicketModel.id)
            .where(
                KeyRotationTicketModel.scope == scope.value,
                KeyRotationTicketModel.status.in_(_OPEN_STATUSES),
            )
            .limit(1)
        )).scalar_one_or_none()
        if open_id is not None:
            raise RotationError(f"Rotation {open_id} for {scope.value} is still open; resume it instead")

    @staticmethod
    async def _count(session: AsyncSession, model, *filters) -> int:
        result = await session.execute(select(func.count()).select_from(model).where(*filters))
        return int(result.scalar_one())

    @staticmethod
    def _ticket_details(ticket: KeyRotationTicketModel) -> dict:
        return {
            "ticket_id": ticket.id,
            "scope": ticket.scope,
            "old_key_id": ticket.old_key_id,
            "new_key_id": ticket.new_key_id,
            "processed_count": ticket.processed_count,
            "total": ticket.total,
            "resumed_from_id": ticket.resumed_from_id,
        }

"""Tests for the key rotation coordinator: tickets, batches, failure and resume."""

import pytest
from sqlalchemy import select

from aegis_engine.audit.service import AuditService
from aegis_engine.common.exceptions import (
    CryptoOperationError,
    DecryptionError,
    RotationError,
    TicketNotFoundError,
)
from aegis_engine.crypto.asymmetric import AsymmetricEngine
from aegis_engine.crypto.symmetric import SymmetricEngine
from aegis_engine.keys.manager import KeyManager
from aegis_engine.keys.models import (
    KIND_DATA_KEY,
    STATUS_ACTIVE,
    STATUS_RETIRED,
    STATUS_REVOKED,
    STATUS_ROTATING,
    ApiKeyModel,
    WrappedKeyModel,
)
from aegis_engine.keys.service import ApiKeyService, DataKeyService
from aegis_engine.rotation.models import KeyRotationTicketModel
from aegis_engine.rotation.schemas import KeyRotationTicket, RotationScope, TicketStatus
from aegis_engine.rotation.service import RotationCoordinator
from aegis_engine.vault.tokenizer import TokenizationVault


@pytest.fixture
def settings(settings_factory):
    return settings_factory(rotation_batch_size=2)


@pytest.fixture
def asymmetric(key_manager):
    return AsymmetricEngine(key_manager)


@pytest.fixture
def audit_svc(settings):
    return AuditService(settings)


@pytest.fixture
def coordinator(settings, db, key_manager, engine, asymmetric, audit_svc):
    return RotationCoordinator(settings, db, key_manager, engine, asymmetric, audit_svc)


@pytest.fixture
def data_keys(key_manager):
    return DataKeyService(key_manager)


@pytest.fixture
def api_keys(engine):
    return ApiKeyService(engine)


async def _create_deks(db, data_keys, count):
    ids = []
    async with db.get_session() as session:
        for _ in range(count):
            row, dek = await data_keys.create_data_key(session)
            dek.wipe()
            ids.append(row.id)
    return ids


async def _wrapped_rows(db):
    async with db.get_session() as session:
        result = await session.execute(select(WrappedKeyModel))
        return list(result.scalars().all())


class TestMasterKeyRotation:
    async def test_rewraps_everything_and_promotes(
        self, db, coordinator, key_manager, engine, asymmetric, data_keys, api_keys,
    ):
        async with db.get_session() as session:
            dek_row, dek = await data_keys.create_data_key(session)
            ciphertext = engine.encrypt(b"guest record", dek)
            dek.wipe()
            await data_keys.create_data_key(session)
            pair_row = await data_keys.store_key_pair(session, asymmetric.generate_key_pair())
            api_row, raw = await api_keys.issue(session, "ci-bot")

        ticket = await coordinator.rotate(RotationScope.MASTER_KEY, initiated_by="ops")

        assert ticket.status == TicketStatus.COMPLETED.value
        assert ticket.old_key_id == "mk-1"
        assert ticket.total == 4
        assert ticket.processed_count == 4
        assert ticket.checkpoint is None
        assert ticket.completed_at is not None
        assert key_manager.current_key_id == ticket.new_key_id
        assert key_manager.has_key("mk-1")

        assert {r.master_key_id for r in await _wrapped_rows(db)} == {ticket.new_key_id}
        async with db.get_session() as session:
            loaded = await data_keys.load_data_key(session, dek_row.id)
            pair = await data_keys.load_key_pair(session, pair_row.id)
            assert await api_keys.reveal(session, api_row.id) == raw
            assert (await api_keys.verify(session, raw)).id == api_row.id
            stored_api = await session.get(ApiKeyModel, api_row.id)
        assert engine.decrypt(ciphertext, loaded) == b"guest record"
        assert pair.key_id == ticket.new_key_id
        signature = asymmetric.sign(pair.private_pem, b"msg", key_id=pair.key_id)
        assert asymmetric.verify(pair.public_pem, b"msg", signature) is True
        assert stored_api.master_key_id == ticket.new_key_id

    async def test_completion_is_audited(self, db, coordinator, audit_svc, data_keys):
        await _create_deks(db, data_keys, 1)
        ticket = await coordinator.rotate("MASTER_KEY", initiated_by="ops")
        async with db.get_session() as session:
            events = await audit_svc.query_records(
                session, partition="security", action="keys.rotated",
            )
        assert len(events) == 1
        assert events[0].category == "SECURITY"
        assert events[0].actor == "ops"
        assert events[0].details["ticket_id"] == ticket.id
        assert events[0].details["new_key_id"] == ticket.new_key_id

    async def test_empty_keyring_still_promotes(self, coordinator, key_manager):
        ticket = await coordinator.rotate(RotationScope.MASTER_KEY)
        assert ticket.status == TicketStatus.COMPLETED.value
        assert ticket.total == 0
        assert key_manager.current_key_id == ticket.new_key_id

    async def test_preconfigured_new_key(self, db, coordinator, key_manager, data_keys):
        await _create_deks(db, data_keys, 1)
        key_manager.stage(key_id="mk-2")
        ticket = await coordinator.rotate(RotationScope.MASTER_KEY, new_key_id="mk-2")
        assert ticket.new_key_id == "mk-2"
        assert key_manager.current_key_id == "mk-2"

    async def test_unknown_new_key_rejected(self, coordinator):
        with pytest.raises(RotationError):
            await coordinator.rotate(RotationScope.MASTER_KEY, new_key_id="mk-missing")
        assert await coordinator.list_tickets() == []

    async def test_current_key_as_new_key_rejected(self, coordinator):
        with pytest.raises(RotationError):
            await coordinator.rotate(RotationScope.MASTER_KEY, new_key_id="mk-1")


class TestFailureAndResume:
    async def test_failed_batch_leaves_old_key_current(
        self, db, coordinator, key_manager, data_keys, monkeypatch,
    ):
        ids = await _create_deks(db, data_keys, 5)
        original = key_manager.rewrap
        calls = {"n": 0}

        def flaky_rewrap(wrapped, new_key_id):
            calls["n"] += 1
            if calls["n"] == 3:
                raise CryptoOperationError()
            return original(wrapped, new_key_id)

        monkeypatch.setattr(key_manager, "rewrap", flaky_rewrap)
        failed = await coordinator.rotate(RotationScope.MASTER_KEY)

        assert failed.status == TicketStatus.FAILED.value
        assert failed.error == "Rotation failed (CryptoOperationError)"
        assert failed.processed_count == 2
        assert failed.checkpoint is not None
        assert key_manager.current_key_id == "mk-1"

        # Both generations stay readable mid-rotation
        rows = await _wrapped_rows(db)
        assert {r.master_key_id for r in rows} == {"mk-1", failed.new_key_id}
        async with db.get_session() as session:
            for data_key_id in ids:
                assert await data_keys.load_data_key(session, data_key_id) is not None

        monkeypatch.setattr(key_manager, "rewrap", original)
        resumed = await coordinator.resume(failed.id, initiated_by="ops")

        assert resumed.id != failed.id
        assert resumed.resumed_from_id == failed.id
        assert resumed.status == TicketStatus.COMPLETED.value
        assert resumed.new_key_id == failed.new_key_id
        assert resumed.cutoff_at == failed.cutoff_at
        assert resumed.processed_count == 5
        assert resumed.total == 5
        assert key_manager.current_key_id == failed.new_key_id
        assert {r.master_key_id for r in await _wrapped_rows(db)} == {failed.new_key_id}

        previous = await coordinator.get_ticket(failed.id)
        assert previous.status == TicketStatus.FAILED.value

    async def test_failure_is_audited(self, db, coordinator, key_manager, audit_svc, data_keys, monkeypatch):
        await _create_deks(db, data_keys, 1)

        def broken_rewrap(wrapped, new_key_id):
            raise CryptoOperationError()

        monkeypatch.setattr(key_manager, "rewrap", broken_rewrap)
        failed = await coordinator.rotate(RotationScope.MASTER_KEY)
        async with db.get_session() as session:
            events = await audit_svc.query_records(
                session, partition="security", action="keys.rotation_failed",
            )
        assert len(events) == 1
        assert events[0].severity == "ERROR"
        assert events[0].details["ticket_id"] == failed.id
        assert events[0].details["error"] == failed.error

    async def test_unexpected_error_marks_failed_and_propagates(
        self, db, coordinator, key_manager, data_keys, monkeypatch,
    ):
        await _create_deks(db, data_keys, 1)

        def buggy_rewrap(wrapped, new_key_id):
            raise KeyError("boom")

        monkeypatch.setattr(key_manager, "rewrap", buggy_rewrap)
        with pytest.raises(KeyError):
            await coordinator.rotate(RotationScope.MASTER_KEY)
        [ticket] = await coordinator.list_tickets()
        assert ticket.status == TicketStatus.FAILED.value
        assert ticket.error == "Rotation failed (KeyError)"

    async def test_cancel_between_batches(self, db, coordinator, key_manager, data_keys, monkeypatch):
        await _create_deks(db, data_keys, 5)
        original = coordinator._rewrap_row

        def rewrap_and_cancel(row, old_key_id, new_key_id):
            original(row, old_key_id, new_key_id)
            coordinator.cancel()

        monkeypatch.setattr(coordinator, "_rewrap_row", rewrap_and_cancel)
        cancelled = await coordinator.rotate(RotationScope.MASTER_KEY)

        assert cancelled.status == TicketStatus.FAILED.value
        assert cancelled.error == "Rotation cancelled"
        assert cancelled.processed_count == 2
        assert key_manager.current_key_id == "mk-1"

        monkeypatch.setattr(coordinator, "_rewrap_row", original)
        resumed = await coordinator.resume(cancelled.id)
        assert resumed.status == TicketStatus.COMPLETED.value
        assert resumed.processed_count == 5

    def test_cancel_with_nothing_running(self, coordinator):
        assert coordinator.cancel() is False
        assert coordinator.cancel("not-running") is False

    async def test_interrupted_ticket_blocks_and_resumes(self, db, coordinator, key_manager, data_keys):
        await _create_deks(db, data_keys, 3)
        new_key_id = key_manager.stage()
        async with db.get_session() as session:
            stale = KeyRotationTicketModel(
                scope=RotationScope.MASTER_KEY.value,
                status=TicketStatus.IN_PROGRESS.value,
                old_key_id="mk-1",
                new_key_id=new_key_id,
                total=3,
            )
            session.add(stale)

        with pytest.raises(RotationError):
            await coordinator.rotate(RotationScope.MASTER_KEY)

        resumed = await coordinator.resume(stale.id)
        assert resumed.status == TicketStatus.COMPLETED.value
        assert resumed.processed_count == 3
        assert key_manager.current_key_id == new_key_id

        previous = await coordinator.get_ticket(stale.id)
        assert previous.status == TicketStatus.FAILED.value
        assert previous.error == "Interrupted"

    async def test_resume_rules(self, db, coordinator, key_manager, data_keys, monkeypatch):
        await _create_deks(db, data_keys, 1)

        def broken_rewrap(wrapped, new_key_id):
            raise CryptoOperationError()

        original = key_manager.rewrap
        monkeypatch.setattr(key_manager, "rewrap", broken_rewrap)
        failed = await coordinator.rotate(RotationScope.MASTER_KEY)
        monkeypatch.setattr(key_manager, "rewrap", original)
        completed = await coordinator.resume(failed.id)

        with pytest.raises(RotationError):
            await coordinator.resume(failed.id)
        with pytest.raises(RotationError):
            await coordinator.resume(completed.id)
        with pytest.raises(TicketNotFoundError):
            await coordinator.resume("missing")

    async def test_resume_without_escrow_requires_both_keys(
        self, db, coordinator, key_manager, data_keys, monkeypatch,
    ):
        await _create_deks(db, data_keys, 1)

        def broken_rewrap(wrapped, new_key_id):
            raise CryptoOperationError()

        monkeypatch.setattr(key_manager, "rewrap", broken_rewrap)
        failed = await coordinator.rotate(RotationScope.MASTER_KEY)
        key_manager.retire(failed.new_key_id)
        async with db.get_session() as session:
            (await session.get(KeyRotationTicketModel, failed.id)).escrowed_key = None
        with pytest.raises(RotationError):
            await coordinator.resume(failed.id)


class TestRestartMidRotation:
    """A process that dies mid-rotation loses its in-memory keyring."""

    async def _fail_midway(self, db, coordinator, key_manager, data_keys, monkeypatch):
        await _create_deks(db, data_keys, 3)
        original = key_manager.rewrap
        calls = {"n": 0}

        def flaky_rewrap(wrapped, new_key_id):
            calls["n"] += 1
            if calls["n"] == 3:
                raise CryptoOperationError()
            return original(wrapped, new_key_id)

        monkeypatch.setattr(key_manager, "rewrap", flaky_rewrap)
        failed = await coordinator.rotate(RotationScope.MASTER_KEY)
        monkeypatch.undo()
        assert failed.status == TicketStatus.FAILED.value
        assert failed.processed_count == 2
        return failed

    @staticmethod
    def _restarted(settings, db, audit_svc):
        fresh = KeyManager.from_settings(settings)
        engine = SymmetricEngine(fresh)
        coordinator = RotationCoordinator(
            settings, db, fresh, engine, AsymmetricEngine(fresh), audit_svc,
        )
        return fresh, coordinator, DataKeyService(fresh)

    async def test_resume_after_restart(
        self, settings, db, coordinator, key_manager, audit_svc, data_keys, monkeypatch,
    ):
        failed = await self._fail_midway(db, coordinator, key_manager, data_keys, monkeypatch)
        assert "escrowed_key" not in KeyRotationTicket.model_validate(failed).model_dump()

        fresh, restarted, fresh_data_keys = self._restarted(settings, db, audit_svc)
        try:
            assert fresh.key_ids() == ["mk-1"]
            resumed = await restarted.resume(failed.id, initiated_by="ops")

            assert resumed.status == TicketStatus.COMPLETED.value
            assert resumed.processed_count == 3
            assert fresh.current_key_id == failed.new_key_id
            rows = await _wrapped_rows(db)
            assert {r.master_key_id for r in rows} == {failed.new_key_id}
            async with db.get_session() as session:
                for row in rows:
                    assert await fresh_data_keys.load_data_key(session, row.id) is not None
        finally:
            fresh.shutdown()

    async def test_restore_staged_keys_before_resume(
        self, settings, db, coordinator, key_manager, audit_svc, data_keys, monkeypatch,
    ):
        failed = await self._fail_midway(db, coordinator, key_manager, data_keys, monkeypatch)
        moved = [r.id for r in await _wrapped_rows(db) if r.master_key_id == failed.new_key_id]
        assert len(moved) == 2

        fresh, restarted, fresh_data_keys = self._restarted(settings, db, audit_svc)
        try:
            async with db.get_session() as session:
                with pytest.raises(DecryptionError):
                    await fresh_data_keys.load_data_key(session, moved[0])

            assert await restarted.restore_staged_keys() == [failed.new_key_id]
            assert await restarted.restore_staged_keys() == []
            assert fresh.current_key_id == "mk-1"
            async with db.get_session() as session:
                for data_key_id in moved:
                    assert await fresh_data_keys.load_data_key(session, data_key_id) is not None
        finally:
            fresh.shutdown()

    async def test_escrow_needs_the_old_key(
        self, settings_factory, db, coordinator, key_manager, audit_svc, data_keys, monkeypatch,
    ):
        await self._fail_midway(db, coordinator, key_manager, data_keys, monkeypatch)
        stranger = settings_factory(master_secret="", master_keys='{"mk-other": "' + "cd" * 32 + '"}')
        fresh, restarted, _ = self._restarted(stranger, db, audit_svc)
        try:
            assert await restarted.restore_staged_keys() == []
            assert fresh.key_ids() == ["mk-other"]
        finally:
            fresh.shutdown()


class TestVaultDuringMasterRotation:
    @pytest.fixture
    def vault(self, engine):
        return TokenizationVault(engine)

    @pytest.fixture
    def coordinator(self, settings, db, key_manager, engine, asymmetric, audit_svc, vault):
        return RotationCoordinator(
            settings, db, key_manager, engine, asymmetric, audit_svc, vault=vault,
        )

    async def test_tokens_survive_retirement(self, coordinator, key_manager, vault):
        token = vault.tokenize("4111111111111111")
        revoked = vault.tokenize("5500000000000004")
        vault.revoke(revoked.token)

        ticket = await coordinator.rotate(RotationScope.MASTER_KEY)
        assert ticket.status == TicketStatus.COMPLETED.value
        assert ticket.total == 1
        assert ticket.processed_count == 1
        assert vault.store.get(token.token).key_id == ticket.new_key_id
        assert vault.count_under("mk-1") == 0

        await coordinator.retire_old_key(ticket.id)
        assert not key_manager.has_key("mk-1")
        assert vault.detokenize(token.token) == "4111111111111111"

    async def test_retire_refuses_while_vault_entries_remain(
        self, coordinator, key_manager, engine, vault,
    ):
        ticket = await coordinator.rotate(RotationScope.MASTER_KEY)
        late = engine.encrypt(b"sealed late", key_id="mk-1")
        assert vault.store.put("tok_" + "0" * 32, late)

        with pytest.raises(RotationError, match="vault"):
            await coordinator.retire_old_key(ticket.id)
        assert key_manager.has_key("mk-1")


class TestRetireOldKey:

    async def test_retires_after_completion(self, db, coordinator, key_manager, audit_svc, data_keys):
        await _create_deks(db, data_keys, 2)
        ticket = await coordinator.rotate(RotationScope.MASTER_KEY)
        assert ticket.escrowed_key is not None
        assert await coordinator.retire_old_key(ticket.id, actor="ops") == "mk-1"
        assert not key_manager.has_key("mk-1")
        assert (await coordinator.get_ticket(ticket.id)).escrowed_key is None
        assert key_manager.key_ids() == [ticket.new_key_id]
        async with db.get_session() as session:
            events = await audit_svc.query_records(
                session, partition="security", action="keys.master_retired",
            )
        assert len(events) == 1
        assert events[0].actor == "ops"

    async def test_rejects_failed_ticket(self, db, coordinator, key_manager, data_keys, monkeypatch):
        await _create_deks(db, data_keys, 1)

        def broken_rewrap(wrapped, new_key_id):
            raise CryptoOperationError()

        monkeypatch.setattr(key_manager, "rewrap", broken_rewrap)
        failed = await coordinator.rotate(RotationScope.MASTER_KEY)
        with pytest.raises(RotationError):
            await coordinator.retire_old_key(failed.id)
        assert key_manager.has_key("mk-1")

    async def test_rejects_when_rows_remain(self, db, coordinator, key_manager):
        ticket = await coordinator.rotate(RotationScope.MASTER_KEY)
        with key_manager.generate_data_key(key_id="mk-1") as straggler:
            async with db.get_session() as session:
                session.add(WrappedKeyModel(
                    id=straggler.id,
                    kind=KIND_DATA_KEY,
                    master_key_id="mk-1",
                    wrapped=straggler.wrapped.serialize(),
                ))
        with pytest.raises(RotationError):
            await coordinator.retire_old_key(ticket.id)
        assert key_manager.has_key("mk-1")

    async def test_rejects_other_scopes(self, coordinator):
        ticket = await coordinator.rotate(RotationScope.DATA_KEYS)
        with pytest.raises(RotationError):
            await coordinator.retire_old_key(ticket.id)


class TestDataKeyRotation:
    async def test_retires_older_data_keys(self, db, coordinator, data_keys):
        ids = await _create_deks(db, data_keys, 3)
        ticket = await coordinator.rotate(RotationScope.DATA_KEYS)

        assert ticket.status == TicketStatus.COMPLETED.value
        assert ticket.total == 3
        assert ticket.processed_count == 3
        assert ticket.old_key_id in ids
        assert ticket.new_key_id not in ids

        statuses = {r.id: r.status for r in await _wrapped_rows(db)}
        assert statuses[ticket.new_key_id] == STATUS_ACTIVE
        assert all(statuses[i] == STATUS_RETIRED for i in ids)
        async with db.get_session() as session:
            assert (await data_keys.active_data_key(session)).id == ticket.new_key_id
            # Retired keys still decrypt what they sealed
            assert await data_keys.load_data_key(session, ids[0]) is not None

    async def test_first_rotation_creates_a_key(self, coordinator, db, data_keys):
        ticket = await coordinator.rotate(RotationScope.DATA_KEYS)
        assert ticket.old_key_id is None
        assert ticket.processed_count == 0
        async with db.get_session() as session:
            assert (await data_keys.active_data_key(session)).id == ticket.new_key_id


class TestApiKeyRotation:
    async def test_successors_and_revocation(self, db, coordinator, api_keys):
        async with db.get_session() as session:
            first, first_raw = await api_keys.issue(session, "ci-bot")
            second, second_raw = await api_keys.issue(session, "deploy-bot")

        ticket = await coordinator.rotate(RotationScope.API_KEYS)
        assert ticket.status == TicketStatus.COMPLETED.value
        assert ticket.total == 2
        assert ticket.processed_count == 2

        async with db.get_session() as session:
            usable = await api_keys.list_usable(session)
            # Old keys keep working until the next rotation
            assert (await api_keys.verify(session, first_raw)).status == STATUS_ROTATING
            assert (await api_keys.verify(session, second_raw)).status == STATUS_ROTATING
        successors = [k for k in usable if k.rotated_from_id is not None]
        assert len(usable) == 4
        assert {k.rotated_from_id for k in successors} == {first.id, second.id}
        assert {k.name for k in successors} == {"ci-bot", "deploy-bot"}

        again = await coordinator.rotate(RotationScope.API_KEYS)
        assert again.status == TicketStatus.COMPLETED.value
        assert again.total == 4
        assert again.processed_count == 4
        async with db.get_session() as session:
            assert await api_keys.verify(session, first_raw) is None
            retired = await session.get(ApiKeyModel, first.id)
            assert retired.status == STATUS_REVOKED
            assert len(await api_keys.list_usable(session)) == 4


class TestTicketQueries:
    async def test_get_missing_ticket(self, coordinator):
        with pytest.raises(TicketNotFoundError):
            await coordinator.get_ticket("missing")

    async def test_open_ticket_blocks_same_scope_only(self, db, coordinator):
        async with db.get_session() as session:
            session.add(KeyRotationTicketModel(
                scope=RotationScope.API_KEYS.value, status=TicketStatus.PENDING.value,
            ))
        with pytest.raises(RotationError):
            await coordinator.rotate(RotationScope.API_KEYS)
        ticket = await coordinator.rotate(RotationScope.DATA_KEYS)
        assert ticket.status == TicketStatus.COMPLETED.value

    async def test_list_tickets_by_scope(self, coordinator):
        await coordinator.rotate(RotationScope.DATA_KEYS)
        await coordinator.rotate(RotationScope.API_KEYS)
        assert len(await coordinator.list_tickets()) == 2
        [ticket] = await coordinator.list_tickets(scope="API_KEYS")
        assert ticket.scope == "API_KEYS"

    async def test_ticket_schema(self, coordinator):
        ticket = await coordinator.rotate(RotationScope.DATA_KEYS)
        view = KeyRotationTicket.model_validate(ticket)
        assert view.scope is RotationScope.DATA_KEYS
        assert view.status is TicketStatus.COMPLETED

    async def test_rotation_due(
        self, settings_factory, db, key_manager, engine, asymmetric, audit_svc, coordinator,
    ):
        assert await coordinator.rotation_due() is True
        await coordinator.rotate(RotationScope.MASTER_KEY)
        assert await coordinator.rotation_due() is False
        assert await coordinator.rotation_due(RotationScope.DATA_KEYS) is True

        eager = RotationCoordinator(
            settings_factory(master_key_rotation_days=0),
            db, key_manager, engine, asymmetric, audit_svc,
        )
        assert await eager.rotation_due() is True

"""Tests for the document lock and retention state machine."""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from docvault.core.exceptions import (
    APIClientError,
    ConcurrentModificationError,
    DocumentNotFoundError,
    IllegalTransitionError,
    PermissionDeniedError,
    RetentionViolation,
    VerificationError,
    VerificationUnavailableError,
)
from docvault.schemas.events import PubSubEventType
from docvault.schemas.vault import (
    SYSTEM_COMPLIANCE_ACTOR,
    ActivityType,
    Actor,
    LockState,
    RetentionPolicy,
    VerificationProof,
    VerificationStatus,
)
from docvault.services.vault.retention_resolver import RetentionPolicyResolver
from docvault.services.vault.vault_engine import SYSTEM_VERIFICATION_ACTOR, UNASSIGNED_TRANSACTION

LENDER = Actor(id="lender-1", role="lender")
BROKER = Actor(id="broker-1", role="broker")
BORROWER = Actor(id="borrower-1", role="borrower")
ADMIN = Actor(id="admin-1", role="admin")

POLICY = RetentionPolicy(
    role="lender",
    retention_period_days=2555,
    required_document_name_patterns=("loan_agreement", "promissory_note"),
)


@pytest.fixture
def vault(make_vault):
    return make_vault()


class TestLock:
    """Manual lock and unlock."""

    @pytest.mark.asyncio
    async def test_lock_unlocked_document(self, vault, catalog, clock):
        catalog.add("doc_1", "loan_agreement.pdf")

        record = await vault.lock("doc_1", BROKER)

        assert record.state == LockState.LOCKED_MANUAL
        assert record.locked_by == "broker-1"
        assert record.locked_at == clock.now()
        assert record.version == 1
        assert [a.type for a in vault.get_activity("doc_1")] == [ActivityType.DOCUMENT_LOCKED]

    @pytest.mark.asyncio
    async def test_lock_requires_edit_permission(self, vault, catalog):
        catalog.add("doc_1", "a.pdf")

        with pytest.raises(PermissionDeniedError):
            await vault.lock("doc_1", BORROWER)

        assert vault.get_lock_status("doc_1") is None

    @pytest.mark.asyncio
    async def test_lock_unknown_document(self, vault):
        with pytest.raises(DocumentNotFoundError):
            await vault.lock("doc_missing", LENDER)

    @pytest.mark.asyncio
    async def test_relock_by_holder_is_a_no_op(self, vault, catalog):
        catalog.add("doc_1", "a.pdf")
        first = await vault.lock("doc_1", BROKER)

        second = await vault.lock("doc_1", BROKER)

        assert second.version == first.version
        assert len(vault.get_activity("doc_1")) == 1

    @pytest.mark.asyncio
    async def test_lock_held_by_other_actor_conflicts(self, vault, catalog):
        catalog.add("doc_1", "a.pdf")
        await vault.lock("doc_1", BROKER)

        with pytest.raises(ConcurrentModificationError):
            await vault.lock("doc_1", LENDER)

    @pytest.mark.asyncio
    async def test_unlock_by_holder(self, vault, catalog):
        catalog.add("doc_1", "a.pdf")
        await vault.lock("doc_1", BROKER)

        record = await vault.unlock("doc_1", BROKER)

        assert record.state == LockState.UNLOCKED
        assert record.locked_by is None

    @pytest.mark.asyncio
    async def test_unlock_by_other_non_admin_is_denied(self, vault, catalog):
        catalog.add("doc_1", "a.pdf")
        await vault.lock("doc_1", BROKER)

        with pytest.raises(PermissionDeniedError):
            await vault.unlock("doc_1", Actor(id="broker-2", role="broker"))

        assert vault.get_lock_status("doc_1").is_locked

    @pytest.mark.asyncio
    async def test_admin_can_unlock_any_manual_lock(self, vault, catalog):
        catalog.add("doc_1", "a.pdf")
        await vault.lock("doc_1", BROKER)

        assert not (await vault.unlock("doc_1", ADMIN)).is_locked

    @pytest.mark.asyncio
    async def test_unlock_unlocked_document_is_illegal(self, vault, catalog):
        catalog.add("doc_1", "a.pdf")

        with pytest.raises(IllegalTransitionError):
            await vault.unlock("doc_1", LENDER)

    @pytest.mark.asyncio
    async def test_document_without_transaction_uses_unassigned_scope(self, vault, catalog):
        catalog.add("doc_1", "a.pdf", transaction_id=None)

        record = await vault.lock("doc_1", LENDER)

        assert record.transaction_id == UNASSIGNED_TRANSACTION

    @pytest.mark.asyncio
    async def test_lock_events_target_transaction(self, vault, catalog, event_bus, recorded_events):
        catalog.add("doc_1", "a.pdf")

        await vault.lock("doc_1", LENDER)
        await vault.unlock("doc_1", LENDER)
        await event_bus.drain()

        assert [e.type for e in recorded_events] == [
            PubSubEventType.DOCUMENT_LOCKED,
            PubSubEventType.DOCUMENT_UNLOCKED,
        ]
        assert recorded_events[0].target == "tx-1"
        assert recorded_events[0].payload["locked_by"] == "lender-1"


class TestRetention:
    """Funding-time retention."""

    @pytest.mark.asyncio
    async def test_apply_retention_locks_matching_and_releases_rest(self, vault, catalog, clock):
        catalog.add("doc_1", "Loan_Agreement_signed.pdf")
        catalog.add("doc_2", "photo.png")

        result = await vault.apply_retention("tx-1", POLICY)

        assert result.retained == ["doc_1"]
        assert result.released == ["doc_2"]

        retained = vault.get_lock_status("doc_1")
        assert retained.state == LockState.LOCKED_RETENTION
        assert retained.locked_by == SYSTEM_COMPLIANCE_ACTOR
        assert not retained.can_be_unlocked
        assert retained.retention_end_date == clock.now() + timedelta(days=2555)

        released = vault.get_lock_status("doc_2")
        assert not released.is_locked
        assert released.unlocked_after_funding
        assert released.retention_policy_applied

    @pytest.mark.asyncio
    async def test_apply_retention_releases_manual_locks_on_non_required_documents(self, vault, catalog):
        catalog.add("doc_1", "notes.pdf")
        await vault.lock("doc_1", BROKER)

        await vault.apply_retention("tx-1", POLICY)

        assert not vault.get_lock_status("doc_1").is_locked

    @pytest.mark.asyncio
    async def test_apply_retention_twice_is_idempotent(self, vault, catalog, event_bus, recorded_events):
        catalog.add("doc_1", "loan_agreement.pdf")
        catalog.add("doc_2", "photo.png")

        await vault.apply_retention("tx-1", POLICY)
        first = {r.document_id: r for r in vault.store.records("tx-1")}
        second_result = await vault.apply_retention("tx-1", POLICY)
        second = {r.document_id: r for r in vault.store.records("tx-1")}
        await event_bus.drain()

        assert first == second
        assert sorted(second_result.skipped) == ["doc_1", "doc_2"]
        retention_events = [e for e in recorded_events if e.type == PubSubEventType.RETENTION_APPLIED]
        assert len(retention_events) == 1

    @pytest.mark.asyncio
    async def test_relocking_after_funding_does_not_reapply_retention(self, vault, catalog):
        catalog.add("doc_1", "photo.png")
        await vault.apply_retention("tx-1", POLICY)
        await vault.lock("doc_1", LENDER)

        result = await vault.apply_retention("tx-1", POLICY)

        assert result.skipped == ["doc_1"]
        assert vault.get_lock_status("doc_1").locked_by == "lender-1"

    @pytest.mark.asyncio
    async def test_unlock_under_retention_raises_violation(self, vault, catalog):
        catalog.add("doc_1", "loan_agreement.pdf")
        await vault.apply_retention("tx-1", POLICY)

        with pytest.raises(RetentionViolation) as exc_info:
            await vault.unlock("doc_1", ADMIN)

        assert exc_info.value.retention_end_date == vault.get_lock_status("doc_1").retention_end_date
        assert vault.get_lock_status("doc_1").is_locked

    @pytest.mark.asyncio
    async def test_unlock_after_retention_ends(self, vault, catalog, clock):
        catalog.add("doc_1", "loan_agreement.pdf")
        await vault.apply_retention("tx-1", POLICY)

        await clock.advance(timedelta(days=2555).total_seconds())
        record = await vault.unlock("doc_1", LENDER)

        assert not record.is_locked
        assert record.retention_end_date is None
        assert vault.get_activity("doc_1")[-1].details == "Retention period ended"

    @pytest.mark.asyncio
    async def test_manual_lock_during_retention_is_illegal(self, vault, catalog):
        catalog.add("doc_1", "loan_agreement.pdf")
        await vault.apply_retention("tx-1", POLICY)

        with pytest.raises(IllegalTransitionError):
            await vault.lock("doc_1", LENDER)

    @pytest.mark.asyncio
    async def test_manual_lock_replaces_ended_retention(self, vault, catalog, clock):
        catalog.add("doc_1", "loan_agreement.pdf")
        await vault.apply_retention("tx-1", POLICY)
        await clock.advance(timedelta(days=2555).total_seconds())

        record = await vault.lock("doc_1", BROKER)

        assert record.state == LockState.LOCKED_MANUAL
        assert record.locked_by == "broker-1"
        assert record.can_be_unlocked
        assert record.retention_end_date is None
        assert record.retention_policy_applied
        assert vault.get_activity("doc_1")[-1].type == ActivityType.DOCUMENT_LOCKED

    def test_get_retention_info(self, vault, catalog):
        catalog.add("doc_1", "promissory_note.pdf")

        info = vault.get_retention_info("doc_1", POLICY)

        assert info.is_required
        assert info.retention_period_days == 2555
        assert info.retention_end_date is None

    @pytest.mark.asyncio
    async def test_handle_transaction_status_funded(self, make_vault, catalog):
        vault = make_vault(resolver=RetentionPolicyResolver([POLICY]))
        catalog.add("doc_1", "loan_agreement.pdf")

        result = await vault.handle_transaction_status("tx-1", "Funded")

        assert result.retained == ["doc_1"]

    @pytest.mark.asyncio
    async def test_handle_transaction_status_ignores_other_statuses(self, make_vault, catalog):
        vault = make_vault(resolver=RetentionPolicyResolver([POLICY]))
        catalog.add("doc_1", "loan_agreement.pdf")

        assert await vault.handle_transaction_status("tx-1", "underwriting") is None
        assert vault.get_lock_status("doc_1") is None

    @pytest.mark.asyncio
    async def test_handle_transaction_status_unknown_role(self, make_vault, catalog):
        vault = make_vault(resolver=RetentionPolicyResolver([POLICY]))
        catalog.add("doc_1", "loan_agreement.pdf")

        assert await vault.handle_transaction_status("tx-1", "completed", {"role": "auditor"}) is None


class TestLockAll:
    @pytest.mark.asyncio
    async def test_lock_all_skips_locked_and_collects_errors(self, vault, catalog):
        catalog.add("doc_1", "a.pdf")
        catalog.add("doc_2", "b.pdf")
        catalog.add("doc_3", "loan_agreement.pdf", transaction_id="tx-2")
        await vault.lock("doc_1", BROKER)

        result = await vault.lock_all("tx-1", LENDER)

        assert result.locked == 1
        assert result.errors == {}
        assert vault.get_lock_status("doc_2").locked_by == "lender-1"
        assert vault.get_lock_status("doc_3") is None

    @pytest.mark.asyncio
    async def test_lock_all_reports_permission_errors(self, vault, catalog):
        catalog.add("doc_1", "a.pdf")

        result = await vault.lock_all("tx-1", BORROWER)

        assert result.locked == 0
        assert isinstance(result.errors["doc_1"], PermissionDeniedError)


class TestVerify:
    """Verification, which also locks."""

    @pytest.mark.asyncio
    async def test_verify_without_provider_locks(self, vault, catalog):
        catalog.add("doc_1", "a.pdf")

        record = await vault.verify("doc_1")

        assert record.is_locked
        assert record.locked_by == SYSTEM_VERIFICATION_ACTOR
        assert record.verification_status == VerificationStatus.VERIFIED

    @pytest.mark.asyncio
    async def test_verify_keeps_existing_lock_holder(self, vault, catalog):
        catalog.add("doc_1", "a.pdf")
        await vault.lock("doc_1", BROKER)

        record = await vault.verify("doc_1", LENDER)

        assert record.locked_by == "broker-1"
        assert record.verification_status == VerificationStatus.VERIFIED

    @pytest.mark.asyncio
    async def test_verify_stores_proof_and_passes_prior_proof(self, make_vault, catalog, clock):
        provider = AsyncMock()
        provider.verify.side_effect = [
            VerificationProof(proof="proof-1", timestamp=clock.now()),
            VerificationProof(proof="proof-2", timestamp=clock.now()),
        ]
        vault = make_vault(verification_provider=provider)
        catalog.add("doc_1", "a.pdf", content=b"pdf bytes")

        await vault.verify("doc_1")
        record = await vault.verify("doc_1")

        assert record.verification_proof == "proof-2"
        assert provider.verify.call_args_list[0].args == (b"pdf bytes", None)
        assert provider.verify.call_args_list[1].args == (b"pdf bytes", "proof-1")

    @pytest.mark.asyncio
    async def test_verify_retries_transient_failures(self, make_vault, catalog, clock):
        provider = AsyncMock()
        provider.verify.side_effect = [
            APIClientError("503"),
            VerificationProof(proof="proof-1", timestamp=clock.now()),
        ]
        vault = make_vault(verification_provider=provider)
        catalog.add("doc_1", "a.pdf")

        record = await vault.verify("doc_1")

        assert record.verification_proof == "proof-1"
        assert provider.verify.call_count == 2

    @pytest.mark.asyncio
    async def test_verify_gives_up_after_max_attempts(self, make_vault, catalog):
        provider = AsyncMock()
        provider.verify.side_effect = APIClientError("down")
        vault = make_vault(verification_provider=provider, verification_max_attempts=3)
        catalog.add("doc_1", "a.pdf")

        with pytest.raises(VerificationUnavailableError):
            await vault.verify("doc_1")

        assert provider.verify.call_count == 3
        assert vault.get_lock_status("doc_1") is None

    @pytest.mark.asyncio
    async def test_rejection_records_status_without_locking(self, make_vault, catalog):
        provider = AsyncMock()
        provider.verify.side_effect = VerificationError("Document rejected: tampered")
        vault = make_vault(verification_provider=provider)
        catalog.add("doc_1", "a.pdf")

        with pytest.raises(VerificationError):
            await vault.verify("doc_1", LENDER)

        record = vault.get_lock_status("doc_1")
        assert record.verification_status == VerificationStatus.REJECTED
        assert not record.is_locked
        assert provider.verify.call_count == 1
        assert vault.get_activity("doc_1")[-1].type == ActivityType.VERIFICATION_REJECTED

    @pytest.mark.asyncio
    async def test_verify_under_retention_is_illegal(self, vault, catalog):
        catalog.add("doc_1", "loan_agreement.pdf")
        await vault.apply_retention("tx-1", POLICY)

        with pytest.raises(IllegalTransitionError):
            await vault.verify("doc_1")

    @pytest.mark.asyncio
    async def test_verify_requires_edit_permission_for_actor(self, vault, catalog):
        catalog.add("doc_1", "a.pdf")

        with pytest.raises(PermissionDeniedError):
            await vault.verify("doc_1", BORROWER)

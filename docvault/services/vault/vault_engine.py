"""Document lock and retention state machine.

States are derived from the LockRecord:

    UNLOCKED --lock/verify--> LOCKED_MANUAL --unlock--> UNLOCKED
    any --apply_retention--> LOCKED_RETENTION (name matches policy)
                          or UNLOCKED with unlocked_after_funding
    LOCKED_RETENTION --unlock, after retention_end_date--> UNLOCKED

The engine is the only writer of the VaultStateStore.
"""

from datetime import timedelta
from typing import Any, Dict, List, Optional, Protocol, Tuple

from tenacity.wait import wait_base

from docvault.core.exceptions import (
    ConcurrentModificationError,
    DocumentNotFoundError,
    IllegalTransitionError,
    PermissionDeniedError,
    RetentionViolation,
    VaultError,
    VerificationError,
    VerificationUnavailableError,
)
from docvault.schemas.documents import Document
from docvault.schemas.events import PubSubEventType
from docvault.schemas.vault import (
    SYSTEM_COMPLIANCE_ACTOR,
    ActivityEntry,
    ActivityType,
    Actor,
    BulkLockResult,
    LockRecord,
    LockState,
    RetentionInfo,
    RetentionPolicy,
    RetentionResult,
    VerificationStatus,
)
from docvault.services.events.event_bus import EventBus
from docvault.services.vault.permissions import Permission, has_permission, require_permission
from docvault.services.vault.retention_resolver import RetentionPolicyResolver
from docvault.services.vault.state_store import VaultStateStore
from docvault.services.vault.verification import VerificationProvider, verify_with_retry
from docvault.utils.clock import Clock, SystemClock
from docvault.utils.logging import get_logger

LOGGER = get_logger(__name__)

SOURCE_COMPONENT = "vault_engine"
SYSTEM_VERIFICATION_ACTOR = "System (Verification)"
UNASSIGNED_TRANSACTION = "unassigned"
FUNDED_STATUSES = frozenset({"funded", "completed"})


class DocumentCatalog(Protocol):
    """Read access to stored documents."""

    def get_document(self, document_id: str) -> Optional[Document]:
        ...

    def list_documents(self, transaction_id: Optional[str] = None) -> List[Document]:
        ...

    async def download(self, document_id: str) -> bytes:
        ...


class VaultEngine:
    """Applies lock, unlock, retention and verification transitions."""

    def __init__(
        self,
        catalog: DocumentCatalog,
        store: Optional[VaultStateStore] = None,
        event_bus: Optional[EventBus] = None,
        verification_provider: Optional[VerificationProvider] = None,
        resolver: Optional[RetentionPolicyResolver] = None,
        clock: Optional[Clock] = None,
        verification_max_attempts: int = 3,
        verification_wait: Optional[wait_base] = None,
    ):
        self.catalog = catalog
        self.store = store or VaultStateStore()
        self.event_bus = event_bus
        self.verification_provider = verification_provider
        self.resolver = resolver
        self.clock = clock or SystemClock()
        self.verification_max_attempts = verification_max_attempts
        self.verification_wait = verification_wait

    def _current(self, document_id: str) -> Tuple[Document, LockRecord]:
        document = self.catalog.get_document(document_id)
        if document is None:
            raise DocumentNotFoundError(f"Unknown document: {document_id}")
        transaction_id = document.transaction_id or UNASSIGNED_TRANSACTION
        record = self.store.get(transaction_id, document_id) or LockRecord(
            document_id=document_id, transaction_id=transaction_id
        )
        return document, record

    async def _emit(self, event_type: PubSubEventType, record: LockRecord, **extra: Any) -> None:
        if self.event_bus is None:
            return
        payload = {
            "document_id": record.document_id,
            "transaction_id": record.transaction_id,
            "is_locked": record.is_locked,
            "locked_by": record.locked_by,
            **extra,
        }
        await self.event_bus.emit(event_type, payload, SOURCE_COMPONENT, record.transaction_id)

    async def lock(self, document_id: str, actor: Actor) -> LockRecord:
        """Manually lock a document.

        Relocking a document the actor already holds returns it unchanged. A
        retention lock whose end date has passed counts as unlocked and is
        replaced by the actor's manual lock.

        Raises:
            PermissionDeniedError: If the actor cannot edit
            ConcurrentModificationError: If another actor holds the lock
            IllegalTransitionError: If the document is still under retention
        """
        require_permission(actor, Permission.EDIT)
        _, record = self._current(document_id)
        now = self.clock.now()

        state = record.state
        if state == LockState.LOCKED_RETENTION:
            if record.retention_end_date > now:
                raise IllegalTransitionError(f"Document {document_id} is locked for retention")
            state = LockState.UNLOCKED
        if state == LockState.LOCKED_MANUAL:
            if record.locked_by == actor.id:
                return record
            raise ConcurrentModificationError(
                f"Document {document_id} is already locked by {record.locked_by}"
            )

        updated = record.model_copy(
            update={
                "is_locked": True,
                "locked_by": actor.id,
                "locked_at": now,
                "can_be_unlocked": True,
                "retention_end_date": None,
            }
        )
        committed = self.store.commit(
            updated, record.version, ActivityType.DOCUMENT_LOCKED, actor.id, now,
            "Document locked manually",
        )
        LOGGER.info(f"Document {document_id} locked by {actor.id}")
        await self._emit(PubSubEventType.DOCUMENT_LOCKED, committed)
        return committed

    async def unlock(self, document_id: str, actor: Actor) -> LockRecord:
        """Unlock a document.

        Raises:
            RetentionViolation: If retention has not yet ended
            PermissionDeniedError: If the actor may not release this lock
            IllegalTransitionError: If the document is not locked
        """
        _, record = self._current(document_id)
        now = self.clock.now()

        state = record.state
        if state == LockState.UNLOCKED:
            raise IllegalTransitionError(f"Document {document_id} is not locked")

        if state == LockState.LOCKED_RETENTION:
            if record.retention_end_date > now:
                raise RetentionViolation(
                    f"Document {document_id} is under retention until"
                    f" {record.retention_end_date.isoformat()}",
                    retention_end_date=record.retention_end_date,
                )
            require_permission(actor, Permission.EDIT)
        else:
            if not record.can_be_unlocked:
                raise PermissionDeniedError(f"Document {document_id} cannot be unlocked")
            if record.locked_by != actor.id and not has_permission(actor, Permission.ADMIN):
                raise PermissionDeniedError(
                    f"Only {record.locked_by} or an admin can unlock {document_id}"
                )

        updated = record.model_copy(
            update={
                "is_locked": False,
                "locked_by": None,
                "locked_at": None,
                "can_be_unlocked": True,
                "retention_end_date": None,
            }
        )
        committed = self.store.commit(
            updated, record.version, ActivityType.DOCUMENT_UNLOCKED, actor.id, now,
            "Retention period ended" if state == LockState.LOCKED_RETENTION else "Document unlocked",
        )
        LOGGER.info(f"Document {document_id} unlocked by {actor.id}")
        await self._emit(PubSubEventType.DOCUMENT_UNLOCKED, committed)
        return committed

    async def apply_retention(self, transaction_id: str, policy: RetentionPolicy) -> RetentionResult:
        """Apply a funding-time retention policy to every document of a transaction.

        Documents whose names match the policy are locked until
        ``now + retention_period_days``; the rest are released. Documents
        already processed are skipped, so repeated calls change nothing.
        """
        now = self.clock.now()
        retention_end = now + timedelta(days=policy.retention_period_days)
        result = RetentionResult()

        for document in self.catalog.list_documents(transaction_id):
            record = self.store.get(transaction_id, document.id) or LockRecord(
                document_id=document.id, transaction_id=transaction_id
            )
            if record.retention_policy_applied:
                result.skipped.append(document.id)
                continue

            if policy.requires(document.name):
                updated = record.model_copy(
                    update={
                        "is_locked": True,
                        "locked_by": SYSTEM_COMPLIANCE_ACTOR,
                        "locked_at": now,
                        "can_be_unlocked": False,
                        "retention_policy_applied": True,
                        "retention_end_date": retention_end,
                    }
                )
                self.store.commit(
                    updated, record.version, ActivityType.RETENTION_APPLIED,
                    SYSTEM_COMPLIANCE_ACTOR, now,
                    f"Retained for {policy.retention_period_days} days ({policy.role} policy)",
                )
                result.retained.append(document.id)
            else:
                updated = record.model_copy(
                    update={
                        "is_locked": False,
                        "locked_by": None,
                        "locked_at": None,
                        "can_be_unlocked": True,
                        "unlocked_after_funding": True,
                        "retention_policy_applied": True,
                        "retention_end_date": None,
                    }
                )
                self.store.commit(
                    updated, record.version, ActivityType.UNLOCKED_AFTER_FUNDING,
                    SYSTEM_COMPLIANCE_ACTOR, now, "Not required for retention",
                )
                result.released.append(document.id)

        LOGGER.info(
            f"Applied {policy.role} retention to transaction {transaction_id}",
            extra={
                "retained": len(result.retained),
                "released": len(result.released),
                "skipped": len(result.skipped),
            },
        )
        if self.event_bus is not None and (result.retained or result.released):
            await self.event_bus.emit(
                PubSubEventType.RETENTION_APPLIED,
                {
                    "transaction_id": transaction_id,
                    "role": policy.role,
                    "retention_end_date": retention_end.isoformat(),
                    "retained": result.retained,
                    "released": result.released,
                },
                SOURCE_COMPONENT,
                transaction_id,
            )
        return result

    async def verify(self, document_id: str, actor: Optional[Actor] = None) -> LockRecord:
        """Verify a document and lock it.

        When a verification provider is configured it is called with the
        document bytes and the prior proof, and the new proof is stored.

        Raises:
            IllegalTransitionError: If the document is under retention
            VerificationError: If the provider rejects the document or keeps failing
        """
        if actor is not None:
            require_permission(actor, Permission.EDIT)
        _, record = self._current(document_id)
        if record.state == LockState.LOCKED_RETENTION:
            raise IllegalTransitionError(f"Document {document_id} is locked for retention")

        proof = None
        if self.verification_provider is not None:
            content = await self.catalog.download(document_id)
            try:
                proof = await verify_with_retry(
                    self.verification_provider,
                    content,
                    record.verification_proof,
                    max_attempts=self.verification_max_attempts,
                    wait=self.verification_wait,
                )
            except VerificationUnavailableError:
                raise
            except VerificationError as e:
                await self._reject(document_id, actor, str(e))
                raise

            # The provider call yields; re-read so the commit is checked against fresh state
            _, record = self._current(document_id)
            if record.state == LockState.LOCKED_RETENTION:
                raise IllegalTransitionError(f"Document {document_id} is locked for retention")

        now = self.clock.now()
        actor_id = actor.id if actor else SYSTEM_VERIFICATION_ACTOR
        updated = record.model_copy(
            update={
                "is_locked": True,
                "locked_by": record.locked_by if record.is_locked else actor_id,
                "locked_at": record.locked_at if record.is_locked else now,
                "can_be_unlocked": True,
                "verification_status": VerificationStatus.VERIFIED,
                "verification_proof": proof.proof if proof else record.verification_proof,
            }
        )
        committed = self.store.commit(
            updated, record.version, ActivityType.DOCUMENT_VERIFIED, actor_id, now,
            "Document verified and locked",
        )
        LOGGER.info(f"Document {document_id} verified", extra={"has_proof": proof is not None})
        await self._emit(
            PubSubEventType.DOCUMENT_VERIFIED,
            committed,
            verification_proof=committed.verification_proof,
        )
        return committed

    async def _reject(self, document_id: str, actor: Optional[Actor], reason: str) -> None:
        _, record = self._current(document_id)
        updated = record.model_copy(update={"verification_status": VerificationStatus.REJECTED})
        self.store.commit(
            updated, record.version, ActivityType.VERIFICATION_REJECTED,
            actor.id if actor else SYSTEM_VERIFICATION_ACTOR, self.clock.now(), reason,
        )
        LOGGER.warning(f"Document {document_id} failed verification: {reason}")

    async def lock_all(self, transaction_id: str, actor: Actor) -> BulkLockResult:
        """Lock every unlocked document of a transaction, continuing past failures."""
        result = BulkLockResult()
        for document in self.catalog.list_documents(transaction_id):
            record = self.store.get(transaction_id, document.id)
            if record is not None and record.is_locked:
                continue
            try:
                await self.lock(document.id, actor)
                result.locked += 1
            except VaultError as e:
                LOGGER.warning(f"Bulk lock skipped {document.id}: {str(e)}")
                result.errors[document.id] = e
        return result

    def get_lock_status(self, document_id: str) -> Optional[LockRecord]:
        return self.store.get_by_document(document_id)

    def get_activity(self, document_id: str) -> List[ActivityEntry]:
        return self.store.activity(document_id)

    def get_retention_info(self, document_id: str, policy: RetentionPolicy) -> RetentionInfo:
        document, record = self._current(document_id)
        return RetentionInfo(
            retention_period_days=policy.retention_period_days,
            retention_end_date=record.retention_end_date,
            is_required=policy.requires(document.name),
        )

    async def handle_transaction_status(
        self,
        transaction_id: str,
        status: str,
        context: Optional[Dict[str, Optional[str]]] = None,
    ) -> Optional[RetentionResult]:
        """Apply retention when a transaction is funded or completed.

        Args:
            transaction_id: Transaction whose status changed
            status: New transaction status
            context: ``role`` plus optional ``collateral_type``,
                ``request_type`` and ``instrument_type``

        Returns:
            The retention result, or None when nothing was applied
        """
        if status.lower() not in FUNDED_STATUSES:
            return None
        if self.resolver is None:
            LOGGER.warning(f"No retention resolver configured; skipping {transaction_id}")
            return None

        context = context or {}
        policy = self.resolver.resolve(
            context.get("role") or "lender",
            context.get("collateral_type"),
            context.get("request_type"),
            context.get("instrument_type"),
        )
        if policy is None:
            LOGGER.warning(
                f"No retention policy for role {context.get('role')}; skipping {transaction_id}"
            )
            return None
        return await self.apply_retention(transaction_id, policy)

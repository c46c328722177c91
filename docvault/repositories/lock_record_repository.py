from typing import Iterable, List

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import SQLAlchemyError

from docvault.core.exceptions import DatabaseError
from docvault.database.models import LockRecordRow, VaultActivityRecord
from docvault.repositories.base_repository import BaseRepository, ensure_utc
from docvault.schemas.vault import ActivityEntry, ActivityType, LockRecord, VerificationStatus
from docvault.utils.logging import get_logger

LOGGER = get_logger(__name__)


class LockRecordRepository(BaseRepository[LockRecordRow]):
    """Persistence for vault lock records. Rows are upserted, never deleted."""

    def __init__(self, session: AsyncSession):
        super().__init__(session, LockRecordRow)

    async def upsert_records(self, records: Iterable[LockRecord]) -> int:
        """Insert or update lock rows keyed by (transaction_id, document_id).

        Returns:
            Number of rows written
        """
        written = 0
        try:
            for record in records:
                row = await self.session.get(LockRecordRow, record.key)
                if row is None:
                    row = LockRecordRow(
                        transaction_id=record.transaction_id,
                        document_id=record.document_id,
                    )
                    self.session.add(row)
                elif row.version >= record.version:
                    continue

                row.is_locked = record.is_locked
                row.locked_by = record.locked_by
                row.locked_at = record.locked_at
                row.can_be_unlocked = record.can_be_unlocked
                row.unlocked_after_funding = record.unlocked_after_funding
                row.retention_policy_applied = record.retention_policy_applied
                row.retention_end_date = record.retention_end_date
                row.verification_status = record.verification_status.value
                row.verification_proof = record.verification_proof
                row.version = record.version
                written += 1

            await self.session.flush()
            await self.session.commit()
        except SQLAlchemyError as e:
            LOGGER.error(f"Failed to persist lock records: {str(e)}", exc_info=True)
            await self.session.rollback()
            raise DatabaseError("Failed to persist lock records", original_error=e) from e

        return written

    async def load_records(self) -> List[LockRecord]:
        return [
            LockRecord(
                document_id=row.document_id,
                transaction_id=row.transaction_id,
                is_locked=row.is_locked,
                locked_by=row.locked_by,
                locked_at=ensure_utc(row.locked_at),
                can_be_unlocked=row.can_be_unlocked,
                unlocked_after_funding=row.unlocked_after_funding,
                retention_policy_applied=row.retention_policy_applied,
                retention_end_date=ensure_utc(row.retention_end_date),
                verification_status=VerificationStatus(row.verification_status),
                verification_proof=row.verification_proof,
                version=row.version,
            )
            for row in await self.get_all()
        ]


class VaultActivityRepository(BaseRepository[VaultActivityRecord]):
    """Append-only storage for vault activity entries."""

    def __init__(self, session: AsyncSession):
        super().__init__(session, VaultActivityRecord)

    async def last_sequence(self) -> int:
        result = await self.session.execute(select(func.max(VaultActivityRecord.sequence)))
        return result.scalar_one_or_none() or 0

    async def append(self, entries: Iterable[ActivityEntry]) -> int:
        """Append entries newer than the last stored sequence.

        Returns:
            Number of entries appended
        """
        try:
            last = await self.last_sequence()
            rows = [
                VaultActivityRecord(
                    sequence=entry.sequence,
                    document_id=entry.document_id,
                    transaction_id=entry.transaction_id,
                    activity_type=entry.type.value,
                    actor=entry.actor,
                    timestamp=entry.timestamp,
                    details=entry.details,
                )
                for entry in entries
                if entry.sequence > last
            ]
            self.session.add_all(rows)
            await self.session.flush()
            await self.session.commit()
        except SQLAlchemyError as e:
            LOGGER.error(f"Failed to append vault activity: {str(e)}", exc_info=True)
            await self.session.rollback()
            raise DatabaseError("Failed to append vault activity", original_error=e) from e

        return len(rows)

    async def load_entries(self) -> List[ActivityEntry]:
        result = await self.session.execute(
            select(VaultActivityRecord).order_by(VaultActivityRecord.sequence)
        )
        return [
            ActivityEntry(
                sequence=row.sequence,
                document_id=row.document_id,
                transaction_id=row.transaction_id,
                type=ActivityType(row.activity_type),
                actor=row.actor,
                timestamp=ensure_utc(row.timestamp),
                details=row.details,
            )
            for row in result.scalars().all()
        ]

from typing import Iterable, List, Tuple

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import SQLAlchemyError

from docvault.core.exceptions import DatabaseError
from docvault.database.models import SyncQueueRecord
from docvault.repositories.base_repository import BaseRepository, ensure_utc
from docvault.schemas.sync import SyncQueueItem
from docvault.utils.logging import get_logger

LOGGER = get_logger(__name__)

PENDING = "pending"
FAILED = "failed"


class SyncQueueRepository(BaseRepository[SyncQueueRecord]):
    """Snapshot storage for the sync queue."""

    def __init__(self, session: AsyncSession):
        super().__init__(session, SyncQueueRecord)

    async def replace_snapshot(
        self,
        pending: Iterable[SyncQueueItem],
        failed: Iterable[SyncQueueItem],
    ) -> int:
        """Replace the stored queue with the given pending and failed items.

        Returns:
            Number of rows written
        """
        rows = [self._to_row(item, PENDING) for item in pending]
        rows.extend(self._to_row(item, FAILED) for item in failed)
        try:
            await self.session.execute(delete(SyncQueueRecord))
            self.session.add_all(rows)
            await self.session.flush()
            await self.session.commit()
        except SQLAlchemyError as e:
            LOGGER.error(f"Failed to snapshot sync queue: {str(e)}", exc_info=True)
            await self.session.rollback()
            raise DatabaseError("Failed to snapshot sync queue", original_error=e) from e

        LOGGER.debug(f"Snapshot stored {len(rows)} sync queue items")
        return len(rows)

    async def load_snapshot(self) -> Tuple[List[SyncQueueItem], List[SyncQueueItem]]:
        """Load the stored queue.

        Returns:
            (pending items, failed items)
        """
        pending: List[SyncQueueItem] = []
        failed: List[SyncQueueItem] = []
        for row in await self.get_all():
            item = SyncQueueItem(
                document_id=row.document_id,
                backend_name=row.backend_name,
                payload_ref=row.payload_ref,
                retry_count=row.retry_count,
                next_attempt_at=ensure_utc(row.next_attempt_at),
                last_error=row.last_error,
                created_at=ensure_utc(row.created_at),
            )
            (failed if row.status == FAILED else pending).append(item)
        return pending, failed

    @staticmethod
    def _to_row(item: SyncQueueItem, status: str) -> SyncQueueRecord:
        return SyncQueueRecord(
            document_id=item.document_id,
            backend_name=item.backend_name,
            payload_ref=item.payload_ref,
            retry_count=item.retry_count,
            next_attempt_at=item.next_attempt_at,
            last_error=item.last_error,
            status=status,
            created_at=item.created_at,
        )

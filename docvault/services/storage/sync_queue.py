"""Retry queue for backend writes that failed during upload."""

import asyncio
from datetime import timedelta
from typing import Dict, List, Optional, Set, Tuple

from docvault.schemas.sync import SyncQueueItem, SyncQueueStatus
from docvault.utils.clock import Clock, SystemClock
from docvault.utils.logging import get_logger

LOGGER = get_logger(__name__)

QueueKey = Tuple[str, str]


class SyncQueue:
    """Pending and failed retry items, one per (document_id, backend_name).

    Every mutation goes through the queue lock, so the upload path and the
    drain loop can never create two items for the same pair. Items handed out
    by ``claim_due`` stay claimed until ``mark_succeeded`` or ``mark_failed``,
    which keeps concurrent drains from retrying the same write twice.
    """

    def __init__(
        self,
        clock: Optional[Clock] = None,
        max_retries: int = 3,
        base_delay_seconds: float = 1.0,
    ):
        self.clock = clock or SystemClock()
        self.max_retries = max_retries
        self.base_delay_seconds = base_delay_seconds
        self._pending: Dict[QueueKey, SyncQueueItem] = {}
        self._failed: Dict[QueueKey, SyncQueueItem] = {}
        self._claimed: Set[QueueKey] = set()
        self._lock = asyncio.Lock()

    def backoff_delay(self, retry_count: int) -> float:
        return (2 ** retry_count) * self.base_delay_seconds

    async def enqueue(
        self,
        document_id: str,
        backend_name: str,
        payload_ref: str,
        error: Optional[str] = None,
    ) -> SyncQueueItem:
        """Create or refresh the retry item for a failed write."""
        key = (document_id, backend_name)
        async with self._lock:
            now = self.clock.now()
            item = self._pending.get(key)
            if item is None:
                item = SyncQueueItem(
                    document_id=document_id,
                    backend_name=backend_name,
                    payload_ref=payload_ref,
                    retry_count=0,
                    next_attempt_at=now,
                    created_at=now,
                )
                self._pending[key] = item
            # A fresh failure supersedes an earlier permanent one
            self._failed.pop(key, None)
            item.last_error = error
            item.next_attempt_at = now + timedelta(seconds=self.backoff_delay(item.retry_count))

        LOGGER.info(
            f"Queued retry for {document_id} on {backend_name}",
            extra={"retry_count": item.retry_count, "next_attempt_at": item.next_attempt_at.isoformat()},
        )
        return item

    async def claim_due(self) -> List[SyncQueueItem]:
        """Claim every unclaimed pending item whose next attempt is due."""
        async with self._lock:
            now = self.clock.now()
            due = [
                item
                for key, item in self._pending.items()
                if key not in self._claimed and item.next_attempt_at <= now
            ]
            self._claimed.update(item.key for item in due)
        return [item.model_copy() for item in due]

    async def mark_succeeded(self, key: QueueKey) -> None:
        async with self._lock:
            self._claimed.discard(key)
            self._pending.pop(key, None)

    async def mark_failed(self, key: QueueKey, error: str) -> Optional[SyncQueueItem]:
        """Record a failed retry.

        Returns:
            The item if it ran past the retry ceiling and moved to ``failed``,
            None if it was rescheduled
        """
        async with self._lock:
            self._claimed.discard(key)
            item = self._pending.get(key)
            if item is None:
                return None

            item.last_error = error
            new_count = item.retry_count + 1
            if new_count > self.max_retries:
                del self._pending[key]
                self._failed[key] = item
                LOGGER.warning(
                    f"Retries exhausted for {key[0]} on {key[1]}",
                    extra={"retry_count": item.retry_count, "last_error": error},
                )
                return item

            item.retry_count = new_count
            item.next_attempt_at = self.clock.now() + timedelta(
                seconds=self.backoff_delay(new_count)
            )
            return None

    async def requeue_failed(
        self,
        document_id: Optional[str] = None,
        backend_name: Optional[str] = None,
    ) -> int:
        """Move matching failed items back to pending with a reset retry count."""
        async with self._lock:
            now = self.clock.now()
            keys = [
                key
                for key in self._failed
                if (document_id is None or key[0] == document_id)
                and (backend_name is None or key[1] == backend_name)
            ]
            for key in keys:
                item = self._failed.pop(key)
                item.retry_count = 0
                item.next_attempt_at = now
                self._pending[key] = item
        return len(keys)

    async def remove_document(self, document_id: str) -> int:
        async with self._lock:
            keys = [k for k in list(self._pending) + list(self._failed) if k[0] == document_id]
            for key in keys:
                self._pending.pop(key, None)
                self._failed.pop(key, None)
                self._claimed.discard(key)
        return len(keys)

    async def references(self, payload_ref: str) -> bool:
        async with self._lock:
            return any(
                item.payload_ref == payload_ref
                for item in list(self._pending.values()) + list(self._failed.values())
            )

    def get(self, document_id: str, backend_name: str) -> Optional[SyncQueueItem]:
        key = (document_id, backend_name)
        return self._pending.get(key) or self._failed.get(key)

    def pending_backends(self, document_id: str) -> List[str]:
        return [key[1] for key in self._pending if key[0] == document_id]

    def status(self) -> SyncQueueStatus:
        return SyncQueueStatus(pending=len(self._pending), failed=len(self._failed))

    def failed_items(self) -> List[SyncQueueItem]:
        return [item.model_copy() for item in self._failed.values()]

    def snapshot(self) -> Tuple[List[SyncQueueItem], List[SyncQueueItem]]:
        return (
            [item.model_copy() for item in self._pending.values()],
            [item.model_copy() for item in self._failed.values()],
        )

    async def restore(self, pending: List[SyncQueueItem], failed: List[SyncQueueItem]) -> None:
        async with self._lock:
            self._pending = {item.key: item for item in pending}
            self._failed = {item.key: item for item in failed if item.key not in self._pending}
            self._claimed.clear()

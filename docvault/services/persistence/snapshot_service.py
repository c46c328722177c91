"""Periodic persistence of the sync queue, document registry and vault state."""

import asyncio
from typing import Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docvault.core.exceptions import DatabaseError
from docvault.repositories.document_registry_repository import DocumentRegistryRepository
from docvault.repositories.lock_record_repository import LockRecordRepository, VaultActivityRepository
from docvault.repositories.sync_queue_repository import SyncQueueRepository
from docvault.services.storage.document_registry import DocumentRegistry
from docvault.services.storage.sync_queue import SyncQueue
from docvault.services.vault.state_store import VaultStateStore
from docvault.utils.clock import Clock, SystemClock
from docvault.utils.logging import get_logger

LOGGER = get_logger(__name__)


class StateSnapshotService:
    """Saves in-memory queue, registry and vault state to the database and loads it back.

    The sync queue and the document registry are stored as full snapshots,
    lock records are upserted by version and activity entries are appended
    past the last stored sequence.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        sync_queue: SyncQueue,
        vault_store: VaultStateStore,
        registry: Optional[DocumentRegistry] = None,
        clock: Optional[Clock] = None,
        interval_seconds: float = 60.0,
    ):
        self.session_maker = session_maker
        self.sync_queue = sync_queue
        self.vault_store = vault_store
        self.registry = registry if registry is not None else DocumentRegistry()
        self.clock = clock or SystemClock()
        self.interval_seconds = interval_seconds
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    async def save(self) -> Dict[str, int]:
        """Write the current state.

        Returns:
            Rows written per table
        """
        pending, failed = self.sync_queue.snapshot()
        async with self.session_maker() as session:
            queue_rows = await SyncQueueRepository(session).replace_snapshot(pending, failed)
            document_rows = await DocumentRegistryRepository(session).replace_snapshot(
                self.registry.entries()
            )
            lock_rows = await LockRecordRepository(session).upsert_records(self.vault_store.records())
            activity_rows = await VaultActivityRepository(session).append(self.vault_store.activity())

        counts = {
            "sync_queue": queue_rows,
            "documents": document_rows,
            "lock_records": lock_rows,
            "activity": activity_rows,
        }
        LOGGER.debug("State snapshot saved", extra=counts)
        return counts

    async def restore(self) -> Dict[str, int]:
        """Load persisted state into the in-memory stores."""
        async with self.session_maker() as session:
            pending, failed = await SyncQueueRepository(session).load_snapshot()
            entries = await DocumentRegistryRepository(session).load_snapshot()
            records = await LockRecordRepository(session).load_records()
            activity = await VaultActivityRepository(session).load_entries()

        await self.sync_queue.restore(pending, failed)
        self.registry.restore(entries)
        self.vault_store.restore(records, activity)

        counts = {
            "pending": len(pending),
            "failed": len(failed),
            "documents": len(entries),
            "lock_records": len(records),
            "activity": len(activity),
        }
        LOGGER.info("State restored from database", extra=counts)
        return counts

    async def run_periodic(self) -> None:
        """Save every ``interval_seconds`` until ``stop`` is called."""
        self._stop_event.clear()
        while not self._stop_event.is_set():
            sleeper = asyncio.ensure_future(self.clock.sleep(self.interval_seconds))
            stopper = asyncio.ensure_future(self._stop_event.wait())
            try:
                await asyncio.wait({sleeper, stopper}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                for task in (sleeper, stopper):
                    if not task.done():
                        task.cancel()
            if self._stop_event.is_set():
                break
            try:
                await self.save()
            except DatabaseError as e:
                LOGGER.error(f"Periodic snapshot failed: {str(e)}", exc_info=True)

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run_periodic())
        return self._task

    async def stop(self) -> None:
        """Stop the periodic loop and take a final snapshot."""
        self._stop_event.set()
        if self._task is not None:
            await self._task
            self._task = None
        await self.save()

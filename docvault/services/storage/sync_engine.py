"""Storage sync engine: lands each upload on every configured backend."""

import asyncio
import hashlib
import secrets
from datetime import datetime
from typing import Any, Dict, List, Optional, Set, Tuple

from docvault.core.base_service import BaseService
from docvault.core.exceptions import (
    AppError,
    BackendNotFoundError,
    BackendWriteError,
    RetryExhaustedError,
    StorageError,
    ValidationError,
)
from docvault.schemas.documents import (
    BackendRef,
    Document,
    UploadFile,
    UploadOptions,
    UploadResult,
)
from docvault.schemas.events import PubSubEventType
from docvault.schemas.sync import SyncQueueItem, SyncQueueStatus
from docvault.services.events.event_bus import EventBus
from docvault.services.storage.base_adapter import BackendAdapter, BackendStatus
from docvault.services.storage.document_registry import DocumentRegistry
from docvault.services.storage.payload_spool import PayloadSpool
from docvault.services.storage.sync_queue import SyncQueue
from docvault.services.storage.validation import (
    FileValidator,
    categorize,
    resolve_mime_type,
    suggest_tags,
)
from docvault.utils.clock import Clock, SystemClock
from docvault.utils.logging import get_logger

LOGGER = get_logger(__name__)

SOURCE_COMPONENT = "storage_sync_engine"


def generate_document_id(file_name: str, now: datetime) -> str:
    """``doc_<timestamp ms>_<name hash>_<random>``, unique for same-named concurrent uploads."""
    name_hash = hashlib.sha1(file_name.encode("utf-8")).hexdigest()[:10]
    return f"doc_{int(now.timestamp() * 1000)}_{name_hash}_{secrets.token_hex(4)}"


class StorageSyncEngine(BaseService):
    """Uploads files to every backend and retries the ones that failed.

    A file is usable as soon as one backend holds it. Failed writes go to the
    sync queue and are replayed from the payload spool by the drain loop.
    Backend errors never propagate to the upload caller; they show up in
    ``UploadResult.errors``, the queue status and ``sync_failed`` events.
    """

    def __init__(
        self,
        adapters: List[BackendAdapter],
        queue: SyncQueue,
        spool: PayloadSpool,
        event_bus: Optional[EventBus] = None,
        registry: Optional[DocumentRegistry] = None,
        validator: Optional[FileValidator] = None,
        clock: Optional[Clock] = None,
        write_timeout: float = 300.0,
        max_concurrency: int = 3,
        batch_max_concurrency: int = 3,
        poll_interval: float = 1.0,
    ):
        super().__init__()
        if not adapters:
            raise ValueError("At least one backend adapter is required")
        self.adapters = adapters
        self._adapters_by_name = {adapter.name: adapter for adapter in adapters}
        self.queue = queue
        self.spool = spool
        self.event_bus = event_bus
        self.registry = registry or DocumentRegistry()
        self.validator = validator or FileValidator()
        self.clock = clock or SystemClock()
        self.write_timeout = write_timeout
        self.max_concurrency = max_concurrency
        self.batch_max_concurrency = batch_max_concurrency
        self.poll_interval = poll_interval
        self._stop_event = asyncio.Event()
        self._drain_task: Optional[asyncio.Task] = None
        # Payload refs whose upload call has not returned yet
        self._uploads_in_flight: Set[str] = set()

    # ------------------------------------------------------------------
    # Upload
    # ------------------------------------------------------------------

    async def upload(self, file: UploadFile, options: Optional[UploadOptions] = None) -> UploadResult:
        """Upload one file to every backend.

        Args:
            file: File name, bytes and optional MIME type
            options: Transaction/agent scope, metadata, progress and cancellation

        Returns:
            UploadResult with ``success`` true when any backend stored the file

        Raises:
            ValidationError: If the file type or size is not allowed. Nothing
                is written or queued in that case.
        """
        return await self.execute(file, options or UploadOptions())

    def validate(self, file: UploadFile, options: UploadOptions):
        self.validator.validate(file, options.role)

    async def run(self, file: UploadFile, options: UploadOptions) -> UploadResult:
        now = self.clock.now()
        document = Document(
            id=generate_document_id(file.name, now),
            name=file.name,
            byte_size=file.byte_size,
            mime_type=resolve_mime_type(file),
            created_at=now,
            last_modified_at=now,
            owner_id=options.owner_id,
            category=options.category or categorize(file.name),
            tags=set(options.tags) | set(suggest_tags(file.name)),
            transaction_id=options.transaction_id,
            checksum=hashlib.sha256(file.content).hexdigest(),
        )
        payload_ref = await self.spool.store(
            document, file.content, options.metadata, options.event_target
        )
        self._uploads_in_flight.add(payload_ref)
        try:
            return await self._write_all(document, file, options, payload_ref)
        finally:
            self._uploads_in_flight.discard(payload_ref)
            await self._release_payload(payload_ref)

    async def _write_all(
        self,
        document: Document,
        file: UploadFile,
        options: UploadOptions,
        payload_ref: str,
    ) -> UploadResult:
        target = options.event_target
        total = len(self.adapters)
        completed = 0

        def report_progress() -> None:
            if options.progress_sink is not None:
                options.progress_sink(completed * 100.0 / total)

        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def write(adapter: BackendAdapter) -> Tuple[str, Optional[BackendRef], Optional[str]]:
            nonlocal completed
            async with semaphore:
                if options.is_cancelled:
                    return adapter.name, None, None
                ref, error = await self._put(adapter, document, file.content, options.metadata)
            if ref is not None:
                await self._record_success(
                    document, ref, options.metadata, target, PubSubEventType.FILE_UPLOADED
                )
            else:
                await self.queue.enqueue(document.id, adapter.name, payload_ref, error)
            completed += 1
            report_progress()
            return adapter.name, ref, error

        report_progress()
        outcomes = await asyncio.gather(*(write(adapter) for adapter in self.adapters))

        backend_refs = [ref for _, ref, _ in outcomes if ref is not None]
        errors = {name: error for name, ref, error in outcomes if ref is None and error is not None}
        skipped = [name for name, ref, error in outcomes if ref is None and error is None]

        result = UploadResult(
            success=bool(backend_refs),
            document_id=document.id,
            backend_refs=backend_refs,
            pending_backends=self.queue.pending_backends(document.id),
            cancelled=bool(skipped),
            errors=errors,
            file_name=file.name,
        )

        if result.success:
            LOGGER.info(
                f"Uploaded {file.name} as {document.id}",
                extra={
                    "document_id": document.id,
                    "backends": [ref.backend_name for ref in backend_refs],
                    "pending_backends": result.pending_backends,
                },
            )
        else:
            LOGGER.warning(
                f"No backend accepted {file.name}",
                extra={"document_id": document.id, "errors": errors, "cancelled": result.cancelled},
            )
            await self._emit(
                PubSubEventType.UPLOAD_FAILED,
                {"document_id": document.id, "file_name": file.name, "errors": errors},
                target,
            )
        return result

    async def batch_upload(
        self,
        files: List[UploadFile],
        options: Optional[UploadOptions] = None,
    ) -> List[UploadResult]:
        """Upload several files, at most ``batch_max_concurrency`` at a time.

        Overall progress is the mean of per-file progress, weighted by file
        count rather than bytes. A file that fails validation yields a failed
        result and the rest of the batch continues.
        """
        options = options or UploadOptions()
        if not files:
            return []

        progress = [0.0] * len(files)
        semaphore = asyncio.Semaphore(self.batch_max_concurrency)

        def file_sink(index: int):
            def sink(percent: float) -> None:
                progress[index] = percent
                if options.progress_sink is not None:
                    options.progress_sink(sum(progress) / len(progress))
            return sink

        async def upload_one(index: int, file: UploadFile) -> UploadResult:
            async with semaphore:
                file_options = options.model_copy(update={"progress_sink": file_sink(index)})
                try:
                    return await self.upload(file, file_options)
                except ValidationError as e:
                    LOGGER.warning(f"Skipping invalid file in batch: {str(e)}")
                    return UploadResult(
                        success=False,
                        document_id="",
                        errors={"validation": str(e)},
                        file_name=file.name,
                    )

        return list(await asyncio.gather(*(upload_one(i, f) for i, f in enumerate(files))))

    async def _put(
        self,
        adapter: BackendAdapter,
        document: Document,
        content: bytes,
        metadata: Dict[str, Any],
    ) -> Tuple[Optional[BackendRef], Optional[str]]:
        """Write to one backend. Every failure, timeouts included, comes back as an error string."""
        try:
            result = await asyncio.wait_for(
                adapter.put(document, content, metadata), timeout=self.write_timeout
            )
        except asyncio.TimeoutError:
            error = BackendWriteError(
                f"Write timed out after {self.write_timeout}s", adapter.name
            )
            LOGGER.warning(str(error), extra={"document_id": document.id, "backend": adapter.name})
            return None, str(error)
        except AppError as e:
            LOGGER.warning(
                f"Backend {adapter.name} failed for {document.id}: {str(e)}",
                extra={"document_id": document.id, "backend": adapter.name},
            )
            return None, str(e)
        except Exception as e:
            LOGGER.error(
                f"Unexpected error from backend {adapter.name}: {str(e)}",
                exc_info=True,
                extra={"document_id": document.id, "backend": adapter.name},
            )
            return None, str(e)

        return (
            BackendRef(
                backend_name=adapter.name,
                external_key=result.external_key,
                url=result.url,
                confirmed_at=self.clock.now(),
            ),
            None,
        )

    async def _record_success(
        self,
        document: Document,
        ref: BackendRef,
        metadata: Dict[str, Any],
        target: Optional[str],
        event_type: PubSubEventType,
    ) -> None:
        if self.registry.record_ref(document, ref):
            LOGGER.debug(f"Registered document {document.id}")
        await self._emit(
            event_type,
            {
                "document_id": document.id,
                "backend_name": ref.backend_name,
                "external_key": ref.external_key,
                "metadata": metadata,
            },
            target,
        )

    async def _emit(self, event_type: PubSubEventType, payload: Dict[str, Any], target: Optional[str]) -> None:
        if self.event_bus is not None:
            await self.event_bus.emit(event_type, payload, SOURCE_COMPONENT, target)

    # ------------------------------------------------------------------
    # Retry drain
    # ------------------------------------------------------------------

    async def drain_once(self) -> int:
        """Retry every due queue item once.

        Returns:
            Number of items attempted
        """
        items = await self.queue.claim_due()
        if not items:
            return 0

        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def retry(item: SyncQueueItem) -> None:
            async with semaphore:
                await self._retry_item(item)

        await asyncio.gather(*(retry(item) for item in items))
        return len(items)

    async def _retry_item(self, item: SyncQueueItem) -> None:
        adapter = self._adapters_by_name.get(item.backend_name)
        try:
            payload = await self.spool.load(item.payload_ref)
        except StorageError as e:
            await self._handle_retry_failure(item, str(e), None)
            return

        if adapter is None:
            await self._handle_retry_failure(
                item, f"Backend {item.backend_name} is not configured", payload.target
            )
            return

        ref, error = await self._put(adapter, payload.document, payload.content, payload.metadata)
        if ref is None:
            await self._handle_retry_failure(item, error, payload.target)
            return

        await self.queue.mark_succeeded(item.key)
        await self._record_success(
            payload.document, ref, payload.metadata, payload.target, PubSubEventType.DOCUMENT_SYNCED
        )
        LOGGER.info(
            f"Synced {item.document_id} to {item.backend_name}",
            extra={"retry_count": item.retry_count},
        )
        await self._release_payload(item.payload_ref)

    async def _release_payload(self, payload_ref: str) -> None:
        """Drop a spooled payload once no upload or queue item can still need it."""
        if payload_ref in self._uploads_in_flight:
            return
        if not await self.queue.references(payload_ref):
            await self.spool.release(payload_ref)

    async def _handle_retry_failure(self, item: SyncQueueItem, error: str, target: Optional[str]) -> None:
        exhausted = await self.queue.mark_failed(item.key, error)
        if exhausted is None:
            return

        failure = RetryExhaustedError(
            f"Gave up syncing {item.document_id} to {item.backend_name}"
            f" after {exhausted.retry_count + 1} retries",
            item.document_id,
            item.backend_name,
        )
        LOGGER.error(str(failure), extra={"last_error": error})
        await self._emit(
            PubSubEventType.SYNC_FAILED,
            {
                "document_id": item.document_id,
                "backend_name": item.backend_name,
                "retry_count": exhausted.retry_count,
                "error": str(failure),
                "last_error": error,
            },
            target,
        )

    async def run_drain_loop(self) -> None:
        """Drain the queue every ``poll_interval`` seconds until ``stop`` is called.

        A tick in progress always completes before the loop exits.
        """
        self._stop_event.clear()
        LOGGER.info("Sync drain loop started", extra={"poll_interval": self.poll_interval})
        while not self._stop_event.is_set():
            try:
                await self.drain_once()
            except AppError as e:
                LOGGER.error(f"Drain tick failed: {str(e)}", exc_info=True)
            await self._sleep_until_next_tick()
        LOGGER.info("Sync drain loop stopped")

    async def _sleep_until_next_tick(self) -> None:
        sleeper = asyncio.ensure_future(self.clock.sleep(self.poll_interval))
        stopper = asyncio.ensure_future(self._stop_event.wait())
        try:
            await asyncio.wait({sleeper, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (sleeper, stopper):
                if not task.done():
                    task.cancel()

    def start(self) -> asyncio.Task:
        if self._drain_task is None or self._drain_task.done():
            self._drain_task = asyncio.create_task(self.run_drain_loop())
        return self._drain_task

    async def stop(self) -> None:
        """Let the current tick finish, then stop the drain loop."""
        self._stop_event.set()
        if self._drain_task is not None:
            await self._drain_task
            self._drain_task = None

    # ------------------------------------------------------------------
    # Queries and maintenance
    # ------------------------------------------------------------------

    def get_sync_queue_status(self) -> SyncQueueStatus:
        return self.queue.status()

    def get_failed_items(self) -> List[SyncQueueItem]:
        return self.queue.failed_items()

    async def requeue_failed(
        self,
        document_id: Optional[str] = None,
        backend_name: Optional[str] = None,
    ) -> int:
        count = await self.queue.requeue_failed(document_id, backend_name)
        LOGGER.info(f"Requeued {count} failed sync items")
        return count

    def get_document(self, document_id: str) -> Optional[Document]:
        return self.registry.get(document_id)

    def get_backend_refs(self, document_id: str) -> List[BackendRef]:
        return self.registry.refs(document_id)

    def list_documents(self, transaction_id: Optional[str] = None) -> List[Document]:
        return self.registry.list(transaction_id)

    async def download(self, document_id: str) -> bytes:
        """Read document bytes from the first backend, in configured order, that has them.

        Raises:
            BackendNotFoundError: If no backend can return the content
        """
        if document_id not in self.registry:
            raise BackendNotFoundError(f"Unknown document: {document_id}")

        for adapter in self.adapters:
            ref = self.registry.ref_for(document_id, adapter.name)
            if ref is None:
                continue
            try:
                stored = await adapter.get(ref.external_key)
            except StorageError as e:
                LOGGER.warning(f"Read from {adapter.name} failed: {str(e)}")
                continue
            if stored.content is not None:
                return stored.content

        raise BackendNotFoundError(f"No backend holds content for {document_id}")

    async def delete(self, document_id: str) -> List[str]:
        """Delete a document from every backend holding it.

        Returns:
            Names of the backends the document was removed from

        Raises:
            BackendNotFoundError: If the document is unknown
        """
        document = self.registry.get(document_id)
        if document is None:
            raise BackendNotFoundError(f"Unknown document: {document_id}")

        deleted = []
        for ref in self.registry.refs(document_id):
            adapter = self._adapters_by_name.get(ref.backend_name)
            if adapter is None:
                continue
            try:
                if await adapter.delete(ref.external_key):
                    deleted.append(ref.backend_name)
            except StorageError as e:
                LOGGER.error(
                    f"Delete from {ref.backend_name} failed: {str(e)}",
                    exc_info=True,
                    extra={"document_id": document_id},
                )

        await self.queue.remove_document(document_id)
        await self.spool.release(document_id)
        self.registry.remove(document_id)
        await self._emit(
            PubSubEventType.FILE_DELETED,
            {"document_id": document_id, "backends": deleted},
            document.transaction_id,
        )
        return deleted

    async def get_backend_statuses(self) -> List[BackendStatus]:
        return list(await asyncio.gather(*(adapter.status() for adapter in self.adapters)))

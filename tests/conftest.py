"""Pytest configuration and shared fixtures."""

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import pytest
from tenacity import wait_none

from docvault.core.config import DatabaseSettings
from docvault.core.database import DatabaseClient, create_engine_from_settings, create_session_maker
from docvault.core.exceptions import BackendNotFoundError, BackendWriteError
from docvault.schemas.documents import Document, UploadFile
from docvault.services.events.event_bus import EventBus
from docvault.services.storage.base_adapter import (
    BackendAdapter,
    BackendStatus,
    PutResult,
    StoredObject,
    build_external_key,
)
from docvault.services.storage.payload_spool import PayloadSpool
from docvault.services.storage.sync_engine import StorageSyncEngine
from docvault.services.storage.sync_queue import SyncQueue
from docvault.services.vault.vault_engine import VaultEngine
from docvault.utils.clock import ManualClock


class FakeAdapter(BackendAdapter):
    """In-memory backend that can fail a set number of times or block until released."""

    def __init__(
        self,
        name: str,
        clock: ManualClock,
        fail_times: int = 0,
        always_fail: bool = False,
        gate: Optional[asyncio.Event] = None,
    ):
        self.name = name
        self.clock = clock
        self.fail_times = fail_times
        self.always_fail = always_fail
        self.gate = gate
        self.call_times: List[datetime] = []
        self.objects: Dict[str, Dict[str, Any]] = {}

    async def put(self, document: Document, content: bytes, metadata=None) -> PutResult:
        self.call_times.append(self.clock.now())
        if self.gate is not None:
            await self.gate.wait()
        if self.always_fail or self.fail_times > 0:
            self.fail_times = max(0, self.fail_times - 1)
            raise BackendWriteError(f"{self.name} unavailable", self.name)
        key = build_external_key(document)
        self.objects[key] = {"content": content, "metadata": metadata or {}}
        return PutResult(external_key=key, url=f"fake://{self.name}/{key}")

    async def get(self, external_key: str) -> StoredObject:
        if external_key not in self.objects:
            raise BackendNotFoundError(external_key)
        entry = self.objects[external_key]
        return StoredObject(external_key=external_key, content=entry["content"], metadata=entry["metadata"])

    async def delete(self, external_key: str) -> bool:
        return self.objects.pop(external_key, None) is not None

    async def status(self) -> BackendStatus:
        return BackendStatus(backend_name=self.name, healthy=not self.always_fail)


@pytest.fixture
def clock() -> ManualClock:
    """Virtual clock starting at 2024-01-01 UTC."""
    return ManualClock(datetime(2024, 1, 1, tzinfo=timezone.utc))


@pytest.fixture
def make_adapter(clock):
    """Factory for fake backends bound to the test clock."""

    def factory(name: str, **kwargs) -> FakeAdapter:
        return FakeAdapter(name, clock, **kwargs)

    return factory


@pytest.fixture
def event_bus(clock) -> EventBus:
    return EventBus(clock=clock)


@pytest.fixture
def recorded_events(event_bus):
    """Every event published on the bus, in delivery order."""
    events = []
    event_bus.on_event("*", events.append)
    return events


@pytest.fixture
def make_engine(tmp_path, clock, event_bus):
    """Factory for a sync engine over the given adapters."""

    def factory(adapters: List[BackendAdapter], **kwargs) -> StorageSyncEngine:
        queue = SyncQueue(clock=clock, max_retries=3, base_delay_seconds=1.0)
        return StorageSyncEngine(
            adapters=adapters,
            queue=queue,
            spool=PayloadSpool(str(tmp_path / "spool")),
            event_bus=event_bus,
            clock=clock,
            **kwargs,
        )

    return factory


@pytest.fixture
def pdf_file() -> UploadFile:
    """A 2MB PDF."""
    return UploadFile(
        name="loan_agreement_2024.pdf",
        content=b"%PDF-1.7\n" + b"0" * (2 * 1024 * 1024 - 9),
        mime_type="application/pdf",
    )


@pytest.fixture
async def session_maker():
    """Session factory over a fresh in-memory SQLite database with all tables."""
    engine = create_engine_from_settings(
        DatabaseSettings(DATABASE_URL="sqlite+aiosqlite:///:memory:")
    )
    await DatabaseClient(engine).create_tables()
    yield create_session_maker(engine)
    await engine.dispose()


class FakeCatalog:
    """Document catalog backed by a dict, with raw bytes for download."""

    def __init__(self, clock: ManualClock):
        self.clock = clock
        self.documents: Dict[str, Document] = {}
        self.contents: Dict[str, bytes] = {}

    def add(self, document_id: str, name: str, transaction_id: Optional[str] = "tx-1", content: bytes = b"data") -> Document:
        now = self.clock.now()
        document = Document(
            id=document_id,
            name=name,
            byte_size=len(content),
            mime_type="application/pdf",
            created_at=now,
            last_modified_at=now,
            transaction_id=transaction_id,
            checksum="0" * 64,
        )
        self.documents[document_id] = document
        self.contents[document_id] = content
        return document

    def get_document(self, document_id: str) -> Optional[Document]:
        return self.documents.get(document_id)

    def list_documents(self, transaction_id: Optional[str] = None) -> List[Document]:
        return [
            d for d in self.documents.values()
            if transaction_id is None or d.transaction_id == transaction_id
        ]

    async def download(self, document_id: str) -> bytes:
        return self.contents[document_id]


@pytest.fixture
def catalog(clock) -> FakeCatalog:
    return FakeCatalog(clock)


@pytest.fixture
def make_vault(catalog, clock, event_bus):
    """Factory for a vault engine over the fake catalog."""

    def factory(**kwargs) -> VaultEngine:
        kwargs.setdefault("verification_wait", wait_none())
        return VaultEngine(catalog=catalog, event_bus=event_bus, clock=clock, **kwargs)

    return factory

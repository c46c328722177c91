"""Secondary backend: document metadata/index rows in the database."""

from typing import Any, Dict, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.exc import SQLAlchemyError

from docvault.core.exceptions import AppError, BackendNotFoundError, BackendWriteError
from docvault.database.models import DocumentMetadataRecord
from docvault.repositories.document_metadata_repository import DocumentMetadataRepository
from docvault.schemas.documents import Document
from docvault.services.storage.base_adapter import (
    BackendAdapter,
    BackendStatus,
    PutResult,
    StoredObject,
    build_external_key,
)
from docvault.utils.logging import get_logger

LOGGER = get_logger(__name__)


class MetadataStoreAdapter(BackendAdapter):
    """Indexes documents by id. Holds metadata only, never content."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        name: str = "secondary",
    ):
        self.name = name
        self.session_maker = session_maker

    async def put(
        self,
        document: Document,
        content: bytes,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> PutResult:
        external_key = build_external_key(document)
        try:
            async with self.session_maker() as session:
                repo = DocumentMetadataRepository(session)
                await repo.upsert_document(document, external_key, metadata)
        except AppError as e:
            raise BackendWriteError(
                f"Metadata write failed: {str(e)}", self.name, original_error=e
            ) from e
        except (SQLAlchemyError, OSError) as e:
            LOGGER.error(
                f"Metadata store unavailable: {str(e)}",
                exc_info=True,
                extra={"document_id": document.id},
            )
            raise BackendWriteError(
                f"Metadata store unavailable: {str(e)}", self.name, original_error=e
            ) from e

        return PutResult(external_key=external_key)

    async def get(self, external_key: str) -> StoredObject:
        document_id = self._document_id(external_key)
        async with self.session_maker() as session:
            record = await DocumentMetadataRepository(session).get_by_id(document_id)

        if record is None:
            raise BackendNotFoundError(f"No metadata for {external_key}")

        return StoredObject(external_key=record.external_key, metadata=self._to_dict(record))

    async def delete(self, external_key: str) -> bool:
        async with self.session_maker() as session:
            return await DocumentMetadataRepository(session).delete(self._document_id(external_key))

    async def status(self) -> BackendStatus:
        try:
            async with self.session_maker() as session:
                await session.execute(text("SELECT 1"))
        except (SQLAlchemyError, OSError) as e:
            return BackendStatus(backend_name=self.name, healthy=False, detail=str(e))
        return BackendStatus(backend_name=self.name, healthy=True)

    @staticmethod
    def _document_id(external_key: str) -> str:
        # Keys look like <scope>/<scope id>/<document id>/<file name>
        parts = external_key.split("/")
        return parts[-2] if len(parts) >= 2 else external_key

    @staticmethod
    def _to_dict(record: DocumentMetadataRecord) -> Dict[str, Any]:
        return {
            "document_id": record.id,
            "name": record.name,
            "byte_size": record.byte_size,
            "mime_type": record.mime_type,
            "checksum": record.checksum,
            "owner_id": record.owner_id,
            "transaction_id": record.transaction_id,
            "category": record.category,
            "tags": list(record.tags or []),
            "metadata": record.extra_metadata or {},
        }

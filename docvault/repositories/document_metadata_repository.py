from typing import Any, Dict, Optional
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import SQLAlchemyError

from docvault.core.exceptions import DatabaseError
from docvault.database.models import DocumentMetadataRecord
from docvault.repositories.base_repository import BaseRepository
from docvault.schemas.documents import Document
from docvault.utils.logging import get_logger

LOGGER = get_logger(__name__)


class DocumentMetadataRepository(BaseRepository[DocumentMetadataRecord]):
    """Repository for the secondary backend's document metadata rows."""

    def __init__(self, session: AsyncSession):
        super().__init__(session, DocumentMetadataRecord)

    async def upsert_document(
        self,
        document: Document,
        external_key: str,
        extra_metadata: Optional[Dict[str, Any]] = None,
    ) -> DocumentMetadataRecord:
        """Insert or overwrite the metadata row for a document.

        Writes are keyed by document id so a retried write lands on the same
        row instead of duplicating it.

        Args:
            document: Document to index
            external_key: Key the row is stored under
            extra_metadata: Caller supplied metadata

        Returns:
            The stored row
        """
        now = datetime.now(timezone.utc)
        try:
            record = await self.session.get(DocumentMetadataRecord, document.id)
            if record is None:
                record = DocumentMetadataRecord(id=document.id, created_at=document.created_at)
                self.session.add(record)

            record.name = document.name
            record.byte_size = document.byte_size
            record.mime_type = document.mime_type
            record.checksum = document.checksum
            record.owner_id = document.owner_id
            record.transaction_id = document.transaction_id
            record.category = document.category.value
            record.tags = sorted(document.tags)
            record.external_key = external_key
            record.extra_metadata = extra_metadata or {}
            record.updated_at = now

            await self.session.flush()
            await self.session.commit()
            return record
        except SQLAlchemyError as e:
            LOGGER.error(
                f"Failed to upsert metadata for document {document.id}: {str(e)}",
                exc_info=True,
            )
            await self.session.rollback()
            raise DatabaseError("Failed to store document metadata", original_error=e) from e

from typing import Iterable, List, Tuple

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import SQLAlchemyError

from docvault.core.exceptions import DatabaseError
from docvault.database.models import RegisteredDocumentRecord
from docvault.repositories.base_repository import BaseRepository
from docvault.schemas.documents import BackendRef, Document
from docvault.utils.logging import get_logger

LOGGER = get_logger(__name__)

RegistryEntry = Tuple[Document, List[BackendRef]]


class DocumentRegistryRepository(BaseRepository[RegisteredDocumentRecord]):
    """Snapshot storage for the document registry."""

    def __init__(self, session: AsyncSession):
        super().__init__(session, RegisteredDocumentRecord)

    async def replace_snapshot(self, entries: Iterable[RegistryEntry]) -> int:
        """Replace the stored registry with the given documents and refs.

        Returns:
            Number of rows written
        """
        rows = [
            RegisteredDocumentRecord(
                id=document.id,
                transaction_id=document.transaction_id,
                document=document.model_dump(mode="json"),
                backend_refs=[ref.model_dump(mode="json") for ref in refs],
                created_at=document.created_at,
            )
            for document, refs in entries
        ]
        try:
            await self.session.execute(delete(RegisteredDocumentRecord))
            self.session.add_all(rows)
            await self.session.flush()
            await self.session.commit()
        except SQLAlchemyError as e:
            LOGGER.error(f"Failed to snapshot document registry: {str(e)}", exc_info=True)
            await self.session.rollback()
            raise DatabaseError("Failed to snapshot document registry", original_error=e) from e

        LOGGER.debug(f"Snapshot stored {len(rows)} registered documents")
        return len(rows)

    async def load_snapshot(self) -> List[RegistryEntry]:
        return [
            (
                Document.model_validate(row.document),
                [BackendRef.model_validate(ref) for ref in row.backend_refs or []],
            )
            for row in await self.get_all()
        ]

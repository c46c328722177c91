"""Uniform interface to one storage backend."""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from docvault.schemas.documents import Document


class StoredObject(BaseModel):
    """What a backend returns for a stored document.

    Index-only backends return ``content=None``.
    """

    external_key: str
    content: Optional[bytes] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class PutResult(BaseModel):
    external_key: str
    url: Optional[str] = None


class BackendStatus(BaseModel):
    backend_name: str
    healthy: bool
    detail: Optional[str] = None


def build_external_key(document: Document) -> str:
    """Deterministic object key, shared by all backends for one document."""
    scope = (
        f"transactions/{document.transaction_id}"
        if document.transaction_id
        else f"owners/{document.owner_id or 'unassigned'}"
    )
    safe_name = "".join(c if c.isalnum() or c in "._-" else "_" for c in document.name)
    return f"{scope}/{document.id}/{safe_name}"


class BackendAdapter(ABC):
    """Base class for storage backends.

    ``put`` must be idempotent for the same document: the sync queue may
    replay a write that partially succeeded. Implementations raise
    ``BackendWriteError`` for any failure of a write.
    """

    name: str = "backend"

    @abstractmethod
    async def put(
        self,
        document: Document,
        content: bytes,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> PutResult:
        """Store a document and return its external key."""

    @abstractmethod
    async def get(self, external_key: str) -> StoredObject:
        """Fetch a stored document by external key."""

    @abstractmethod
    async def delete(self, external_key: str) -> bool:
        """Delete a stored document. Returns False when it did not exist."""

    @abstractmethod
    async def status(self) -> BackendStatus:
        """Report backend health."""

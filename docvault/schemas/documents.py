"""Document, backend reference and upload schemas."""

import asyncio
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from pydantic import BaseModel, ConfigDict, Field


class DocumentCategory(str, Enum):
    LOAN = "loan"
    FINANCIAL = "financial"
    LEGAL = "legal"
    TAX = "tax"
    COMPLIANCE = "compliance"
    COLLATERAL = "collateral"
    OTHER = "other"


class UploadFile(BaseModel):
    """A file handed to the sync engine."""

    name: str = Field(..., min_length=1)
    content: bytes
    mime_type: Optional[str] = None

    @property
    def byte_size(self) -> int:
        return len(self.content)

    @property
    def extension(self) -> str:
        if "." not in self.name:
            return ""
        return self.name.rsplit(".", 1)[-1].lower()


class Document(BaseModel):
    """A stored document. Exists once at least one backend holds it."""

    id: str
    name: str
    byte_size: int = Field(..., ge=0)
    mime_type: str
    created_at: datetime
    last_modified_at: datetime
    owner_id: Optional[str] = None
    category: DocumentCategory = DocumentCategory.OTHER
    tags: Set[str] = Field(default_factory=set)
    transaction_id: Optional[str] = None
    checksum: str = Field(..., description="SHA-256 of the content")


class BackendRef(BaseModel):
    """Proof that a document was durably written to one backend."""

    backend_name: str
    external_key: str
    url: Optional[str] = None
    confirmed_at: Optional[datetime] = None


ProgressSink = Callable[[float], None]


class UploadOptions(BaseModel):
    """Per-call upload options.

    ``progress_sink`` receives a percentage in [0, 100]. Setting
    ``cancel_event`` stops backend writes that have not started yet.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    transaction_id: Optional[str] = None
    agent_id: Optional[str] = None
    owner_id: Optional[str] = None
    role: str = "borrower"
    category: Optional[DocumentCategory] = None
    tags: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    progress_sink: Optional[ProgressSink] = None
    cancel_event: Optional[asyncio.Event] = None

    @property
    def event_target(self) -> str:
        return self.transaction_id or self.agent_id or "global"

    @property
    def is_cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()


class UploadResult(BaseModel):
    """Outcome of one logical upload.

    ``success`` is true when any backend stored the file. Backends listed in
    ``pending_backends`` are queued for retry; callers should treat them as
    informational.
    """

    success: bool
    document_id: str
    backend_refs: List[BackendRef] = Field(default_factory=list)
    pending_backends: List[str] = Field(default_factory=list)
    cancelled: bool = False
    errors: Dict[str, str] = Field(default_factory=dict)
    file_name: Optional[str] = None

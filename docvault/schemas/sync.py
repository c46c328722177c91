from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class SyncQueueItem(BaseModel):
    """A backend write awaiting retry."""

    document_id: str
    backend_name: str
    payload_ref: str
    retry_count: int = Field(default=0, ge=0)
    next_attempt_at: datetime
    last_error: Optional[str] = None
    created_at: datetime

    @property
    def key(self) -> tuple[str, str]:
        return (self.document_id, self.backend_name)


class SyncQueueStatus(BaseModel):
    pending: int = 0
    failed: int = 0

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional
from uuid import uuid4

from pydantic import BaseModel, Field


class PubSubEventType(str, Enum):
    FILE_UPLOADED = "file_uploaded"
    FILE_DELETED = "file_deleted"
    DOCUMENT_SYNCED = "document_synced"
    SYNC_FAILED = "sync_failed"
    UPLOAD_FAILED = "upload_failed"
    DOCUMENT_LOCKED = "document_locked"
    DOCUMENT_UNLOCKED = "document_unlocked"
    RETENTION_APPLIED = "retention_applied"
    DOCUMENT_VERIFIED = "document_verified"


WILDCARD = "*"


def new_event_id() -> str:
    return f"evt-{uuid4().hex[:16]}"


class PubSubEvent(BaseModel):
    id: str = Field(default_factory=new_event_id)
    type: PubSubEventType
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    payload: Dict[str, Any] = Field(default_factory=dict)
    source_component: str
    target: Optional[str] = None

    @property
    def cache_key(self) -> str:
        """Cache key ``<type>:<target>``, ``global`` when untargeted."""
        return f"{self.type.value}:{self.target or 'global'}"

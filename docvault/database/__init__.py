"""Database module for SQLAlchemy models."""

from docvault.database.models import (
    DocumentMetadataRecord,
    LockRecordRow,
    SyncQueueRecord,
    VaultActivityRecord,
)

__all__ = [
    "DocumentMetadataRecord",
    "LockRecordRow",
    "SyncQueueRecord",
    "VaultActivityRecord",
]

"""Repository layer modules."""

from docvault.repositories.document_metadata_repository import DocumentMetadataRepository
from docvault.repositories.lock_record_repository import LockRecordRepository, VaultActivityRepository
from docvault.repositories.sync_queue_repository import SyncQueueRepository

__all__ = [
    "DocumentMetadataRepository",
    "LockRecordRepository",
    "SyncQueueRepository",
    "VaultActivityRepository",
]

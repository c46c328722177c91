from .documents import (
    BackendRef,
    Document,
    DocumentCategory,
    UploadFile,
    UploadOptions,
    UploadResult,
)
from .events import PubSubEvent, PubSubEventType, WILDCARD
from .sync import SyncQueueItem, SyncQueueStatus
from .vault import (
    ActivityEntry,
    ActivityType,
    Actor,
    BulkLockResult,
    LockRecord,
    LockState,
    RetentionPolicy,
    RetentionResult,
    VerificationStatus,
)

__all__ = [
    "ActivityEntry",
    "ActivityType",
    "Actor",
    "BackendRef",
    "BulkLockResult",
    "Document",
    "DocumentCategory",
    "LockRecord",
    "LockState",
    "PubSubEvent",
    "PubSubEventType",
    "RetentionPolicy",
    "RetentionResult",
    "SyncQueueItem",
    "SyncQueueStatus",
    "UploadFile",
    "UploadOptions",
    "UploadResult",
    "VerificationStatus",
    "WILDCARD",
]

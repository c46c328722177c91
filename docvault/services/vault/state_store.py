"""In-memory lock records and activity log for the vault."""

import threading
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from docvault.core.exceptions import ConcurrentModificationError
from docvault.schemas.vault import ActivityEntry, ActivityType, LockRecord


class VaultStateStore:
    """Lock records keyed by (transaction_id, document_id) plus an append-only log.

    Writes are compare-and-set on ``LockRecord.version``: a commit built from
    a stale read raises ``ConcurrentModificationError`` so the first writer
    wins. Records handed out are copies.
    """

    def __init__(self):
        self._records: Dict[Tuple[str, str], LockRecord] = {}
        self._by_document: Dict[str, Tuple[str, str]] = {}
        self._activity: List[ActivityEntry] = []
        self._sequence = 0
        self._lock = threading.Lock()

    def get(self, transaction_id: str, document_id: str) -> Optional[LockRecord]:
        with self._lock:
            record = self._records.get((transaction_id, document_id))
            return record.model_copy() if record else None

    def get_by_document(self, document_id: str) -> Optional[LockRecord]:
        with self._lock:
            key = self._by_document.get(document_id)
            return self._records[key].model_copy() if key else None

    def commit(
        self,
        record: LockRecord,
        expected_version: int,
        activity_type: Optional[ActivityType] = None,
        actor: str = "",
        timestamp: Optional[datetime] = None,
        details: str = "",
    ) -> LockRecord:
        """Store a new version of a record and log the activity atomically.

        Args:
            record: The record as it should be after the transition
            expected_version: Version the caller read before deciding the transition
            activity_type: Activity to append, if any
            timestamp: When the activity happened; required with activity_type

        Returns:
            The stored record with its version bumped

        Raises:
            ConcurrentModificationError: If another commit landed since the read
        """
        with self._lock:
            current = self._records.get(record.key)
            current_version = current.version if current else 0
            if current_version != expected_version:
                raise ConcurrentModificationError(
                    f"Document {record.document_id} was modified concurrently"
                    f" (expected version {expected_version}, found {current_version})"
                )

            stored = record.model_copy(update={"version": expected_version + 1})
            self._records[record.key] = stored
            self._by_document[record.document_id] = record.key

            if activity_type is not None:
                self._sequence += 1
                self._activity.append(
                    ActivityEntry(
                        sequence=self._sequence,
                        document_id=record.document_id,
                        transaction_id=record.transaction_id,
                        type=activity_type,
                        actor=actor,
                        timestamp=timestamp,
                        details=details,
                    )
                )
            return stored.model_copy()

    def activity(self, document_id: Optional[str] = None) -> List[ActivityEntry]:
        with self._lock:
            return [
                entry.model_copy()
                for entry in self._activity
                if document_id is None or entry.document_id == document_id
            ]

    def records(self, transaction_id: Optional[str] = None) -> List[LockRecord]:
        with self._lock:
            return [
                record.model_copy()
                for record in self._records.values()
                if transaction_id is None or record.transaction_id == transaction_id
            ]

    def restore(self, records: List[LockRecord], activity: List[ActivityEntry]) -> None:
        """Replace state with persisted records and activity."""
        with self._lock:
            self._records = {record.key: record for record in records}
            self._by_document = {record.document_id: record.key for record in records}
            self._activity = sorted(activity, key=lambda entry: entry.sequence)
            self._sequence = self._activity[-1].sequence if self._activity else 0

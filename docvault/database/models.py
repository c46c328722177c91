"""SQLAlchemy models for all database tables."""

from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Integer,
    String,
    Text,
    TIMESTAMP,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from docvault.core.database import Base


class DocumentMetadataRecord(Base):
    """Document metadata held by the secondary (index) backend."""

    __tablename__ = "document_metadata"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    byte_size: Mapped[int] = mapped_column(Integer, nullable=False)
    mime_type: Mapped[str] = mapped_column(String, nullable=False)
    checksum: Mapped[str] = mapped_column(String(64), nullable=False)
    owner_id: Mapped[str | None] = mapped_column(String, nullable=True)
    transaction_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    category: Mapped[str] = mapped_column(String, nullable=False, default="other")
    tags: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    external_key: Mapped[str] = mapped_column(String, nullable=False)
    extra_metadata: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)


class SyncQueueRecord(Base):
    """Snapshot row of a pending or failed sync queue item."""

    __tablename__ = "sync_queue_items"

    # Composite key mirrors the one-item-per-(document, backend) rule
    document_id: Mapped[str] = mapped_column(String, primary_key=True)
    backend_name: Mapped[str] = mapped_column(String, primary_key=True)
    payload_ref: Mapped[str] = mapped_column(String, nullable=False)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_attempt_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(
        String, nullable=False, default="pending"
    )  # pending | failed
    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)


class LockRecordRow(Base):
    """Persisted lock/retention status; never deleted."""

    __tablename__ = "lock_records"

    transaction_id: Mapped[str] = mapped_column(String, primary_key=True)
    document_id: Mapped[str] = mapped_column(String, primary_key=True)
    is_locked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    locked_by: Mapped[str | None] = mapped_column(String, nullable=True)
    locked_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    can_be_unlocked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    unlocked_after_funding: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    retention_policy_applied: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    retention_end_date: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    verification_status: Mapped[str] = mapped_column(
        String, nullable=False, default="pending"
    )  # pending | verified | rejected
    verification_proof: Mapped[str | None] = mapped_column(Text, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class VaultActivityRecord(Base):
    """Append-only vault activity log."""

    __tablename__ = "vault_activity"
    __table_args__ = (UniqueConstraint("sequence", name="uq_vault_activity_sequence"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    document_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    transaction_id: Mapped[str] = mapped_column(String, nullable=False)
    activity_type: Mapped[str] = mapped_column(String, nullable=False)
    actor: Mapped[str] = mapped_column(String, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)
    details: Mapped[str] = mapped_column(Text, nullable=False, default="")


class RegisteredDocumentRecord(Base):
    """Snapshot row of a registered document and its confirmed backend refs."""

    __tablename__ = "registered_documents"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    transaction_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    document: Mapped[dict] = mapped_column(JSON, nullable=False)
    backend_refs: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)

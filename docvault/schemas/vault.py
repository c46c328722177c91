"""Vault lock, retention and activity schemas."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator


SYSTEM_COMPLIANCE_ACTOR = "System (Compliance)"


class VerificationStatus(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"


class LockState(str, Enum):
    UNLOCKED = "unlocked"
    LOCKED_MANUAL = "locked_manual"
    LOCKED_RETENTION = "locked_retention"


class Actor(BaseModel):
    """Who is issuing a vault command."""

    model_config = ConfigDict(frozen=True)

    id: str
    role: str = "borrower"


class LockRecord(BaseModel):
    """Lock/retention status of one document within one transaction."""

    document_id: str
    transaction_id: str
    is_locked: bool = False
    locked_by: Optional[str] = None
    locked_at: Optional[datetime] = None
    can_be_unlocked: bool = True
    unlocked_after_funding: bool = False
    retention_policy_applied: bool = False
    retention_end_date: Optional[datetime] = None
    verification_status: VerificationStatus = VerificationStatus.PENDING
    verification_proof: Optional[str] = None
    version: int = 0

    @property
    def key(self) -> Tuple[str, str]:
        return (self.transaction_id, self.document_id)

    @property
    def state(self) -> LockState:
        if not self.is_locked:
            return LockState.UNLOCKED
        if self.retention_end_date is not None:
            return LockState.LOCKED_RETENTION
        return LockState.LOCKED_MANUAL


class RetentionPolicy(BaseModel):
    """Role and context specific retention rule."""

    model_config = ConfigDict(frozen=True)

    role: str
    retention_period_days: int = Field(..., gt=0)
    required_document_name_patterns: Tuple[str, ...] = ()
    collateral_types: Optional[Tuple[str, ...]] = None
    request_types: Optional[Tuple[str, ...]] = None
    instrument_types: Optional[Tuple[str, ...]] = None
    compliance_notes: Optional[str] = None

    @field_validator("required_document_name_patterns", mode="before")
    @classmethod
    def validate_patterns(cls, v: Any) -> Any:
        if v is None:
            return ()
        return v

    def requires(self, document_name: str) -> bool:
        """Whether a document name falls under this policy's retention."""
        lowered = document_name.lower()
        return any(p.lower() in lowered for p in self.required_document_name_patterns)


class ActivityType(str, Enum):
    DOCUMENT_LOCKED = "document_locked"
    DOCUMENT_UNLOCKED = "document_unlocked"
    RETENTION_APPLIED = "retention_applied"
    UNLOCKED_AFTER_FUNDING = "unlocked_after_funding"
    DOCUMENT_VERIFIED = "document_verified"
    VERIFICATION_REJECTED = "verification_rejected"


class ActivityEntry(BaseModel):
    """Append-only vault activity log entry."""

    sequence: int = 0
    document_id: str
    transaction_id: str
    type: ActivityType
    actor: str
    timestamp: datetime
    details: str = ""


class RetentionResult(BaseModel):
    retained: List[str] = Field(default_factory=list)
    released: List[str] = Field(default_factory=list)
    skipped: List[str] = Field(default_factory=list)


class BulkLockResult(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    locked: int = 0
    errors: Dict[str, Exception] = Field(default_factory=dict)


class RetentionInfo(BaseModel):
    retention_period_days: int = 0
    retention_end_date: Optional[datetime] = None
    is_required: bool = False


class VerificationProof(BaseModel):
    proof: str
    timestamp: datetime

"""
Submission Models

Records, queue entries, delivery outcomes and the status state machine.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any, FrozenSet
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


MIN_PRIORITY = 1
MAX_PRIORITY = 10
DEFAULT_PRIORITY = 5


def _utcnow() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(timezone.utc)


def new_submission_id() -> str:
    return str(uuid4())


class SubmissionStatus(str, Enum):
    """Status of a submission record."""
    PENDING = "pending"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class DeliveryMethod(str, Enum):
    """Transport channel used to hand a letter to a university."""
    API = "api"
    EMAIL = "email"
    MANUAL = "manual"


class ConfirmationMethod(str, Enum):
    """How a confirmation signal arrived."""
    API = "api"
    EMAIL = "email"
    WEBHOOK = "webhook"
    MANUAL = "manual"


# Valid status transitions. failed -> pending is only reachable through the
# audited retry action.
ALLOWED_TRANSITIONS: Dict[SubmissionStatus, FrozenSet[SubmissionStatus]] = {
    SubmissionStatus.PENDING: frozenset({SubmissionStatus.SUBMITTED, SubmissionStatus.FAILED}),
    SubmissionStatus.SUBMITTED: frozenset({SubmissionStatus.CONFIRMED, SubmissionStatus.FAILED}),
    SubmissionStatus.CONFIRMED: frozenset(),
    SubmissionStatus.FAILED: frozenset({SubmissionStatus.PENDING}),
}

TERMINAL_STATUSES = frozenset({SubmissionStatus.CONFIRMED, SubmissionStatus.FAILED})


def can_transition(from_status: SubmissionStatus, to_status: SubmissionStatus) -> bool:
    """Check whether the state machine allows from_status -> to_status."""
    return SubmissionStatus(to_status) in ALLOWED_TRANSITIONS[SubmissionStatus(from_status)]


class SubmissionRecord(BaseModel):
    """One delivery unit: a recommendation sent to one university."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_submission_id)
    recommendation_id: str
    university_id: str
    owner_id: Optional[str] = None
    delivery_method: DeliveryMethod
    status: SubmissionStatus = SubmissionStatus.PENDING
    external_reference: Optional[str] = None
    error_message: Optional[str] = None
    retry_count: int = Field(default=0, ge=0)
    max_retries: int = Field(default=5, ge=0)
    priority: int = Field(default=DEFAULT_PRIORITY, ge=MIN_PRIORITY, le=MAX_PRIORITY)

    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    submitted_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")

    def log_context(self, **extra: Any) -> Dict[str, Any]:
        """Fields for a log record's `extra=`, promoted by the structured formatter."""
        context = {
            "submission_id": self.id,
            "recommendation_id": self.recommendation_id,
            "university_id": self.university_id,
            "delivery_method": self.delivery_method.value,
        }
        context.update(extra)
        return context


class QueueEntry(BaseModel):
    """Scheduling metadata for a pending submission."""

    model_config = ConfigDict(frozen=True)

    submission_id: str
    priority: int = Field(default=DEFAULT_PRIORITY, ge=MIN_PRIORITY, le=MAX_PRIORITY)
    scheduled_at: datetime = Field(default_factory=_utcnow)
    attempts: int = Field(default=0, ge=0)
    max_attempts: int = Field(default=5, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)
    claimed: bool = False
    claimed_at: Optional[datetime] = None
    last_error: Optional[str] = None

    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


class OutcomeKind(str, Enum):
    """Classification of one delivery attempt."""
    SUCCESS = "success"
    TRANSIENT_FAILURE = "transient_failure"
    PERMANENT_FAILURE = "permanent_failure"


class DeliveryOutcome(BaseModel):
    """Result of a single dispatch attempt."""

    model_config = ConfigDict(frozen=True)

    kind: OutcomeKind
    reason: Optional[str] = None
    external_reference: Optional[str] = None

    @classmethod
    def success(cls, external_reference: Optional[str] = None) -> "DeliveryOutcome":
        return cls(kind=OutcomeKind.SUCCESS, external_reference=external_reference)

    @classmethod
    def transient(cls, reason: str) -> "DeliveryOutcome":
        return cls(kind=OutcomeKind.TRANSIENT_FAILURE, reason=reason)

    @classmethod
    def permanent(cls, reason: str) -> "DeliveryOutcome":
        return cls(kind=OutcomeKind.PERMANENT_FAILURE, reason=reason)

    @property
    def is_success(self) -> bool:
        return self.kind == OutcomeKind.SUCCESS


class QueueStatus(BaseModel):
    """Snapshot of queue occupancy."""

    ready: int = 0
    scheduled: int = 0
    claimed: int = 0
    total: int = 0


class ConfirmationReceipt(BaseModel):
    """Evidence stored when a submission is confirmed."""

    submission_id: str
    confirmation_method: ConfirmationMethod = ConfirmationMethod.WEBHOOK
    confirmation_code: Optional[str] = None
    receipt_url: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None
    confirmed_at: datetime = Field(default_factory=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


class AuditEntry(BaseModel):
    """One administrative or automated intervention on a submission."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    submission_id: str
    action: str
    actor: Optional[str] = None
    from_status: Optional[SubmissionStatus] = None
    to_status: Optional[SubmissionStatus] = None
    details: Optional[Dict[str, Any]] = None
    created_at: datetime = Field(default_factory=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")

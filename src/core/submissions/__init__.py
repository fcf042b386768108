"""
Submission Delivery & Confirmation Pipeline

Takes a finalized recommendation, delivers it to each selected university
(api, email or manual), retries transient failures with backoff, applies
confirmations, watches for stuck deliveries and pushes status changes to the
owner's live sessions.

Usage:
    from src.core.submissions import SubmissionPipeline

    pipeline = await SubmissionPipeline.from_environment(sessions=sse_manager)
    await pipeline.start()

    records = await pipeline.service.create_for_recommendation(recommendation_id)
    await pipeline.confirmations.confirm(external_reference, payload={...})
"""

from .models import (
    ALLOWED_TRANSITIONS,
    AuditEntry,
    ConfirmationMethod,
    ConfirmationReceipt,
    DeliveryMethod,
    DeliveryOutcome,
    OutcomeKind,
    QueueEntry,
    QueueStatus,
    SubmissionRecord,
    SubmissionStatus,
    can_transition,
)
from .errors import (
    AlreadyQueuedError,
    DeliveryError,
    DuplicateConfirmationError,
    InvalidPriorityError,
    InvalidStateTransitionError,
    PermanentDeliveryError,
    QueueClaimConflict,
    RecipientNotFoundError,
    RecommendationNotFoundError,
    SubmissionError,
    SubmissionNotFoundError,
    TransientDeliveryError,
)
from .collaborators import (
    Letter,
    RecipientConfig,
    RecommendationProvider,
    RecipientDirectory,
    Notifier,
    TelemetrySink,
    SessionRegistry,
    StaticRecipientDirectory,
)
from .config import ConfigurationError, PipelineConfig
from .store import SubmissionStore
from .scheduler import BulkRetryResult, QueueScheduler
from .deliverers import ApiDeliverer, Deliverer, DelivererRegistry, EmailDeliverer, ManualDeliverer
from .dispatcher import DeliveryDispatcher
from .processor import SubmissionProcessor
from .confirmation import ConfirmationReceiver
from .monitoring import AlertAggregator, MonitoringLoop
from .notifications import NotificationBridge
from .service import SubmissionService
from .pipeline import SubmissionPipeline

__all__ = [
    # Models
    "ALLOWED_TRANSITIONS",
    "AuditEntry",
    "ConfirmationMethod",
    "ConfirmationReceipt",
    "DeliveryMethod",
    "DeliveryOutcome",
    "OutcomeKind",
    "QueueEntry",
    "QueueStatus",
    "SubmissionRecord",
    "SubmissionStatus",
    "can_transition",
    # Errors
    "AlreadyQueuedError",
    "DeliveryError",
    "DuplicateConfirmationError",
    "InvalidPriorityError",
    "InvalidStateTransitionError",
    "PermanentDeliveryError",
    "QueueClaimConflict",
    "RecipientNotFoundError",
    "RecommendationNotFoundError",
    "SubmissionError",
    "SubmissionNotFoundError",
    "TransientDeliveryError",
    # Collaborators
    "Letter",
    "RecipientConfig",
    "RecommendationProvider",
    "RecipientDirectory",
    "Notifier",
    "TelemetrySink",
    "SessionRegistry",
    "StaticRecipientDirectory",
    # Components
    "ConfigurationError",
    "PipelineConfig",
    "SubmissionStore",
    "QueueScheduler",
    "BulkRetryResult",
    "ApiDeliverer",
    "Deliverer",
    "DelivererRegistry",
    "EmailDeliverer",
    "ManualDeliverer",
    "DeliveryDispatcher",
    "SubmissionProcessor",
    "ConfirmationReceiver",
    "AlertAggregator",
    "MonitoringLoop",
    "NotificationBridge",
    "SubmissionService",
    "SubmissionPipeline",
]

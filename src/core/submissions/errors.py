"""
Submission pipeline errors.

The API layer maps these to standard error responses (see
src/api/shared/middleware/error_handler.py).
"""

from typing import Optional


class SubmissionError(Exception):
    """Base class for pipeline errors."""

    def __init__(self, message: str, submission_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.submission_id = submission_id


class SubmissionNotFoundError(SubmissionError):
    """No submission matches the given id or external reference."""

    def __init__(self, identifier: str):
        super().__init__(f"Submission '{identifier}' not found", submission_id=identifier)
        self.identifier = identifier


class AlreadyQueuedError(SubmissionError):
    """A queue entry already exists for the submission."""

    def __init__(self, submission_id: str):
        super().__init__(f"Submission '{submission_id}' is already queued", submission_id)


class InvalidStateTransitionError(SubmissionError):
    """The requested status change is not allowed from the current status."""

    def __init__(self, submission_id: str, from_status: str, to_status: str):
        super().__init__(
            f"Invalid transition for submission '{submission_id}': {from_status} -> {to_status}",
            submission_id,
        )
        self.from_status = from_status
        self.to_status = to_status


class InvalidPriorityError(SubmissionError):
    """Priority outside the 1-10 range."""

    def __init__(self, priority: int):
        super().__init__(f"Priority must be between 1 and 10, got {priority}")
        self.priority = priority


class QueueClaimConflict(SubmissionError):
    """Another worker already claimed the queue entry."""

    def __init__(self, submission_id: str):
        super().__init__(f"Queue entry '{submission_id}' already claimed", submission_id)


class DuplicateConfirmationError(SubmissionError):
    """The submission was already confirmed."""

    def __init__(self, submission_id: str):
        super().__init__(f"Submission '{submission_id}' already confirmed", submission_id)


class DeliveryError(SubmissionError):
    """Base class for errors raised by a deliverer."""


class TransientDeliveryError(DeliveryError):
    """Timeout, network error or 5xx. Retried with backoff."""


class PermanentDeliveryError(DeliveryError):
    """Validation error, 4xx or misconfiguration. Not retried."""


class RecommendationNotFoundError(SubmissionError):
    """The recommendation provider has no finalized letter for the id."""

    def __init__(self, recommendation_id: str):
        super().__init__(f"Recommendation '{recommendation_id}' not found or not finalized")
        self.recommendation_id = recommendation_id


class RecipientNotFoundError(SubmissionError):
    """No delivery configuration exists for the university."""

    def __init__(self, university_id: str):
        super().__init__(f"No recipient configured for university '{university_id}'")
        self.university_id = university_id

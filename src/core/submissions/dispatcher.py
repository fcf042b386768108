"""
Delivery Dispatcher

Runs one delivery attempt for a pending submission through the deliverer
selected by its delivery method, then applies the outcome:

- success:   pending -> submitted (queue entry removed in the same transaction)
- permanent: pending -> failed    (queue entry removed in the same transaction)
- transient: error recorded, record stays pending for the scheduler to retry

Every attempt is bounded by dispatch_timeout; running over is a transient
failure.
"""

import asyncio
import logging
import time
from typing import Optional

from ..observability import record_counter, record_histogram, submission_span
from .collaborators import RecipientDirectory, RecommendationProvider
from .deliverers import DelivererRegistry
from .errors import (
    PermanentDeliveryError,
    RecipientNotFoundError,
    RecommendationNotFoundError,
    TransientDeliveryError,
)
from .models import DeliveryOutcome, OutcomeKind, SubmissionRecord, SubmissionStatus
from .notifications import NotificationBridge
from .store import SubmissionStore

logger = logging.getLogger(__name__)


class DeliveryDispatcher:
    """Performs and records delivery attempts."""

    def __init__(
        self,
        store: SubmissionStore,
        registry: DelivererRegistry,
        provider: RecommendationProvider,
        directory: RecipientDirectory,
        notifications: Optional[NotificationBridge] = None,
        dispatch_timeout: float = 30.0,
    ):
        self.store = store
        self.registry = registry
        self.provider = provider
        self.directory = directory
        self.notifications = notifications
        self.dispatch_timeout = dispatch_timeout

    async def dispatch(self, record: SubmissionRecord) -> DeliveryOutcome:
        """Attempt delivery and persist the outcome."""
        started = time.monotonic()

        with submission_span(
            "submission.dispatch",
            record.id,
            university_id=record.university_id,
            delivery_method=record.delivery_method.value,
            attempt=record.retry_count + 1,
        ) as span:
            outcome = await self.attempt(record)
            span.set_attribute("outcome", outcome.kind.value)

        elapsed = time.monotonic() - started
        attributes = {"method": record.delivery_method.value, "outcome": outcome.kind.value}
        record_counter("submissions_dispatched_total", attributes=attributes)
        record_histogram("submission_dispatch_duration_seconds", elapsed, attributes=attributes)

        await self.apply(record, outcome)
        return outcome

    async def attempt(self, record: SubmissionRecord) -> DeliveryOutcome:
        """One timeout-bounded delivery attempt. Never raises."""
        try:
            return await asyncio.wait_for(self._attempt(record), timeout=self.dispatch_timeout)
        except asyncio.TimeoutError:
            return DeliveryOutcome.transient(
                f"Delivery attempt exceeded {self.dispatch_timeout:.0f}s timeout"
            )

    async def _attempt(self, record: SubmissionRecord) -> DeliveryOutcome:
        deliverer = self.registry.get(record.delivery_method)
        if deliverer is None:
            return DeliveryOutcome.permanent(
                f"No deliverer registered for method '{record.delivery_method.value}'"
            )

        try:
            recipient = await self.directory.get_recipient(record.university_id)
            letter = await self.provider.get_letter(record.recommendation_id)
        except (RecipientNotFoundError, RecommendationNotFoundError, PermanentDeliveryError) as e:
            return DeliveryOutcome.permanent(e.message)
        except TransientDeliveryError as e:
            return DeliveryOutcome.transient(e.message)
        except Exception as e:
            logger.warning(f"Lookup for submission {record.id} failed: {e}", exc_info=True, extra=record.log_context())
            return DeliveryOutcome.transient(f"Lookup failed: {e}")

        valid, reason = deliverer.validate(letter, recipient)
        if not valid:
            return DeliveryOutcome.permanent(reason)

        try:
            return await deliverer.deliver(record, letter, recipient)
        except PermanentDeliveryError as e:
            return DeliveryOutcome.permanent(e.message)
        except TransientDeliveryError as e:
            return DeliveryOutcome.transient(e.message)
        except asyncio.TimeoutError:
            raise
        except Exception as e:
            logger.error(
                f"Deliverer crashed for submission {record.id}: {e}", exc_info=True, extra=record.log_context()
            )
            return DeliveryOutcome.transient(f"Unexpected delivery error: {e}")

    async def apply(self, record: SubmissionRecord, outcome: DeliveryOutcome) -> Optional[SubmissionRecord]:
        """Persist an outcome. Returns the updated record when the status changed."""
        if outcome.kind == OutcomeKind.SUCCESS:
            updated = await self.store.mark_submitted(record.id, outcome.external_reference)
            if updated is None:
                logger.info(f"Submission {record.id} no longer pending, success not applied")
                return None
            logger.info(
                f"Submission {record.id} delivered to {record.university_id} "
                f"via {record.delivery_method.value} (ref {updated.external_reference})",
                extra=updated.log_context(outcome=outcome.kind.value),
            )
            await self._notify(updated)
            return updated

        attempt_no = record.retry_count + 1
        logger.warning(
            f"Delivery failed for submission {record.id} "
            f"(attempt {attempt_no}, university {record.university_id}, "
            f"{outcome.kind.value}): {outcome.reason}",
            extra=record.log_context(attempt=attempt_no, outcome=outcome.kind.value),
        )
        record_counter(
            "submission_failures_total",
            attributes={"method": record.delivery_method.value, "kind": outcome.kind.value},
        )

        if outcome.kind == OutcomeKind.PERMANENT_FAILURE:
            updated = await self.store.mark_failed(record.id, outcome.reason or "Permanent delivery failure")
            if updated is None:
                logger.info(f"Submission {record.id} no longer pending, failure not applied")
                return None
            await self._notify(updated)
            return updated

        await self.store.record_transient_error(record.id, outcome.reason or "Transient delivery failure")
        return None

    async def _notify(self, record: SubmissionRecord) -> None:
        if self.notifications:
            await self.notifications.notify(record, SubmissionStatus.PENDING)

"""
Submission Service

Creates the batch of submissions for a finalized recommendation (one record
per selected university) and serves the read side used for polling.
"""

import logging
from typing import List, Optional, Sequence

from ..observability import record_counter
from .collaborators import RecipientDirectory, RecommendationProvider
from .config import PipelineConfig
from .errors import RecipientNotFoundError
from .models import DEFAULT_PRIORITY, SubmissionRecord, SubmissionStatus
from .notifications import NotificationBridge
from .scheduler import validate_priority
from .store import SubmissionStore

logger = logging.getLogger(__name__)


class SubmissionService:
    """Front door for creating and reading submissions."""

    def __init__(
        self,
        store: SubmissionStore,
        provider: RecommendationProvider,
        directory: RecipientDirectory,
        config: Optional[PipelineConfig] = None,
        notifications: Optional[NotificationBridge] = None,
    ):
        self.store = store
        self.provider = provider
        self.directory = directory
        self.config = config or PipelineConfig()
        self.notifications = notifications

    async def create_for_recommendation(
        self,
        recommendation_id: str,
        university_ids: Optional[Sequence[str]] = None,
        priority: int = DEFAULT_PRIORITY,
    ) -> List[SubmissionRecord]:
        """
        Create one pending, queued submission per university.

        Universities default to the ones listed on the letter. The delivery
        method of each record comes from the recipient directory. Pairs that
        already have a submission are returned unchanged.
        """
        validate_priority(priority)
        letter = await self.provider.get_letter(recommendation_id)

        targets = list(dict.fromkeys(university_ids or letter.university_ids))
        if not targets:
            logger.info(f"Recommendation {recommendation_id} has no target universities")
            return []

        records = []
        for university_id in targets:
            recipient = await self.directory.get_recipient(university_id)
            records.append(
                SubmissionRecord(
                    recommendation_id=recommendation_id,
                    university_id=university_id,
                    owner_id=letter.owner_id,
                    delivery_method=recipient.delivery_method,
                    priority=priority,
                    max_retries=self.config.max_attempts,
                )
            )

        ids = {r.id for r in records}
        created = await self.store.create_batch(
            records,
            max_attempts=self.config.max_attempts,
            backoff_multiplier=self.config.backoff_multiplier,
        )

        new = [r for r in created if r.id in ids]
        record_counter("submissions_created_total", value=len(new))
        logger.info(
            f"Created {len(new)} submissions for recommendation {recommendation_id} "
            f"({len(created) - len(new)} already existed)"
        )

        if self.notifications:
            for record in new:
                await self.notifications.notify(record, None)
        return created

    async def get(self, submission_id: str) -> SubmissionRecord:
        return await self.store.require(submission_id)

    async def list_for_recommendation(self, recommendation_id: str) -> List[SubmissionRecord]:
        return await self.store.list_for_recommendation(recommendation_id)

    async def delete_for_recommendation(self, recommendation_id: str) -> int:
        return await self.store.delete_for_recommendation(recommendation_id)

    async def summary(self, recommendation_id: str) -> dict:
        """
        Per-status counts for one recommendation plus one line per university
        (name, status, timestamps, reference and last error), sorted by name.
        """
        records = await self.store.list_for_recommendation(recommendation_id)
        counts = {status.value: 0 for status in SubmissionStatus}
        for record in records:
            counts[record.status.value] += 1
        counts["total"] = len(records)

        universities = []
        for record in records:
            try:
                name = (await self.directory.get_recipient(record.university_id)).name
            except RecipientNotFoundError:
                name = record.university_id
            universities.append({
                "submission_id": record.id,
                "university_id": record.university_id,
                "university_name": name,
                "delivery_method": record.delivery_method.value,
                "status": record.status.value,
                "submitted_at": record.submitted_at.isoformat() if record.submitted_at else None,
                "confirmed_at": record.confirmed_at.isoformat() if record.confirmed_at else None,
                "external_reference": record.external_reference,
                "error_message": record.error_message,
            })
        universities.sort(key=lambda item: (item["university_name"].lower(), item["university_id"]))

        summary: dict = dict(counts)
        summary["universities"] = universities
        return summary

    async def stats(self) -> dict:
        """Totals per status across every recommendation."""
        return await self.store.count_by_status()

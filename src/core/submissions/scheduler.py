"""
Queue Scheduler

Orders pending submissions by priority and readiness, claims them for
dispatch, applies exponential backoff to transient failures and exposes the
administrative queue operations (retry, priority, listing).

Claims are a conditional UPDATE on `claimed = FALSE`, so several processes
can share one queue without dispatching the same submission twice.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from ..database.adapter import DatabaseAdapter, affected_rows
from .collaborators import TelemetrySink
from .config import PipelineConfig
from .errors import (
    AlreadyQueuedError,
    InvalidPriorityError,
    InvalidStateTransitionError,
    QueueClaimConflict,
    SubmissionNotFoundError,
)
from .models import (
    MAX_PRIORITY,
    MIN_PRIORITY,
    AuditEntry,
    DeliveryOutcome,
    OutcomeKind,
    QueueEntry,
    QueueStatus,
    SubmissionRecord,
    SubmissionStatus,
)
from .notifications import NotificationBridge
from .store import Clock, SubmissionStore, utcnow

logger = logging.getLogger(__name__)

QUEUE_COLUMNS = """
    submission_id, priority, scheduled_at, attempts, max_attempts,
    backoff_multiplier, claimed, claimed_at, last_error, created_at, updated_at
"""


def validate_priority(priority: int) -> int:
    if not isinstance(priority, int) or isinstance(priority, bool):
        raise InvalidPriorityError(priority)
    if priority < MIN_PRIORITY or priority > MAX_PRIORITY:
        raise InvalidPriorityError(priority)
    return priority


def row_to_entry(row: Dict[str, Any]) -> QueueEntry:
    return QueueEntry(**row)


@dataclass
class BulkRetryResult:
    """Outcome of a bulk retry: how many records went back to the queue and why others did not."""
    retried: int = 0
    skipped: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"requeued": self.retried, "skipped": self.skipped, "errors": self.errors}


class QueueScheduler:
    """
    Priority queue of pending submissions.

    Ordering is priority descending, then scheduled_at ascending. A queue
    entry exists exactly while its record is pending.
    """

    def __init__(
        self,
        db: DatabaseAdapter,
        store: SubmissionStore,
        config: Optional[PipelineConfig] = None,
        telemetry: Optional[TelemetrySink] = None,
        notifications: Optional[NotificationBridge] = None,
        now: Optional[Clock] = None,
    ):
        self.db = db
        self.store = store
        self.config = config or PipelineConfig()
        self.telemetry = telemetry
        self.notifications = notifications
        self._now = now or utcnow

    # ------------------------------------------------------------------
    # Backoff
    # ------------------------------------------------------------------

    def backoff_delay(self, attempts: int, multiplier: Optional[float] = None) -> float:
        """
        Delay in seconds before the next attempt.

        `attempts` is the number of attempts already consumed. The result is
        base * multiplier ** attempts, capped at the configured maximum.
        """
        if multiplier is None:
            multiplier = self.config.backoff_multiplier
        base = self.config.base_delay_ms
        cap = self.config.max_delay_ms
        try:
            delay_ms = base * (multiplier ** max(attempts, 0))
        except OverflowError:
            delay_ms = cap
        return min(cap, delay_ms) / 1000.0

    # ------------------------------------------------------------------
    # Queue operations
    # ------------------------------------------------------------------

    async def enqueue(self, submission_id: str, priority: Optional[int] = None) -> QueueEntry:
        """Make a pending submission eligible for dispatch now."""
        record = await self.store.require(submission_id)
        if record.status != SubmissionStatus.PENDING:
            raise InvalidStateTransitionError(
                submission_id, record.status.value, SubmissionStatus.PENDING.value
            )

        if priority is None:
            priority = record.priority
        validate_priority(priority)

        now = self._now()
        status = await self.db.execute(
            """
            INSERT INTO submission_queue (
                submission_id, priority, scheduled_at, attempts, max_attempts,
                backoff_multiplier, claimed, created_at, updated_at
            ) VALUES ($1, $2, $3, 0, $4, $5, FALSE, $3, $3)
            ON CONFLICT (submission_id) DO NOTHING
            """,
            submission_id,
            priority,
            now,
            record.max_retries,
            self.config.backoff_multiplier,
        )
        if affected_rows(status) == 0:
            raise AlreadyQueuedError(submission_id)

        logger.info(f"Enqueued submission {submission_id} (priority {priority})")
        return await self.get_entry(submission_id)

    async def get_entry(self, submission_id: str) -> Optional[QueueEntry]:
        row = await self.db.fetchrow(
            f"SELECT {QUEUE_COLUMNS} FROM submission_queue WHERE submission_id = $1",
            submission_id,
        )
        return row_to_entry(row) if row else None

    async def dequeue_ready(self, limit: int) -> List[QueueEntry]:
        """
        Claim up to `limit` ready entries.

        Entries claimed by another worker between the SELECT and the claim
        are skipped.
        """
        if limit <= 0:
            return []

        now = self._now()
        rows = await self.db.fetch(
            f"""
            SELECT {QUEUE_COLUMNS} FROM submission_queue
            WHERE claimed = FALSE AND scheduled_at <= $1
            ORDER BY priority DESC, scheduled_at ASC
            LIMIT $2
            """,
            now,
            limit,
        )

        claimed: List[QueueEntry] = []
        for row in rows:
            try:
                await self._claim(row["submission_id"], now)
            except QueueClaimConflict:
                logger.debug(f"Queue entry {row['submission_id']} claimed elsewhere, skipping")
                continue
            row["claimed"] = True
            row["claimed_at"] = now
            row["updated_at"] = now
            claimed.append(row_to_entry(row))

        return claimed

    async def _claim(self, submission_id: str, now: datetime) -> None:
        status = await self.db.execute(
            """
            UPDATE submission_queue
            SET claimed = TRUE, claimed_at = $1, updated_at = $1
            WHERE submission_id = $2 AND claimed = FALSE
            """,
            now,
            submission_id,
        )
        if affected_rows(status) == 0:
            raise QueueClaimConflict(submission_id)

    async def record_outcome(
        self,
        submission_id: str,
        outcome: DeliveryOutcome,
    ) -> Optional[QueueEntry]:
        """
        Update queue metadata after a dispatch attempt.

        Returns the rescheduled entry for a retried transient failure, None
        otherwise.
        """
        if outcome.kind != OutcomeKind.TRANSIENT_FAILURE:
            status = await self.db.execute(
                "DELETE FROM submission_queue WHERE submission_id = $1", submission_id
            )
            if affected_rows(status):
                logger.debug(f"Removed queue entry for {submission_id} ({outcome.kind.value})")
            return None

        entry = await self.get_entry(submission_id)
        if entry is None:
            logger.warning(f"No queue entry for {submission_id}, transient outcome ignored")
            return None

        if entry.attempts >= entry.max_attempts:
            await self._exhaust(entry, outcome.reason)
            return None

        delay = self.backoff_delay(entry.attempts, entry.backoff_multiplier)
        attempts = entry.attempts + 1
        now = self._now()
        scheduled_at = now + timedelta(seconds=delay)

        async with self.db.transaction() as tx:
            await tx.execute(
                """
                UPDATE submission_queue
                SET attempts = $1, scheduled_at = $2, claimed = FALSE, claimed_at = NULL,
                    last_error = $3, updated_at = $4
                WHERE submission_id = $5
                """,
                attempts,
                scheduled_at,
                (outcome.reason or "")[:1000],
                now,
                submission_id,
            )
            await tx.execute(
                """
                UPDATE submissions
                SET retry_count = $1, updated_at = $2
                WHERE id = $3 AND status = $4
                """,
                attempts,
                now,
                submission_id,
                SubmissionStatus.PENDING.value,
            )

        logger.warning(
            f"Submission {submission_id} attempt {attempts}/{entry.max_attempts} failed, "
            f"retry in {delay:.1f}s: {outcome.reason}",
            extra={"submission_id": submission_id, "attempt": attempts, "retry_in": round(delay, 1)},
        )
        return await self.get_entry(submission_id)

    async def _exhaust(self, entry: QueueEntry, reason: Optional[str]) -> None:
        submission_id = entry.submission_id
        message = f"Retries exhausted after {entry.attempts} retries: {reason}"
        record = await self.store.mark_failed(submission_id, message)

        if record is None:
            # Record left pending elsewhere; drop the orphaned entry
            await self.db.execute(
                "DELETE FROM submission_queue WHERE submission_id = $1", submission_id
            )
            logger.warning(f"Submission {submission_id} not pending when retries were exhausted")
            return

        logger.error(
            f"Submission {submission_id} failed permanently: {message}",
            extra=record.log_context(attempt=entry.attempts),
        )
        self._emit(
            "submission.retries_exhausted",
            {
                "submission_id": submission_id,
                "university_id": record.university_id,
                "attempts": entry.attempts,
                "last_error": reason,
            },
        )
        if self.notifications:
            await self.notifications.notify(record, SubmissionStatus.PENDING)

    async def release_claim(self, submission_id: str) -> bool:
        """Return a claimed entry to the ready set."""
        now = self._now()
        status = await self.db.execute(
            """
            UPDATE submission_queue
            SET claimed = FALSE, claimed_at = NULL, scheduled_at = $1, updated_at = $1
            WHERE submission_id = $2 AND claimed = TRUE
            """,
            now,
            submission_id,
        )
        released = affected_rows(status) == 1
        if released:
            logger.info(f"Released claim on queue entry {submission_id}")
        return released

    async def list_stalled(self, before: datetime) -> List[QueueEntry]:
        """Entries that have been neither rescheduled nor touched since `before`."""
        rows = await self.db.fetch(
            f"""
            SELECT {QUEUE_COLUMNS} FROM submission_queue
            WHERE scheduled_at < $1 AND updated_at < $1
            ORDER BY scheduled_at ASC
            """,
            before,
        )
        return [row_to_entry(row) for row in rows]

    # ------------------------------------------------------------------
    # Administrative operations
    # ------------------------------------------------------------------

    async def retry(
        self,
        submission_id: str,
        actor: str,
        priority: Optional[int] = None,
    ) -> SubmissionRecord:
        """
        Re-queue a failed submission.

        Resets retry_count to 0, clears the error and writes an audit entry.
        Raises InvalidStateTransitionError unless the record is failed.
        """
        record = await self.store.require(submission_id)
        if record.status != SubmissionStatus.FAILED:
            raise InvalidStateTransitionError(
                submission_id, record.status.value, SubmissionStatus.PENDING.value
            )

        if priority is not None:
            validate_priority(priority)
        else:
            priority = record.priority

        now = self._now()
        max_attempts = self.config.max_attempts

        async with self.db.transaction() as tx:
            status = await tx.execute(
                """
                UPDATE submissions
                SET status = $1, retry_count = 0, max_retries = $2, error_message = NULL,
                    priority = $3, updated_at = $4
                WHERE id = $5 AND status = $6
                """,
                SubmissionStatus.PENDING.value,
                max_attempts,
                priority,
                now,
                submission_id,
                SubmissionStatus.FAILED.value,
            )
            if affected_rows(status) == 0:
                current = await tx.fetchval(
                    "SELECT status FROM submissions WHERE id = $1", submission_id
                )
                raise InvalidStateTransitionError(
                    submission_id, str(current), SubmissionStatus.PENDING.value
                )

            await tx.execute(
                """
                INSERT INTO submission_queue (
                    submission_id, priority, scheduled_at, attempts, max_attempts,
                    backoff_multiplier, claimed, created_at, updated_at
                ) VALUES ($1, $2, $3, 0, $4, $5, FALSE, $3, $3)
                """,
                submission_id,
                priority,
                now,
                max_attempts,
                self.config.backoff_multiplier,
            )

            await SubmissionStore.write_audit(
                tx,
                AuditEntry(
                    submission_id=submission_id,
                    action="retry",
                    actor=actor,
                    from_status=SubmissionStatus.FAILED,
                    to_status=SubmissionStatus.PENDING,
                    details={"previous_error": record.error_message, "priority": priority},
                    created_at=now,
                ),
            )

        updated = await self.store.require(submission_id)
        logger.info(f"Submission {submission_id} re-queued by {actor}")
        if self.notifications:
            await self.notifications.notify(updated, SubmissionStatus.FAILED)
        return updated

    async def retry_all_failed(self, actor: str, limit: int = 1000) -> int:
        """
        Re-queue every failed submission.

        Records that stop being failed while the loop runs (for example a
        concurrent retry) are skipped.
        """
        result = await self.retry_failed(actor, limit=limit)
        return result.retried

    async def retry_failed(
        self,
        actor: str,
        university_id: Optional[str] = None,
        max_retries: Optional[int] = None,
        older_than_minutes: Optional[float] = None,
        limit: int = 100,
    ) -> BulkRetryResult:
        """
        Re-queue failed submissions, oldest failure first.

        university_id narrows to one university, max_retries keeps records
        whose retry_count is below it, older_than_minutes keeps records that
        failed at least that long ago.
        """
        updated_before = None
        if older_than_minutes is not None:
            updated_before = self._now() - timedelta(minutes=older_than_minutes)

        failed = await self.store.list_failed(
            university_id=university_id,
            max_retry_count=max_retries,
            updated_before=updated_before,
            limit=limit,
        )
        result = BulkRetryResult()
        for record in failed:
            try:
                await self.retry(record.id, actor)
                result.retried += 1
            except (InvalidStateTransitionError, SubmissionNotFoundError) as e:
                result.skipped += 1
                result.errors.append(f"{record.id}: {e}")
                logger.info(f"Skipping {record.id} in bulk retry: {e}", extra=record.log_context())

        logger.info(f"Bulk retry by {actor}: {result.retried}/{len(failed)} submissions re-queued")
        return result

    async def set_priority(self, submission_id: str, priority: int) -> SubmissionRecord:
        """Change the priority of a record and its queue entry together."""
        validate_priority(priority)
        now = self._now()

        async with self.db.transaction() as tx:
            status = await tx.execute(
                "UPDATE submissions SET priority = $1, updated_at = $2 WHERE id = $3",
                priority,
                now,
                submission_id,
            )
            if affected_rows(status) == 0:
                raise SubmissionNotFoundError(submission_id)

            await tx.execute(
                "UPDATE submission_queue SET priority = $1 WHERE submission_id = $2",
                priority,
                submission_id,
            )

        logger.info(f"Priority of {submission_id} set to {priority}")
        return await self.store.require(submission_id)

    async def list_entries(self, limit: int = 50, offset: int = 0) -> Tuple[List[QueueEntry], int]:
        """Page through the queue in dispatch order."""
        rows = await self.db.fetch(
            f"""
            SELECT {QUEUE_COLUMNS} FROM submission_queue
            ORDER BY priority DESC, scheduled_at ASC
            LIMIT $1 OFFSET $2
            """,
            limit,
            offset,
        )
        total = await self.db.fetchval("SELECT COUNT(*) FROM submission_queue")
        return [row_to_entry(row) for row in rows], int(total or 0)

    async def queue_status(self) -> QueueStatus:
        now = self._now()
        row = await self.db.fetchrow(
            """
            SELECT
                COALESCE(SUM(CASE WHEN claimed = FALSE AND scheduled_at <= $1 THEN 1 ELSE 0 END), 0) AS ready,
                COALESCE(SUM(CASE WHEN claimed = FALSE AND scheduled_at > $1 THEN 1 ELSE 0 END), 0) AS scheduled,
                COALESCE(SUM(CASE WHEN claimed = TRUE THEN 1 ELSE 0 END), 0) AS claimed,
                COUNT(*) AS total
            FROM submission_queue
            """,
            now,
        )
        return QueueStatus(
            ready=int(row["ready"]),
            scheduled=int(row["scheduled"]),
            claimed=int(row["claimed"]),
            total=int(row["total"]),
        )

    def _emit(self, name: str, payload: Dict[str, Any]) -> None:
        if self.telemetry is None:
            return
        try:
            self.telemetry.record_event(name, payload)
        except Exception as e:
            logger.warning(f"Telemetry sink failed for {name}: {e}")

"""
Submission Store

Persistence for submission records, confirmation receipts and the audit
trail. Every status change is a compare-and-swap on the expected status, and
the queue entry is removed in the same transaction that takes a record out of
pending.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from ..database.adapter import DatabaseAdapter, DatabaseSession, affected_rows
from .errors import SubmissionNotFoundError
from .models import (
    AuditEntry,
    ConfirmationReceipt,
    SubmissionRecord,
    SubmissionStatus,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

RECORD_COLUMNS = """
    id, recommendation_id, university_id, owner_id, delivery_method, status,
    external_reference, error_message, retry_count, max_retries, priority,
    created_at, updated_at, submitted_at, confirmed_at
"""


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _json_field(value: Any) -> Optional[Dict[str, Any]]:
    if value is None or isinstance(value, dict):
        return value
    return json.loads(value)


def _status_value(status: Optional[SubmissionStatus]) -> Optional[str]:
    return status.value if status else None


def row_to_record(row: Dict[str, Any]) -> SubmissionRecord:
    return SubmissionRecord(**row)


class SubmissionStore:
    """
    Repository for submission records.

    Usage:
        store = SubmissionStore(db)
        created = await store.create_batch(records, max_attempts=5, backoff_multiplier=2.0)
        record = await store.mark_submitted(record.id, "ext-123")
    """

    def __init__(self, db: DatabaseAdapter, now: Optional[Clock] = None):
        self.db = db
        self._now = now or utcnow

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_batch(
        self,
        records: Iterable[SubmissionRecord],
        max_attempts: int,
        backoff_multiplier: float,
    ) -> List[SubmissionRecord]:
        """
        Insert pending records together with their queue entries.

        A (recommendation, university) pair that already has a record is left
        untouched and the existing record is returned in its place.
        """
        now = self._now()
        result: List[SubmissionRecord] = []

        async with self.db.transaction() as tx:
            for record in records:
                status = await tx.execute(
                    """
                    INSERT INTO submissions (
                        id, recommendation_id, university_id, owner_id, delivery_method,
                        status, retry_count, max_retries, priority, created_at, updated_at
                    ) VALUES ($1, $2, $3, $4, $5, $6, 0, $7, $8, $9, $9)
                    ON CONFLICT (recommendation_id, university_id) DO NOTHING
                    """,
                    record.id,
                    record.recommendation_id,
                    record.university_id,
                    record.owner_id,
                    record.delivery_method.value,
                    SubmissionStatus.PENDING.value,
                    max_attempts,
                    record.priority,
                    now,
                )

                if affected_rows(status) == 0:
                    existing = await tx.fetchrow(
                        f"""
                        SELECT {RECORD_COLUMNS} FROM submissions
                        WHERE recommendation_id = $1 AND university_id = $2
                        """,
                        record.recommendation_id,
                        record.university_id,
                    )
                    logger.info(
                        f"Submission for recommendation {record.recommendation_id} -> "
                        f"university {record.university_id} already exists ({existing['id']})"
                    )
                    result.append(row_to_record(existing))
                    continue

                await tx.execute(
                    """
                    INSERT INTO submission_queue (
                        submission_id, priority, scheduled_at, attempts, max_attempts,
                        backoff_multiplier, claimed, created_at, updated_at
                    ) VALUES ($1, $2, $3, 0, $4, $5, FALSE, $3, $3)
                    """,
                    record.id,
                    record.priority,
                    now,
                    max_attempts,
                    backoff_multiplier,
                )

                row = await tx.fetchrow(
                    f"SELECT {RECORD_COLUMNS} FROM submissions WHERE id = $1", record.id
                )
                result.append(row_to_record(row))

        return result

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get(self, submission_id: str) -> Optional[SubmissionRecord]:
        row = await self.db.fetchrow(
            f"SELECT {RECORD_COLUMNS} FROM submissions WHERE id = $1", submission_id
        )
        return row_to_record(row) if row else None

    async def get_by_reference(self, external_reference: str) -> Optional[SubmissionRecord]:
        row = await self.db.fetchrow(
            f"""
            SELECT {RECORD_COLUMNS} FROM submissions
            WHERE external_reference = $1
            ORDER BY created_at DESC
            LIMIT 1
            """,
            external_reference,
        )
        return row_to_record(row) if row else None

    async def find(self, identifier: str) -> SubmissionRecord:
        """Look a record up by id, then by external reference."""
        record = await self.get(identifier)
        if record is None:
            record = await self.get_by_reference(identifier)
        if record is None:
            raise SubmissionNotFoundError(identifier)
        return record

    async def require(self, submission_id: str) -> SubmissionRecord:
        record = await self.get(submission_id)
        if record is None:
            raise SubmissionNotFoundError(submission_id)
        return record

    async def list_for_recommendation(self, recommendation_id: str) -> List[SubmissionRecord]:
        rows = await self.db.fetch(
            f"""
            SELECT {RECORD_COLUMNS} FROM submissions
            WHERE recommendation_id = $1
            ORDER BY created_at ASC, university_id ASC
            """,
            recommendation_id,
        )
        return [row_to_record(row) for row in rows]

    async def list_by_status(
        self,
        status: SubmissionStatus,
        limit: int = 100,
    ) -> List[SubmissionRecord]:
        rows = await self.db.fetch(
            f"""
            SELECT {RECORD_COLUMNS} FROM submissions
            WHERE status = $1
            ORDER BY updated_at ASC
            LIMIT $2
            """,
            SubmissionStatus(status).value,
            limit,
        )
        return [row_to_record(row) for row in rows]

    async def list_stale_submitted(self, before: datetime, limit: int = 500) -> List[SubmissionRecord]:
        """Records still awaiting confirmation that were submitted before `before`."""
        rows = await self.db.fetch(
            f"""
            SELECT {RECORD_COLUMNS} FROM submissions
            WHERE status = $1 AND submitted_at < $2
            ORDER BY submitted_at ASC
            LIMIT $3
            """,
            SubmissionStatus.SUBMITTED.value,
            before,
            limit,
        )
        return [row_to_record(row) for row in rows]

    async def count_outcomes_since(self, since: datetime) -> Dict[str, int]:
        """Count records per status whose last change happened after `since`."""
        rows = await self.db.fetch(
            """
            SELECT status, COUNT(*) AS count
            FROM submissions
            WHERE updated_at >= $1
            GROUP BY status
            """,
            since,
        )

        counts = {status.value: 0 for status in SubmissionStatus}
        for row in rows:
            counts[row["status"]] = row["count"]
        return counts

    async def count_by_status(self) -> Dict[str, int]:
        """Totals per status over every record, plus `total`."""
        rows = await self.db.fetch(
            "SELECT status, COUNT(*) AS count FROM submissions GROUP BY status"
        )

        counts = {status.value: 0 for status in SubmissionStatus}
        for row in rows:
            counts[row["status"]] = row["count"]
        counts["total"] = sum(counts.values())
        return counts

    async def list_created_since(self, since: datetime) -> List[SubmissionRecord]:
        rows = await self.db.fetch(
            f"""
            SELECT {RECORD_COLUMNS} FROM submissions
            WHERE created_at >= $1
            ORDER BY created_at ASC
            """,
            since,
        )
        return [row_to_record(row) for row in rows]

    async def list_failed(
        self,
        university_id: Optional[str] = None,
        max_retry_count: Optional[int] = None,
        updated_before: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[SubmissionRecord]:
        """Failed records, oldest change first, optionally narrowed by university, retry count and age."""
        conditions = ["status = $1"]
        params: List[Any] = [SubmissionStatus.FAILED.value]

        if university_id is not None:
            params.append(university_id)
            conditions.append(f"university_id = ${len(params)}")
        if max_retry_count is not None:
            params.append(max_retry_count)
            conditions.append(f"retry_count < ${len(params)}")
        if updated_before is not None:
            params.append(updated_before)
            conditions.append(f"updated_at < ${len(params)}")
        params.append(limit)

        rows = await self.db.fetch(
            f"""
            SELECT {RECORD_COLUMNS} FROM submissions
            WHERE {" AND ".join(conditions)}
            ORDER BY updated_at ASC
            LIMIT ${len(params)}
            """,
            *params,
        )
        return [row_to_record(row) for row in rows]

    async def count_audit(self, submission_id: str, action: str) -> int:
        count = await self.db.fetchval(
            "SELECT COUNT(*) FROM submission_audit WHERE submission_id = $1 AND action = $2",
            submission_id,
            action,
        )
        return int(count or 0)

    async def get_receipt(self, submission_id: str) -> Optional[ConfirmationReceipt]:
        row = await self.db.fetchrow(
            """
            SELECT submission_id, confirmation_method, confirmation_code,
                   receipt_url, payload, confirmed_at
            FROM submission_confirmations
            WHERE submission_id = $1
            """,
            submission_id,
        )
        if not row:
            return None
        row["payload"] = _json_field(row["payload"])
        return ConfirmationReceipt(**row)

    async def list_audit(self, submission_id: str) -> List[AuditEntry]:
        rows = await self.db.fetch(
            """
            SELECT id, submission_id, action, actor, from_status, to_status, details, created_at
            FROM submission_audit
            WHERE submission_id = $1
            ORDER BY created_at ASC
            """,
            submission_id,
        )
        entries = []
        for row in rows:
            row["details"] = _json_field(row["details"])
            entries.append(AuditEntry(**row))
        return entries

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def mark_submitted(
        self,
        submission_id: str,
        external_reference: Optional[str],
    ) -> Optional[SubmissionRecord]:
        """
        pending -> submitted, removing the queue entry.

        Returns the updated record, or None if the record was not pending.
        """
        now = self._now()
        async with self.db.transaction() as tx:
            status = await tx.execute(
                """
                UPDATE submissions
                SET status = $1, external_reference = $2, submitted_at = $3,
                    updated_at = $3, error_message = NULL
                WHERE id = $4 AND status = $5
                """,
                SubmissionStatus.SUBMITTED.value,
                external_reference,
                now,
                submission_id,
                SubmissionStatus.PENDING.value,
            )
            if affected_rows(status) == 0:
                return None
            await self._delete_queue_entry(tx, submission_id)

        return await self.get(submission_id)

    async def mark_failed(
        self,
        submission_id: str,
        error_message: str,
        expected_status: SubmissionStatus = SubmissionStatus.PENDING,
        audit: Optional[AuditEntry] = None,
    ) -> Optional[SubmissionRecord]:
        """
        pending|submitted -> failed, removing any queue entry.

        Returns the updated record, or None if the record was not in
        `expected_status`.
        """
        now = self._now()
        async with self.db.transaction() as tx:
            status = await tx.execute(
                """
                UPDATE submissions
                SET status = $1, error_message = $2, updated_at = $3
                WHERE id = $4 AND status = $5
                """,
                SubmissionStatus.FAILED.value,
                error_message[:1000],
                now,
                submission_id,
                SubmissionStatus(expected_status).value,
            )
            if affected_rows(status) == 0:
                return None
            await self._delete_queue_entry(tx, submission_id)
            if audit is not None:
                await self.write_audit(tx, audit)

        return await self.get(submission_id)

    async def record_transient_error(self, submission_id: str, error_message: str) -> bool:
        """Store the latest failure detail on a record that stays pending."""
        status = await self.db.execute(
            """
            UPDATE submissions
            SET error_message = $1, updated_at = $2
            WHERE id = $3 AND status = $4
            """,
            error_message[:1000],
            self._now(),
            submission_id,
            SubmissionStatus.PENDING.value,
        )
        return affected_rows(status) == 1

    async def mark_confirmed(
        self,
        record: SubmissionRecord,
        receipt: ConfirmationReceipt,
        audit: Optional[AuditEntry] = None,
    ) -> bool:
        """
        record.status -> confirmed, storing the receipt.

        The update is conditional on the record still having the status it
        was read with. Returns False when another writer got there first.
        """
        now = self._now()
        async with self.db.transaction() as tx:
            status = await tx.execute(
                """
                UPDATE submissions
                SET status = $1, confirmed_at = $2, updated_at = $3
                WHERE id = $4 AND status = $5
                """,
                SubmissionStatus.CONFIRMED.value,
                receipt.confirmed_at,
                now,
                record.id,
                record.status.value,
            )
            if affected_rows(status) == 0:
                return False

            await self._delete_queue_entry(tx, record.id)
            await tx.execute(
                """
                INSERT INTO submission_confirmations (
                    submission_id, confirmation_method, confirmation_code,
                    receipt_url, payload, confirmed_at, created_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7)
                ON CONFLICT (submission_id) DO NOTHING
                """,
                record.id,
                receipt.confirmation_method.value,
                receipt.confirmation_code,
                receipt.receipt_url,
                json.dumps(receipt.payload) if receipt.payload is not None else None,
                receipt.confirmed_at,
                now,
            )
            if audit is not None:
                await self.write_audit(tx, audit)

        return True

    async def delete_for_recommendation(self, recommendation_id: str) -> int:
        """Remove every record of a recommendation. Queue, receipt and audit rows cascade."""
        status = await self.db.execute(
            "DELETE FROM submissions WHERE recommendation_id = $1", recommendation_id
        )
        deleted = affected_rows(status)
        logger.info(f"Deleted {deleted} submissions for recommendation {recommendation_id}")
        return deleted

    # ------------------------------------------------------------------
    # Helpers shared with the scheduler
    # ------------------------------------------------------------------

    @staticmethod
    async def _delete_queue_entry(tx: DatabaseSession, submission_id: str) -> int:
        status = await tx.execute(
            "DELETE FROM submission_queue WHERE submission_id = $1", submission_id
        )
        return affected_rows(status)

    @staticmethod
    async def write_audit(tx: DatabaseSession, entry: AuditEntry) -> None:
        await tx.execute(
            """
            INSERT INTO submission_audit (
                id, submission_id, action, actor, from_status, to_status, details, created_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
            """,
            entry.id,
            entry.submission_id,
            entry.action,
            entry.actor,
            entry.from_status.value if entry.from_status else None,
            entry.to_status.value if entry.to_status else None,
            json.dumps(entry.details) if entry.details is not None else None,
            entry.created_at,
        )
        logger.info(
            f"Audit: {entry.action} on {entry.submission_id} by {entry.actor} "
            f"({_status_value(entry.from_status)} -> {_status_value(entry.to_status)})"
        )

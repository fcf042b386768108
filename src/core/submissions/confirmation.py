"""
Confirmation Receiver

Applies confirmation and rejection signals coming back from universities
(webhooks, email parsing, manual entry). Confirmations are idempotent: a
repeated signal for an already confirmed submission is a successful no-op
and never moves confirmed_at.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from ..observability import record_counter, submission_span
from .errors import DuplicateConfirmationError, InvalidStateTransitionError
from .models import (
    AuditEntry,
    ConfirmationMethod,
    ConfirmationReceipt,
    SubmissionRecord,
    SubmissionStatus,
)
from .notifications import NotificationBridge
from .store import Clock, SubmissionStore, utcnow

logger = logging.getLogger(__name__)

REJECTION_PREFIX = "Rejected by university: "


class ConfirmationReceiver:
    """Entry point for inbound delivery confirmations."""

    def __init__(
        self,
        store: SubmissionStore,
        notifications: Optional[NotificationBridge] = None,
        now: Optional[Clock] = None,
    ):
        self.store = store
        self.notifications = notifications
        self._now = now or utcnow

    async def confirm(
        self,
        identifier: str,
        confirmed_at: Optional[datetime] = None,
        payload: Optional[Dict[str, Any]] = None,
        method: ConfirmationMethod = ConfirmationMethod.WEBHOOK,
        override: bool = False,
        actor: Optional[str] = None,
        confirmation_code: Optional[str] = None,
        receipt_url: Optional[str] = None,
    ) -> SubmissionRecord:
        """
        Mark a submission confirmed.

        `identifier` is a submission id or the external reference assigned at
        delivery. Only submitted records can be confirmed unless `override`
        is set, which also confirms pending or failed records and writes an
        audit entry.
        """
        record = await self.store.find(identifier)
        method = ConfirmationMethod(method)

        with submission_span(
            "submission.confirm",
            record.id,
            university_id=record.university_id,
            method=method.value,
            override=override,
        ):
            try:
                return await self._apply(
                    record,
                    confirmed_at or self._now(),
                    payload,
                    method,
                    override,
                    actor,
                    confirmation_code,
                    receipt_url,
                )
            except DuplicateConfirmationError:
                logger.info(
                    f"Submission {record.id} already confirmed, ignoring duplicate signal",
                    extra=record.log_context(),
                )
                return await self.store.require(record.id)

    async def _apply(
        self,
        record: SubmissionRecord,
        confirmed_at: datetime,
        payload: Optional[Dict[str, Any]],
        method: ConfirmationMethod,
        override: bool,
        actor: Optional[str],
        confirmation_code: Optional[str],
        receipt_url: Optional[str],
    ) -> SubmissionRecord:
        if record.status == SubmissionStatus.CONFIRMED:
            raise DuplicateConfirmationError(record.id)

        if record.status != SubmissionStatus.SUBMITTED and not override:
            raise InvalidStateTransitionError(
                record.id, record.status.value, SubmissionStatus.CONFIRMED.value
            )

        receipt = ConfirmationReceipt(
            submission_id=record.id,
            confirmation_method=method,
            confirmation_code=confirmation_code,
            receipt_url=receipt_url,
            payload=payload,
            confirmed_at=confirmed_at,
        )

        audit = None
        if record.status != SubmissionStatus.SUBMITTED:
            audit = AuditEntry(
                submission_id=record.id,
                action="confirm_override",
                actor=actor,
                from_status=record.status,
                to_status=SubmissionStatus.CONFIRMED,
                details={"method": method.value, "confirmation_code": confirmation_code},
                created_at=self._now(),
            )

        applied = await self.store.mark_confirmed(record, receipt, audit=audit)
        if not applied:
            # Status moved between read and write; judge the signal against the new state
            current = await self.store.require(record.id)
            if current.status == SubmissionStatus.CONFIRMED:
                raise DuplicateConfirmationError(record.id)
            return await self._apply(
                current, confirmed_at, payload, method, override, actor,
                confirmation_code, receipt_url,
            )

        updated = await self.store.require(record.id)
        record_counter("submissions_confirmed_total", attributes={"method": method.value})
        logger.info(
            f"Submission {record.id} confirmed via {method.value}"
            f"{' (override by ' + str(actor) + ')' if audit else ''}",
            extra=updated.log_context(confirmation_method=method.value),
        )
        if self.notifications:
            await self.notifications.notify(updated, record.status)
        return updated

    async def reject(
        self,
        identifier: str,
        reason: str,
        actor: Optional[str] = None,
    ) -> SubmissionRecord:
        """
        Record a rejection reported by the university.

        submitted or pending -> failed. Rejecting a failed submission again
        is a no-op; rejecting a confirmed one is invalid.
        """
        record = await self.store.find(identifier)

        while True:
            if record.status == SubmissionStatus.FAILED:
                logger.info(f"Submission {record.id} already failed, ignoring rejection")
                return record
            if record.status == SubmissionStatus.CONFIRMED:
                raise InvalidStateTransitionError(
                    record.id, record.status.value, SubmissionStatus.FAILED.value
                )

            audit = AuditEntry(
                submission_id=record.id,
                action="reject",
                actor=actor,
                from_status=record.status,
                to_status=SubmissionStatus.FAILED,
                details={"reason": reason},
                created_at=self._now(),
            )
            updated = await self.store.mark_failed(
                record.id,
                f"{REJECTION_PREFIX}{reason}",
                expected_status=record.status,
                audit=audit,
            )
            if updated is not None:
                break
            record = await self.store.require(record.id)

        logger.warning(
            f"Submission {record.id} rejected by {record.university_id}: {reason}",
            extra=updated.log_context(),
        )
        if self.notifications:
            await self.notifications.notify(updated, record.status)
        return updated

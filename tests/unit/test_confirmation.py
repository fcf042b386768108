"""
Tests for the confirmation receiver.
"""

from datetime import datetime, timezone

import pytest

from src.core.submissions.errors import (
    InvalidStateTransitionError,
    PermanentDeliveryError,
    SubmissionNotFoundError,
    TransientDeliveryError,
)
from src.core.submissions.models import ConfirmationMethod, DeliveryOutcome, SubmissionStatus


async def submitted_record(pipeline, university_id="oxford"):
    [record] = await pipeline.service.create_for_recommendation("rec-1", [university_id])
    await pipeline.processor.process_batch()
    record = await pipeline.store.require(record.id)
    assert record.status == SubmissionStatus.SUBMITTED
    return record


class TestConfirm:
    """Test confirming submitted records."""

    @pytest.mark.asyncio
    async def test_confirm_submitted(self, pipeline, sessions):
        record = await submitted_record(pipeline)
        confirmed_at = datetime(2026, 9, 2, 8, 30, tzinfo=timezone.utc)

        updated = await pipeline.confirmations.confirm(
            record.id,
            confirmed_at=confirmed_at,
            payload={"status": "received"},
            confirmation_code="OX-4411",
        )

        assert updated.status == SubmissionStatus.CONFIRMED
        assert updated.confirmed_at == confirmed_at
        assert sessions.statuses(record.id)[-1] == "confirmed"

        receipt = await pipeline.store.get_receipt(record.id)
        assert receipt.confirmation_method == ConfirmationMethod.WEBHOOK
        assert receipt.confirmation_code == "OX-4411"
        assert receipt.payload == {"status": "received"}

    @pytest.mark.asyncio
    async def test_duplicate_confirmation_is_noop(self, pipeline, clock):
        record = await submitted_record(pipeline)
        first = await pipeline.confirmations.confirm(record.id)

        clock.advance(hours=3)
        second = await pipeline.confirmations.confirm(
            record.id, confirmed_at=clock(), confirmation_code="LATE"
        )

        assert second.status == SubmissionStatus.CONFIRMED
        assert second.confirmed_at == first.confirmed_at
        receipt = await pipeline.store.get_receipt(record.id)
        assert receipt.confirmation_code is None

    @pytest.mark.asyncio
    async def test_confirm_by_external_reference(self, pipeline):
        record = await submitted_record(pipeline, "mit")
        assert record.external_reference == "PORTAL-1"

        updated = await pipeline.confirmations.confirm("PORTAL-1")

        assert updated.id == record.id
        assert updated.status == SubmissionStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_confirm_pending_rejected(self, pipeline):
        [record] = await pipeline.service.create_for_recommendation("rec-1", ["oxford"])

        with pytest.raises(InvalidStateTransitionError):
            await pipeline.confirmations.confirm(record.id)

        assert (await pipeline.store.require(record.id)).status == SubmissionStatus.PENDING

    @pytest.mark.asyncio
    async def test_override_confirms_pending_with_audit(self, pipeline):
        [record] = await pipeline.service.create_for_recommendation("rec-1", ["oxford"])

        updated = await pipeline.confirmations.confirm(
            record.id,
            method=ConfirmationMethod.MANUAL,
            override=True,
            actor="registrar",
        )

        assert updated.status == SubmissionStatus.CONFIRMED
        assert await pipeline.scheduler.get_entry(record.id) is None

        audit = await pipeline.store.list_audit(record.id)
        assert [a.action for a in audit] == ["confirm_override"]
        assert audit[0].actor == "registrar"
        assert audit[0].from_status == SubmissionStatus.PENDING

    @pytest.mark.asyncio
    async def test_unknown_identifier(self, pipeline):
        with pytest.raises(SubmissionNotFoundError):
            await pipeline.confirmations.confirm("no-such-thing")


class TestReject:
    """Test rejections reported by universities."""

    @pytest.mark.asyncio
    async def test_reject_submitted(self, pipeline):
        record = await submitted_record(pipeline)

        updated = await pipeline.confirmations.reject(record.id, "missing signature", actor="webhook")

        assert updated.status == SubmissionStatus.FAILED
        assert updated.error_message == "Rejected by university: missing signature"
        audit = await pipeline.store.list_audit(record.id)
        assert audit[-1].action == "reject"
        assert audit[-1].details == {"reason": "missing signature"}

    @pytest.mark.asyncio
    async def test_reject_pending_removes_queue_entry(self, pipeline):
        [record] = await pipeline.service.create_for_recommendation("rec-1", ["mit"])

        await pipeline.confirmations.reject(record.id, "closed")

        assert await pipeline.scheduler.get_entry(record.id) is None

    @pytest.mark.asyncio
    async def test_reject_failed_is_noop(self, pipeline):
        record = await submitted_record(pipeline)
        await pipeline.confirmations.reject(record.id, "first")

        again = await pipeline.confirmations.reject(record.id, "second")

        assert again.error_message == "Rejected by university: first"

    @pytest.mark.asyncio
    async def test_reject_confirmed_invalid(self, pipeline):
        record = await submitted_record(pipeline)
        await pipeline.confirmations.confirm(record.id)

        with pytest.raises(InvalidStateTransitionError):
            await pipeline.confirmations.reject(record.id, "too late")


class TestConfirmationDuringDelivery:
    """A confirmation that lands while a delivery attempt is still running."""

    def _confirm_during_send(self, pipeline, monkeypatch, notifier, error=None):
        async def send(to, subject, body):
            [record] = await pipeline.service.list_for_recommendation("rec-1")
            await pipeline.confirmations.confirm(
                record.id, method=ConfirmationMethod.MANUAL, override=True, actor="registrar"
            )
            if error is not None:
                raise error
            return "<late@mail.test>"

        monkeypatch.setattr(notifier, "send", send)

    @pytest.mark.asyncio
    async def test_success_does_not_undo_confirmation(self, pipeline, notifier, sessions, monkeypatch):
        self._confirm_during_send(pipeline, monkeypatch, notifier)
        [record] = await pipeline.service.create_for_recommendation("rec-1", ["stanford"])

        await pipeline.processor.process_batch()

        updated = await pipeline.store.require(record.id)
        assert updated.status == SubmissionStatus.CONFIRMED
        assert updated.external_reference is None
        assert await pipeline.scheduler.get_entry(record.id) is None
        assert sessions.statuses(record.id) == ["pending", "confirmed"]

    @pytest.mark.asyncio
    async def test_transient_failure_finds_no_queue_entry(self, pipeline, notifier, monkeypatch):
        self._confirm_during_send(pipeline, monkeypatch, notifier, error=TransientDeliveryError("relay busy"))
        [record] = await pipeline.service.create_for_recommendation("rec-1", ["stanford"])

        await pipeline.processor.process_batch()

        updated = await pipeline.store.require(record.id)
        assert updated.status == SubmissionStatus.CONFIRMED
        assert updated.retry_count == 0
        assert updated.error_message is None
        assert await pipeline.scheduler.get_entry(record.id) is None
        assert (await pipeline.scheduler.queue_status()).total == 0

    @pytest.mark.asyncio
    async def test_permanent_failure_does_not_fail_confirmed(self, pipeline, notifier, monkeypatch):
        self._confirm_during_send(pipeline, monkeypatch, notifier, error=PermanentDeliveryError("mailbox gone"))
        [record] = await pipeline.service.create_for_recommendation("rec-1", ["stanford"])

        await pipeline.processor.process_batch()

        assert (await pipeline.store.require(record.id)).status == SubmissionStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_outcome_after_confirmation_is_ignored(self, pipeline):
        [record] = await pipeline.service.create_for_recommendation("rec-1", ["mit"])
        [entry] = await pipeline.scheduler.dequeue_ready(1)
        await pipeline.confirmations.confirm(record.id, method=ConfirmationMethod.MANUAL, override=True)

        result = await pipeline.scheduler.record_outcome(record.id, DeliveryOutcome.transient("timeout"))

        assert result is None
        assert (await pipeline.store.require(record.id)).status == SubmissionStatus.CONFIRMED
        assert await pipeline.scheduler.get_entry(record.id) is None

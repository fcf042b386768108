"""
Tests for deliverers and the delivery dispatcher.
"""

import asyncio
import json

import httpx
import pytest

from src.core.submissions import DeliveryMethod, RecipientConfig
from src.core.submissions.deliverers import (
    Deliverer,
    DelivererRegistry,
    ManualDeliverer,
    format_letter,
    sign_payload,
)
from src.core.submissions.errors import PermanentDeliveryError
from src.core.submissions.models import DeliveryOutcome, OutcomeKind, SubmissionStatus


class SlowDeliverer(Deliverer):
    method = DeliveryMethod.MANUAL

    async def deliver(self, record, letter, recipient):
        await asyncio.sleep(5)
        return DeliveryOutcome.success("too-late")


async def create_one(pipeline, university_id):
    [record] = await pipeline.service.create_for_recommendation("rec-1", [university_id])
    return record


class TestApiDelivery:
    """Test API deliveries against the fake portal."""

    @pytest.mark.asyncio
    async def test_success_uses_portal_reference(self, pipeline, portal):
        record = await create_one(pipeline, "mit")

        outcome = await pipeline.dispatcher.dispatch(record)

        assert outcome.kind == OutcomeKind.SUCCESS
        assert outcome.external_reference == "PORTAL-1"
        updated = await pipeline.store.require(record.id)
        assert updated.status == SubmissionStatus.SUBMITTED
        assert updated.external_reference == "PORTAL-1"

    @pytest.mark.asyncio
    async def test_request_is_signed(self, pipeline, portal):
        record = await create_one(pipeline, "mit")

        await pipeline.dispatcher.dispatch(record)

        request = portal.requests[0]
        assert str(request.url) == "https://admissions.mit.test/recommendations"
        assert request.headers["X-Submission-ID"] == record.id
        expected = sign_payload("mit-secret", request.headers["X-Timestamp"], request.content)
        assert request.headers["X-Signature"] == expected

        body = json.loads(request.content)
        assert body["submission_id"] == record.id
        assert body["recommendation"]["applicant_name"] == "Ada Lovelace"
        assert "University: MIT" in body["formatted_content"]

    @pytest.mark.asyncio
    async def test_reference_falls_back_to_generated(self, pipeline, portal):
        portal.responses = [httpx.Response(202, text="accepted")]
        record = await create_one(pipeline, "mit")

        outcome = await pipeline.dispatcher.dispatch(record)

        assert outcome.external_reference.startswith(f"api-{record.id[:8]}-")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [400, 401, 404, 409, 422])
    async def test_client_errors_are_permanent(self, pipeline, portal, status):
        portal.responses = [httpx.Response(status, text="nope")]
        record = await create_one(pipeline, "mit")

        outcome = await pipeline.dispatcher.dispatch(record)

        assert outcome.kind == OutcomeKind.PERMANENT_FAILURE
        assert (await pipeline.store.require(record.id)).status == SubmissionStatus.FAILED

    @pytest.mark.asyncio
    @pytest.mark.parametrize("response", [
        httpx.Response(500),
        httpx.Response(503),
        httpx.ReadTimeout("read timed out"),
        httpx.ConnectError("connection refused"),
    ])
    async def test_server_and_network_errors_are_transient(self, pipeline, portal, response):
        portal.responses = [response]
        record = await create_one(pipeline, "mit")

        outcome = await pipeline.dispatcher.dispatch(record)

        assert outcome.kind == OutcomeKind.TRANSIENT_FAILURE
        updated = await pipeline.store.require(record.id)
        assert updated.status == SubmissionStatus.PENDING
        assert updated.error_message == outcome.reason

    @pytest.mark.asyncio
    async def test_missing_endpoint_is_permanent(self, pipeline, portal, directory, provider, letter_factory):
        directory.add(RecipientConfig(university_id="cmu", name="CMU", delivery_method=DeliveryMethod.API))
        provider.letters["rec-1"] = letter_factory(university_ids=["cmu"])
        record = await create_one(pipeline, "cmu")

        outcome = await pipeline.dispatcher.dispatch(record)

        assert outcome.kind == OutcomeKind.PERMANENT_FAILURE
        assert "No API endpoint" in outcome.reason
        assert portal.requests == []


class TestEmailDelivery:
    """Test email deliveries through the notifier."""

    @pytest.mark.asyncio
    async def test_success(self, pipeline, notifier):
        record = await create_one(pipeline, "stanford")

        outcome = await pipeline.dispatcher.dispatch(record)

        assert outcome.external_reference == "<msg-1@mail.test>"
        to, subject, body = notifier.sent[0]
        assert to == "admissions@stanford.test"
        assert "Ada Lovelace" in subject
        assert body.startswith("Letter of Recommendation for Ada Lovelace")

    @pytest.mark.asyncio
    async def test_transport_error_is_transient(self, pipeline, notifier):
        notifier.error = ConnectionError("relay unreachable")
        record = await create_one(pipeline, "stanford")

        outcome = await pipeline.dispatcher.dispatch(record)

        assert outcome.kind == OutcomeKind.TRANSIENT_FAILURE
        assert "relay unreachable" in outcome.reason

    @pytest.mark.asyncio
    async def test_refused_recipient_is_permanent(self, pipeline, notifier):
        notifier.error = PermanentDeliveryError("mailbox unknown")
        record = await create_one(pipeline, "stanford")

        outcome = await pipeline.dispatcher.dispatch(record)

        assert outcome.kind == OutcomeKind.PERMANENT_FAILURE
        assert outcome.reason == "mailbox unknown"


class TestManualDelivery:
    """Test manual deliveries."""

    @pytest.mark.asyncio
    async def test_submitted_with_placeholder_reference(self, pipeline):
        record = await create_one(pipeline, "oxford")

        outcome = await pipeline.dispatcher.dispatch(record)

        assert outcome.external_reference == f"manual-{record.id[:8]}"
        assert (await pipeline.store.require(record.id)).status == SubmissionStatus.SUBMITTED


class TestDispatcherFailures:
    """Test lookups and timeouts around the deliverer."""

    @pytest.mark.asyncio
    async def test_missing_letter_is_permanent(self, pipeline, provider):
        record = await create_one(pipeline, "oxford")
        del provider.letters["rec-1"]

        outcome = await pipeline.dispatcher.dispatch(record)

        assert outcome.kind == OutcomeKind.PERMANENT_FAILURE
        assert "rec-1" in outcome.reason

    @pytest.mark.asyncio
    async def test_incomplete_letter_is_permanent(self, pipeline, provider, letter_factory):
        record = await create_one(pipeline, "oxford")
        provider.letters["rec-1"] = letter_factory(program="")

        outcome = await pipeline.dispatcher.dispatch(record)

        assert outcome.kind == OutcomeKind.PERMANENT_FAILURE
        assert "program" in outcome.reason

    @pytest.mark.asyncio
    async def test_attempt_timeout_is_transient(self, build_pipeline, config_factory):
        registry = DelivererRegistry()
        registry.register(SlowDeliverer())
        pipeline = build_pipeline(config_factory(dispatch_timeout=0.05), deliverers=registry)
        record = await create_one(pipeline, "oxford")

        outcome = await pipeline.dispatcher.dispatch(record)

        assert outcome.kind == OutcomeKind.TRANSIENT_FAILURE
        assert "timeout" in outcome.reason
        assert (await pipeline.store.require(record.id)).status == SubmissionStatus.PENDING

    @pytest.mark.asyncio
    async def test_unregistered_method_is_permanent(self, build_pipeline):
        registry = DelivererRegistry()
        registry.register(ManualDeliverer())
        pipeline = build_pipeline(deliverers=registry)
        record = await create_one(pipeline, "stanford")

        outcome = await pipeline.dispatcher.dispatch(record)

        assert outcome.kind == OutcomeKind.PERMANENT_FAILURE
        assert "email" in outcome.reason

    @pytest.mark.asyncio
    async def test_outcome_not_applied_to_non_pending(self, pipeline):
        record = await create_one(pipeline, "oxford")
        await pipeline.confirmations.reject(record.id, "withdrawn")

        updated = await pipeline.dispatcher.apply(record, DeliveryOutcome.success("late"))

        assert updated is None
        assert (await pipeline.store.require(record.id)).status == SubmissionStatus.FAILED


class TestRegistry:
    """Test deliverer registration."""

    def test_duplicate_method_rejected(self):
        registry = DelivererRegistry()
        registry.register(ManualDeliverer())
        with pytest.raises(ValueError):
            registry.register(ManualDeliverer())

    def test_methods(self, pipeline):
        assert pipeline.deliverers.methods == ["api", "email", "manual"]


def test_format_letter(letter_factory):
    recipient = RecipientConfig(university_id="mit", name="MIT", delivery_method=DeliveryMethod.API)
    text = format_letter(letter_factory(), recipient)

    assert text.splitlines()[:5] == [
        "Letter of Recommendation for Ada Lovelace",
        "",
        "Program: MSc Computer Science",
        "Application Term: Fall 2027",
        "University: MIT",
    ]

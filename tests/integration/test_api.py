"""
API Integration Tests

Drive the FastAPI app in-process over the in-memory pipeline.
"""

import json
import time

import httpx
import pytest
from httpx import AsyncClient, ASGITransport

from src.api.delivery.main import create_app
from src.core.submissions.deliverers import sign_payload

WEBHOOK_SECRET = "whsec-integration"
ADMIN_KEY = "admin-key-integration"


@pytest.fixture
def secured_pipeline(build_pipeline, config_factory):
    """Pipeline with webhook signing and an admin key configured."""
    return build_pipeline(config_factory(webhook_secret=WEBHOOK_SECRET, admin_api_key=ADMIN_KEY))


@pytest.fixture
async def secured_client(secured_pipeline, sse_manager):
    app = create_app(pipeline=secured_pipeline, sse_manager=sse_manager)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


def signed_headers(body: bytes, secret: str = WEBHOOK_SECRET) -> dict:
    timestamp = str(int(time.time()))
    return {
        "Content-Type": "application/json",
        "X-Timestamp": timestamp,
        "X-Signature": sign_payload(secret, timestamp, body),
    }


async def create(client, **body):
    body.setdefault("recommendation_id", "rec-1")
    response = await client.post("/api/submissions", json=body)
    assert response.status_code == 201, response.text
    return response.json()["data"]


class TestHealthEndpoints:
    """Test health endpoints."""

    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_live(self, client):
        response = await client.get("/health/live")
        assert response.json() == {"status": "alive"}

    @pytest.mark.asyncio
    async def test_ready(self, client):
        response = await client.get("/health/ready")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ready"
        assert data["checks"]["database"] == "healthy"
        assert data["checks"]["processor"] == "stopped"

    @pytest.mark.asyncio
    async def test_security_and_trace_headers(self, client):
        response = await client.get("/health", headers={"X-Trace-ID": "trace-abc"})

        assert response.headers["X-Trace-ID"] == "trace-abc"
        assert response.headers["X-Content-Type-Options"] == "nosniff"


class TestSubmissionEndpoints:
    """Test creation and polling."""

    @pytest.mark.asyncio
    async def test_create(self, client):
        response = await client.post(
            "/api/submissions",
            json={"recommendation_id": "rec-1", "university_ids": ["mit", "oxford"], "priority": 7},
        )

        assert response.status_code == 201
        body = response.json()
        assert body["meta"]["total"] == 2
        assert body["meta"]["correlation_id"] == "rec-1"
        assert {s["university_id"] for s in body["data"]} == {"mit", "oxford"}
        assert all(s["status"] == "pending" and s["priority"] == 7 for s in body["data"])

    @pytest.mark.asyncio
    async def test_create_unknown_recommendation(self, client):
        response = await client.post("/api/submissions", json={"recommendation_id": "rec-404"})

        assert response.status_code == 404
        error = response.json()["error"]
        assert error["code"] == "RECOMMENDATION_NOT_FOUND"
        assert error["trace_id"]
        assert error["timestamp"].endswith("Z")

    @pytest.mark.asyncio
    async def test_create_unknown_university(self, client):
        response = await client.post(
            "/api/submissions", json={"recommendation_id": "rec-1", "university_ids": ["sorbonne"]}
        )
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "RECIPIENT_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_create_invalid_priority(self, client):
        response = await client.post("/api/submissions", json={"recommendation_id": "rec-1", "priority": 11})

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "VALIDATION_ERROR"
        assert any(d["field"] == "body.priority" for d in error["details"])

    @pytest.mark.asyncio
    async def test_list_and_get(self, client):
        created = await create(client)

        listing = await client.get("/api/submissions", params={"recommendation_id": "rec-1"})
        assert listing.status_code == 200
        assert listing.json()["meta"]["total"] == 3

        response = await client.get(f"/api/submissions/{created[0]['id']}")
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["id"] == created[0]["id"]
        assert data["receipt"] is None

    @pytest.mark.asyncio
    async def test_get_missing(self, client):
        response = await client.get("/api/submissions/does-not-exist")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "SUBMISSION_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_stats(self, client, pipeline):
        await create(client)
        await pipeline.processor.process_batch()

        response = await client.get("/api/submissions/stats")

        assert response.status_code == 200
        assert response.json()["data"] == {
            "pending": 0, "submitted": 3, "confirmed": 0, "failed": 0, "total": 3,
        }

    @pytest.mark.asyncio
    async def test_list_requires_recommendation(self, client):
        response = await client.get("/api/submissions")
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_summary_and_delete(self, client):
        await create(client)

        summary = await client.get("/api/submissions/summary", params={"recommendation_id": "rec-1"})
        assert summary.json()["data"]["pending"] == 3
        assert [u["university_id"] for u in summary.json()["data"]["universities"]] == ["mit", "oxford", "stanford"]

        deleted = await client.delete("/api/submissions", params={"recommendation_id": "rec-1"})
        assert deleted.json()["data"] == {"deleted": 3}

        listing = await client.get("/api/submissions", params={"recommendation_id": "rec-1"})
        assert listing.json()["data"] == []


class TestConfirmationWebhook:
    """Test inbound confirmations."""

    @pytest.mark.asyncio
    async def test_confirm_by_external_reference(self, client, pipeline):
        [record] = await create(client, university_ids=["mit"])
        await pipeline.processor.process_batch()

        response = await client.post(
            "/api/confirmations/webhook",
            json={
                "external_reference": "PORTAL-1",
                "status": "received",
                "confirmation_code": "MIT-77",
                "confirmed_at": "2026-09-02T09:00:00Z",
            },
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["id"] == record["id"]
        assert data["status"] == "confirmed"

        detail = (await client.get(f"/api/submissions/{record['id']}")).json()["data"]
        assert detail["receipt"]["confirmation_code"] == "MIT-77"
        assert detail["receipt"]["confirmation_method"] == "webhook"
        assert detail["receipt"]["payload"] == {"status": "received"}

    @pytest.mark.asyncio
    async def test_duplicate_webhook_is_noop(self, client, pipeline):
        [record] = await create(client, university_ids=["oxford"])
        await pipeline.processor.process_batch()
        body = {"submission_id": record["id"], "status": "confirmed", "confirmed_at": "2026-09-02T09:00:00Z"}

        first = await client.post("/api/confirmations/webhook", json=body)
        body["confirmed_at"] = "2026-09-05T09:00:00Z"
        second = await client.post("/api/confirmations/webhook", json=body)

        assert second.status_code == 200
        assert second.json()["data"]["confirmed_at"] == first.json()["data"]["confirmed_at"]

    @pytest.mark.asyncio
    async def test_rejection(self, client, pipeline):
        [record] = await create(client, university_ids=["oxford"])
        await pipeline.processor.process_batch()

        response = await client.post(
            "/api/confirmations/webhook",
            json={"submission_id": record["id"], "status": "rejected", "reason": "program closed"},
        )

        data = response.json()["data"]
        assert data["status"] == "failed"
        assert data["error_message"] == "Rejected by university: program closed"

    @pytest.mark.asyncio
    async def test_confirm_pending_is_invalid(self, client):
        [record] = await create(client, university_ids=["oxford"])

        response = await client.post(
            "/api/confirmations/webhook", json={"submission_id": record["id"], "status": "confirmed"}
        )

        assert response.status_code == 422
        assert response.json()["error"]["code"] == "INVALID_STATE_TRANSITION"

    @pytest.mark.asyncio
    async def test_missing_identifier(self, client):
        response = await client.post("/api/confirmations/webhook", json={"status": "confirmed"})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_unknown_submission(self, client):
        response = await client.post(
            "/api/confirmations/webhook", json={"submission_id": "nope", "status": "confirmed"}
        )
        assert response.status_code == 404


class TestSignedWebhook:
    """Test webhook signature enforcement."""

    @pytest.mark.asyncio
    async def test_valid_signature(self, secured_client, secured_pipeline):
        [record] = await secured_pipeline.service.create_for_recommendation("rec-1", ["oxford"])
        await secured_pipeline.processor.process_batch()
        body = json.dumps({"submission_id": record.id, "status": "confirmed"}).encode()

        response = await secured_client.post(
            "/api/confirmations/webhook", content=body, headers=signed_headers(body)
        )

        assert response.status_code == 200
        assert response.json()["data"]["status"] == "confirmed"

    @pytest.mark.asyncio
    async def test_unsigned_rejected(self, secured_client, secured_pipeline):
        [record] = await secured_pipeline.service.create_for_recommendation("rec-1", ["oxford"])
        await secured_pipeline.processor.process_batch()

        response = await secured_client.post(
            "/api/confirmations/webhook", json={"submission_id": record.id, "status": "confirmed"}
        )

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "INVALID_SIGNATURE"
        assert (await secured_pipeline.store.require(record.id)).status.value == "submitted"

    @pytest.mark.asyncio
    async def test_wrong_secret_rejected(self, secured_client):
        body = b'{"submission_id": "x", "status": "confirmed"}'
        response = await secured_client.post(
            "/api/confirmations/webhook", content=body, headers=signed_headers(body, secret="guess")
        )
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_no_secret_rejects_unless_insecure(self, build_pipeline, config_factory, sse_manager):
        closed = build_pipeline(config_factory(webhook_secret="", webhook_insecure=False))
        [record] = await closed.service.create_for_recommendation("rec-1", ["oxford"])
        await closed.processor.process_batch()
        app = create_app(pipeline=closed, sse_manager=sse_manager)

        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            response = await client.post(
                "/api/confirmations/webhook", json={"submission_id": record.id, "status": "confirmed"}
            )

        assert response.status_code == 401
        assert (await closed.store.require(record.id)).status.value == "submitted"


class TestAdminEndpoints:
    """Test operator endpoints."""

    @pytest.mark.asyncio
    async def test_retry_failed_submission(self, client, pipeline, portal):
        portal.responses = [httpx.Response(400)]
        [record] = await create(client, university_ids=["mit"])
        await pipeline.processor.process_batch()

        response = await client.post(
            f"/api/admin/submissions/{record['id']}/retry",
            json={"priority": 9},
            headers={"X-Actor": "ops@example.edu"},
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["status"] == "pending"
        assert data["retry_count"] == 0
        assert data["priority"] == 9

        audit = (await client.get(f"/api/submissions/{record['id']}/audit")).json()["data"]
        assert audit[0]["action"] == "retry"
        assert audit[0]["actor"] == "ops@example.edu"

    @pytest.mark.asyncio
    async def test_retry_non_failed_conflicts(self, client):
        [record] = await create(client, university_ids=["mit"])

        response = await client.post(f"/api/admin/submissions/{record['id']}/retry")

        assert response.status_code == 422
        assert response.json()["error"]["code"] == "INVALID_STATE_TRANSITION"

    @pytest.mark.asyncio
    async def test_retry_all_failed(self, client, pipeline, portal):
        portal.responses = [httpx.Response(404)]
        await create(client)
        await pipeline.processor.process_batch()

        response = await client.post("/api/admin/submissions/retry-failed")

        assert response.json()["data"] == {"requeued": 1, "skipped": 0, "errors": []}

    @pytest.mark.asyncio
    async def test_retry_failed_filtered_by_university(self, client, pipeline, portal):
        portal.responses = [httpx.Response(404)]
        records = await create(client)
        await pipeline.processor.process_batch()
        for record in records:
            if record["university_id"] != "mit":
                await pipeline.confirmations.reject(record["id"], "Portal closed")

        response = await client.post(
            "/api/admin/submissions/retry-failed", json={"university_id": "mit", "max_retries": 3}
        )

        assert response.json()["data"]["requeued"] == 1
        statuses = {
            r.university_id: r.status.value
            for r in await pipeline.service.list_for_recommendation("rec-1")
        }
        assert statuses == {"mit": "pending", "stanford": "failed", "oxford": "failed"}

    @pytest.mark.asyncio
    async def test_retry_failed_rejects_bad_filter(self, client):
        response = await client.post("/api/admin/submissions/retry-failed", json={"max_retries": -1})
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_set_priority(self, client):
        [record] = await create(client, university_ids=["mit"])

        response = await client.put(
            f"/api/admin/submissions/{record['id']}/priority", json={"priority": 2}
        )
        assert response.status_code == 200
        assert response.json()["data"]["priority"] == 2

        bad = await client.put(f"/api/admin/submissions/{record['id']}/priority", json={"priority": 0})
        assert bad.status_code == 400

    @pytest.mark.asyncio
    async def test_manual_confirm_override(self, client):
        [record] = await create(client, university_ids=["oxford"])

        response = await client.post(
            f"/api/admin/submissions/{record['id']}/confirm",
            json={"override": True, "confirmation_code": "BY-PHONE", "notes": "registrar called"},
        )

        assert response.status_code == 200
        assert response.json()["data"]["status"] == "confirmed"
        detail = (await client.get(f"/api/submissions/{record['id']}")).json()["data"]
        assert detail["receipt"]["confirmation_method"] == "manual"
        assert detail["receipt"]["payload"]["notes"] == "registrar called"

    @pytest.mark.asyncio
    async def test_queue_listing_and_status(self, client):
        await create(client)

        listing = await client.get("/api/admin/queue", params={"limit": 2})
        assert listing.json()["meta"]["total"] == 3
        assert len(listing.json()["data"]) == 2
        assert listing.json()["meta"]["has_more"] is True

        status = (await client.get("/api/admin/queue/status")).json()["data"]
        assert status["ready"] == 3
        assert status["processor"]["running"] is False

    @pytest.mark.asyncio
    async def test_run_scheduler_once(self, client):
        await create(client)

        response = await client.post("/api/admin/scheduler/run")

        assert response.json()["data"] == {"processed": 3}
        summary = await client.get("/api/submissions/summary", params={"recommendation_id": "rec-1"})
        assert summary.json()["data"]["submitted"] == 3

    @pytest.mark.asyncio
    async def test_monitoring_health(self, client):
        response = await client.get("/api/admin/monitoring/health", params={"run": True})

        assert response.status_code == 200
        assert response.json()["data"]["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_monitoring_health_includes_universities(self, client):
        response = await client.get("/api/admin/monitoring/health")

        assert response.json()["data"]["universities"] == []

    @pytest.mark.asyncio
    async def test_university_performance(self, client, pipeline, provider, letter_factory):
        for n in range(5):
            provider.letters[f"rec-{n}"] = letter_factory(f"rec-{n}")
            await create(client, recommendation_id=f"rec-{n}", university_ids=["oxford"])
        await pipeline.processor.process_batch()

        response = await client.get("/api/admin/monitoring/universities", params={"window_hours": 1})

        [oxford] = response.json()["data"]
        assert oxford["university_id"] == "oxford"
        assert oxford["total"] == 5
        assert oxford["success_rate"] == 0.0
        assert oxford["status"] == "down"


class TestAdminKey:
    """Test the admin key guard."""

    @pytest.mark.asyncio
    async def test_missing_key(self, secured_client):
        response = await secured_client.get("/api/admin/queue")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "UNAUTHORIZED"

    @pytest.mark.asyncio
    async def test_wrong_key(self, secured_client):
        response = await secured_client.get("/api/admin/queue", headers={"X-Admin-Key": "nope"})
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_valid_key(self, secured_client):
        response = await secured_client.get("/api/admin/queue", headers={"X-Admin-Key": ADMIN_KEY})
        assert response.status_code == 200


class TestEvents:
    """Test the event stream endpoints that do not hold a connection open."""

    @pytest.mark.asyncio
    async def test_stream_requires_user(self, client):
        response = await client.get("/api/events/stream")
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_stream_status(self, client):
        response = await client.get("/api/events/stream/status")

        assert response.status_code == 200
        assert response.json()["total_connections"] == 0


class TestOpenAPI:
    """Test the generated schema."""

    @pytest.mark.asyncio
    async def test_schema_lists_routes_and_error_model(self, client):
        response = await client.get("/openapi.json")

        schema = response.json()
        assert "/api/submissions" in schema["paths"]
        assert "/api/confirmations/webhook" in schema["paths"]
        assert "/api/admin/queue" in schema["paths"]
        assert "ErrorResponse" in schema["components"]["schemas"]

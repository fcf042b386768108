"""
Shared Test Fixtures

In-memory SQLite database, a controllable clock and in-process fakes for the
pipeline's collaborators.
"""

import httpx
import pytest
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Tuple

from src.core.database import DatabaseAdapter, DatabaseConfig, init_schema
from src.core.submissions import (
    DeliveryMethod,
    Letter,
    PipelineConfig,
    RecipientConfig,
    StaticRecipientDirectory,
    SubmissionPipeline,
)
from src.core.submissions.errors import RecommendationNotFoundError


class MutableClock:
    """Clock the tests move by hand."""

    def __init__(self, start: datetime = None):
        self.current = start or datetime(2026, 9, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float = 0, **kwargs) -> datetime:
        self.current = self.current + timedelta(seconds=seconds, **kwargs)
        return self.current


class FakeRecommendationProvider:
    def __init__(self, letters: List[Letter] = ()):
        self.letters: Dict[str, Letter] = {l.recommendation_id: l for l in letters}
        self.calls: List[str] = []

    async def get_letter(self, recommendation_id: str) -> Letter:
        self.calls.append(recommendation_id)
        letter = self.letters.get(recommendation_id)
        if letter is None:
            raise RecommendationNotFoundError(recommendation_id)
        return letter


class FakeNotifier:
    """Captures outgoing mail. Set `error` to make the next sends fail."""

    def __init__(self):
        self.sent: List[Tuple[str, str, str]] = []
        self.error: Exception = None

    async def send(self, to: str, subject: str, body: str) -> str:
        if self.error is not None:
            raise self.error
        self.sent.append((to, subject, body))
        return f"<msg-{len(self.sent)}@mail.test>"


class FakeTelemetry:
    def __init__(self):
        self.events: List[Tuple[str, Dict[str, Any]]] = []

    def record_event(self, name: str, payload: Dict[str, Any]) -> None:
        self.events.append((name, payload))

    def names(self) -> List[str]:
        return [name for name, _ in self.events]


class FakePortal:
    """
    Stand-in for university API endpoints, used as an httpx MockTransport
    handler. Queue responses in `responses`; when empty it accepts.
    """

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.responses: List[Any] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.responses:
            response = self.responses.pop(0)
            if isinstance(response, Exception):
                raise response
            return response
        return httpx.Response(201, json={"reference": f"PORTAL-{len(self.requests)}"})


class FakeSessions:
    """Session registry with every user online."""

    def __init__(self):
        self.pushed: List[Tuple[str, Dict[str, Any]]] = []

    async def push(self, user_id: str, event: Dict[str, Any]) -> int:
        self.pushed.append((user_id, event))
        return 1

    def statuses(self, submission_id: str) -> List[str]:
        return [e["status"] for _, e in self.pushed if e["submission_id"] == submission_id]


def make_letter(recommendation_id: str = "rec-1", **overrides) -> Letter:
    fields = dict(
        recommendation_id=recommendation_id,
        content="Ada is the most capable student I have supervised in twenty years.",
        applicant_name="Ada Lovelace",
        program="MSc Computer Science",
        term="Fall 2027",
        owner_id="user-1",
        recommender_name="Prof. Babbage",
        university_ids=["mit", "stanford", "oxford"],
    )
    fields.update(overrides)
    return Letter(**fields)


RECIPIENTS = [
    RecipientConfig(
        university_id="mit",
        name="MIT",
        delivery_method=DeliveryMethod.API,
        endpoint="https://admissions.mit.test/recommendations",
        signing_secret="mit-secret",
    ),
    RecipientConfig(
        university_id="stanford",
        name="Stanford",
        delivery_method=DeliveryMethod.EMAIL,
        email_address="admissions@stanford.test",
    ),
    RecipientConfig(
        university_id="oxford",
        name="Oxford",
        delivery_method=DeliveryMethod.MANUAL,
    ),
]


def make_config(**overrides) -> PipelineConfig:
    values = dict(
        process_interval=5,
        batch_size=20,
        max_concurrency=5,
        dispatch_timeout=5,
        max_attempts=3,
        base_delay_ms=1000,
        max_delay_ms=60000,
        backoff_multiplier=2.0,
        monitoring_interval=60,
        confirmation_window_hours=24,
        stall_threshold=600,
        failure_window=3600,
        failure_rate_threshold=0.25,
        failure_min_sample=4,
        auto_retry=False,
        max_auto_retries=3,
        alert_cooldown=900,
        signing_secret="",
        webhook_secret="",
        webhook_insecure=True,
        admin_api_key="",
        recipients_file="does-not-exist.yaml",
        smtp_timeout=4,
        processor_enabled=False,
        monitoring_enabled=False,
    )
    values.update(overrides)
    return PipelineConfig(**values)


@pytest.fixture
def clock():
    return MutableClock()


@pytest.fixture
async def db():
    adapter = DatabaseAdapter(DatabaseConfig(backend="sqlite", sqlite_path=":memory:"))
    await adapter.connect()
    await init_schema(adapter)
    yield adapter
    await adapter.disconnect()


@pytest.fixture
def provider():
    return FakeRecommendationProvider([make_letter()])


@pytest.fixture
def directory():
    return StaticRecipientDirectory(RECIPIENTS)


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def telemetry():
    return FakeTelemetry()


@pytest.fixture
def sessions():
    return FakeSessions()


@pytest.fixture
def config():
    return make_config()


@pytest.fixture
def portal():
    return FakePortal()


@pytest.fixture
async def http_client(portal):
    client = httpx.AsyncClient(transport=httpx.MockTransport(portal))
    yield client
    await client.aclose()


@pytest.fixture
def build_pipeline(db, provider, directory, notifier, telemetry, sessions, clock, http_client):
    """Factory for a pipeline over the shared fakes with custom settings."""

    def build(config: PipelineConfig = None, **kwargs) -> SubmissionPipeline:
        return SubmissionPipeline(
            db=db,
            provider=provider,
            directory=directory,
            notifier=notifier,
            config=config or make_config(),
            telemetry=telemetry,
            sessions=sessions,
            now=clock,
            http_client=http_client,
            **kwargs,
        )

    return build


@pytest.fixture
def pipeline(build_pipeline, config):
    return build_pipeline(config)


@pytest.fixture
def letter_factory():
    return make_letter


@pytest.fixture
def config_factory():
    return make_config

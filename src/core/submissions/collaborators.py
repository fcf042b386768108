"""
Pipeline Collaborators

Interfaces the pipeline consumes, plus the implementations the service
ships with:

- RecommendationProvider -> HttpRecommendationProvider (platform API over httpx)
- RecipientDirectory     -> StaticRecipientDirectory (YAML file or in memory)
- Notifier               -> SmtpNotifier (smtplib in a worker thread)
- TelemetrySink          -> ObservabilityTelemetrySink (log + OTel counter)
- SessionRegistry        -> SSEManager (src/api/shared/sse.py)
"""

import asyncio
import logging
import smtplib
import time
from dataclasses import dataclass, field
from email.message import EmailMessage
from email.utils import make_msgid
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, runtime_checkable

import httpx
import yaml

from ..observability import record_counter
from .errors import (
    PermanentDeliveryError,
    RecipientNotFoundError,
    RecommendationNotFoundError,
    TransientDeliveryError,
)
from .models import DeliveryMethod

logger = logging.getLogger(__name__)


@dataclass
class Letter:
    """A finalized recommendation letter and where it should go."""
    recommendation_id: str
    content: str
    applicant_name: str
    program: str
    term: str
    owner_id: Optional[str] = None
    recommender_name: Optional[str] = None
    university_ids: List[str] = field(default_factory=list)

    @property
    def word_count(self) -> int:
        return len(self.content.split())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recommendation_id": self.recommendation_id,
            "applicant_name": self.applicant_name,
            "program": self.program,
            "term": self.term,
            "recommender_name": self.recommender_name,
            "word_count": self.word_count,
            "content": self.content,
        }


@dataclass
class RecipientConfig:
    """Per-university delivery configuration."""
    university_id: str
    name: str
    delivery_method: DeliveryMethod
    endpoint: Optional[str] = None
    email_address: Optional[str] = None
    signing_secret: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RecipientConfig":
        return cls(
            university_id=str(data["university_id"]),
            name=data.get("name") or str(data["university_id"]),
            delivery_method=DeliveryMethod(data.get("delivery_method", "manual")),
            endpoint=data.get("endpoint"),
            email_address=data.get("email_address"),
            signing_secret=data.get("signing_secret"),
        )


# =============================================================================
# Interfaces
# =============================================================================

@runtime_checkable
class RecommendationProvider(Protocol):
    async def get_letter(self, recommendation_id: str) -> Letter:
        """Return the finalized letter or raise RecommendationNotFoundError."""
        ...


@runtime_checkable
class RecipientDirectory(Protocol):
    async def get_recipient(self, university_id: str) -> RecipientConfig:
        """Return the recipient config or raise RecipientNotFoundError."""
        ...


@runtime_checkable
class Notifier(Protocol):
    async def send(self, to: str, subject: str, body: str) -> str:
        """Hand a message to the transport and return its transport id."""
        ...


@runtime_checkable
class TelemetrySink(Protocol):
    def record_event(self, name: str, payload: Dict[str, Any]) -> None:
        ...


@runtime_checkable
class SessionRegistry(Protocol):
    async def push(self, user_id: str, event: Dict[str, Any]) -> int:
        """Deliver an event to every live session of the user."""
        ...


# =============================================================================
# Implementations
# =============================================================================

class HttpRecommendationProvider:
    """
    Reads finalized letters from the platform API.

    Expects GET {base_url}/api/recommendations/{id}/letter to return the
    Letter fields as JSON. The API key is sent as a bearer token.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._client = client

    async def get_letter(self, recommendation_id: str) -> Letter:
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        url = f"{self.base_url}/api/recommendations/{recommendation_id}/letter"

        try:
            if self._client is not None:
                response = await self._client.get(url, headers=headers, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.get(url, headers=headers)
        except httpx.HTTPError as e:
            raise TransientDeliveryError(f"Recommendation provider unreachable: {e}")

        if response.status_code == 404:
            raise RecommendationNotFoundError(recommendation_id)
        if response.status_code >= 400:
            raise TransientDeliveryError(
                f"Recommendation provider returned HTTP {response.status_code}"
            )

        data = response.json()
        return Letter(
            recommendation_id=recommendation_id,
            content=data.get("content", ""),
            applicant_name=data.get("applicant_name", ""),
            program=data.get("program", ""),
            term=data.get("term", ""),
            owner_id=data.get("owner_id"),
            recommender_name=data.get("recommender_name"),
            university_ids=list(data.get("university_ids") or []),
        )


class StaticRecipientDirectory:
    """
    Recipient directory held in memory.

    YAML layout:
        recipients:
          - university_id: mit
            name: Massachusetts Institute of Technology
            delivery_method: api
            endpoint: https://admissions.example.edu/recommendations
            signing_secret: ...
    """

    def __init__(self, recipients: Iterable[RecipientConfig] = ()):
        self._recipients: Dict[str, RecipientConfig] = {
            r.university_id: r for r in recipients
        }

    @classmethod
    def from_yaml(cls, path: str) -> "StaticRecipientDirectory":
        file = Path(path)
        if not file.exists():
            logger.warning(f"Recipients file not found: {path}; directory is empty")
            return cls()

        with file.open() as f:
            data = yaml.safe_load(f) or {}

        recipients = [RecipientConfig.from_dict(item) for item in data.get("recipients", [])]
        logger.info(f"Loaded {len(recipients)} recipients from {path}")
        return cls(recipients)

    def add(self, recipient: RecipientConfig) -> None:
        self._recipients[recipient.university_id] = recipient

    async def get_recipient(self, university_id: str) -> RecipientConfig:
        recipient = self._recipients.get(university_id)
        if recipient is None:
            raise RecipientNotFoundError(university_id)
        return recipient

    def __len__(self) -> int:
        return len(self._recipients)


class SmtpNotifier:
    """
    Sends plain-text mail through an SMTP relay.

    smtplib blocks, so each send runs in a worker thread that an asyncio
    timeout cannot interrupt. `timeout` is therefore a deadline for the whole
    session: every socket operation gets only the time left, and once it is
    used up the message is not handed to the relay. Keep it below the
    dispatch timeout so a send abandoned by the dispatcher cannot still go out.
    """

    def __init__(
        self,
        host: str,
        port: int = 25,
        sender: str = "noreply@recdelivery.local",
        username: str = "",
        password: str = "",
        use_tls: bool = False,
        timeout: float = 20.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.host = host
        self.port = port
        self.sender = sender
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.timeout = timeout
        self._clock = clock

    async def send(self, to: str, subject: str, body: str) -> str:
        message = EmailMessage()
        message["From"] = self.sender
        message["To"] = to
        message["Subject"] = subject
        message["Message-ID"] = make_msgid(domain=self.sender.split("@")[-1])
        message.set_content(body)

        await asyncio.to_thread(self._send_sync, message)
        return message["Message-ID"]

    def _send_sync(self, message: EmailMessage) -> None:
        deadline = self._clock() + self.timeout
        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
                if self.use_tls:
                    self._remaining(smtp, deadline, "STARTTLS")
                    smtp.starttls()
                if self.username:
                    self._remaining(smtp, deadline, "login")
                    smtp.login(self.username, self.password)
                self._remaining(smtp, deadline, "sending")
                smtp.send_message(message)
        except (smtplib.SMTPRecipientsRefused, smtplib.SMTPSenderRefused) as e:
            raise PermanentDeliveryError(f"SMTP rejected message: {e}")

    def _remaining(self, smtp: smtplib.SMTP, deadline: float, step: str) -> float:
        """Time left before `deadline`; the socket timeout is narrowed to it."""
        remaining = deadline - self._clock()
        if remaining <= 0:
            raise TransientDeliveryError(f"SMTP session exceeded {self.timeout:g}s before {step}")
        sock = getattr(smtp, "sock", None)
        if sock is not None:
            sock.settimeout(remaining)
        return remaining


class ObservabilityTelemetrySink:
    """Writes pipeline events to the structured log and the alert counter."""

    def __init__(self, logger_name: str = "recdelivery.telemetry"):
        self._logger = logging.getLogger(logger_name)

    def record_event(self, name: str, payload: Dict[str, Any]) -> None:
        self._logger.warning(
            f"Telemetry event: {name}",
            extra={"event_name": name, "event_payload": payload},
        )
        record_counter("monitoring_alerts_total", attributes={"alert": name})

"""
Deliverers

One Deliverer per delivery method. A deliverer makes exactly one attempt to
hand a letter to a recipient and classifies the result; it never touches
the database.

- api:    signed JSON POST to the recipient endpoint (httpx)
- email:  formatted letter handed to the Notifier
- manual: accepted immediately, confirmed out of band
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
from typing import Dict, Optional, Tuple

import httpx

from ..observability import inject_trace_context
from .collaborators import Letter, Notifier, RecipientConfig
from .errors import PermanentDeliveryError
from .models import DeliveryMethod, DeliveryOutcome, SubmissionRecord

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Signature"
TIMESTAMP_HEADER = "X-Timestamp"
SUBMISSION_HEADER = "X-Submission-ID"


def format_letter(letter: Letter, recipient: RecipientConfig) -> str:
    """Plain-text rendering of a letter for one university."""
    header = f"Letter of Recommendation for {letter.applicant_name}\n\n"
    program = f"Program: {letter.program}\n"
    term = f"Application Term: {letter.term}\n"
    university = f"University: {recipient.name}\n\n"
    return header + program + term + university + letter.content


def sign_payload(secret: str, timestamp: str, body: bytes) -> str:
    """HMAC-SHA256 over '<timestamp>.<body>', hex encoded and prefixed."""
    message = timestamp.encode() + b"." + body
    digest = hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


class Deliverer:
    """Interface for delivery channel plugins."""

    method: DeliveryMethod

    def validate(self, letter: Letter, recipient: RecipientConfig) -> Tuple[bool, Optional[str]]:
        missing = [
            name
            for name, value in (
                ("applicant_name", letter.applicant_name),
                ("content", letter.content),
                ("program", letter.program),
                ("term", letter.term),
            )
            if not value
        ]
        if missing:
            return False, f"Letter is missing {', '.join(missing)}"
        return True, None

    async def deliver(
        self,
        record: SubmissionRecord,
        letter: Letter,
        recipient: RecipientConfig,
    ) -> DeliveryOutcome:
        raise NotImplementedError


class ApiDeliverer(Deliverer):
    """
    POSTs the letter to the university's endpoint.

    2xx is success, 4xx is permanent, 5xx/timeouts/network errors are
    transient.
    """

    method = DeliveryMethod.API

    def __init__(
        self,
        signing_secret: str = "",
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.signing_secret = signing_secret
        self.timeout = timeout
        self._client = client

    def validate(self, letter: Letter, recipient: RecipientConfig) -> Tuple[bool, Optional[str]]:
        if not recipient.endpoint:
            return False, f"No API endpoint configured for {recipient.name}"
        return super().validate(letter, recipient)

    def build_request(
        self,
        record: SubmissionRecord,
        letter: Letter,
        recipient: RecipientConfig,
    ) -> Tuple[bytes, Dict[str, str]]:
        payload = {
            "submission_id": record.id,
            "university_id": record.university_id,
            "recommendation": letter.to_dict(),
            "formatted_content": format_letter(letter, recipient),
        }
        body = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode()
        timestamp = str(int(time.time()))

        headers = {
            "Content-Type": "application/json",
            TIMESTAMP_HEADER: timestamp,
            SUBMISSION_HEADER: record.id,
        }
        secret = recipient.signing_secret or self.signing_secret
        if secret:
            headers[SIGNATURE_HEADER] = sign_payload(secret, timestamp, body)
        inject_trace_context(headers)
        return body, headers

    async def deliver(
        self,
        record: SubmissionRecord,
        letter: Letter,
        recipient: RecipientConfig,
    ) -> DeliveryOutcome:
        body, headers = self.build_request(record, letter, recipient)

        try:
            if self._client is not None:
                response = await self._client.post(recipient.endpoint, content=body, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(recipient.endpoint, content=body, headers=headers)
        except httpx.TimeoutException as e:
            return DeliveryOutcome.transient(f"Timeout posting to {recipient.name}: {e}")
        except httpx.HTTPError as e:
            return DeliveryOutcome.transient(f"Network error posting to {recipient.name}: {e}")

        status = response.status_code
        if 200 <= status < 300:
            return DeliveryOutcome.success(self._reference_from(response, record))
        if 400 <= status < 500:
            return DeliveryOutcome.permanent(
                f"{recipient.name} rejected submission: HTTP {status} {response.text[:200]}"
            )
        return DeliveryOutcome.transient(f"{recipient.name} unavailable: HTTP {status}")

    @staticmethod
    def _reference_from(response: httpx.Response, record: SubmissionRecord) -> str:
        try:
            data = response.json()
        except ValueError:
            data = None
        if isinstance(data, dict):
            for key in ("reference", "id", "external_reference"):
                if data.get(key):
                    return str(data[key])
        return f"api-{record.id[:8]}-{int(time.time())}"


class EmailDeliverer(Deliverer):
    """Sends the formatted letter to the university's admissions address."""

    method = DeliveryMethod.EMAIL

    def __init__(self, notifier: Notifier):
        self.notifier = notifier

    def validate(self, letter: Letter, recipient: RecipientConfig) -> Tuple[bool, Optional[str]]:
        if not recipient.email_address:
            return False, f"No email address configured for {recipient.name}"
        return super().validate(letter, recipient)

    async def deliver(
        self,
        record: SubmissionRecord,
        letter: Letter,
        recipient: RecipientConfig,
    ) -> DeliveryOutcome:
        subject = f"Letter of Recommendation: {letter.applicant_name} ({letter.program}, {letter.term})"
        body = format_letter(letter, recipient)

        try:
            transport_id = await self.notifier.send(recipient.email_address, subject, body)
        except PermanentDeliveryError as e:
            return DeliveryOutcome.permanent(e.message)
        except Exception as e:
            return DeliveryOutcome.transient(f"Email transport error: {e}")

        return DeliveryOutcome.success(transport_id or f"email-{record.id[:8]}")


class ManualDeliverer(Deliverer):
    """Universities that process recommendations by hand."""

    method = DeliveryMethod.MANUAL

    async def deliver(
        self,
        record: SubmissionRecord,
        letter: Letter,
        recipient: RecipientConfig,
    ) -> DeliveryOutcome:
        logger.info(f"Submission {record.id} to {recipient.name} awaits manual processing")
        return DeliveryOutcome.success(f"manual-{record.id[:8]}")


class DelivererRegistry:
    """Maps a delivery method to its deliverer."""

    def __init__(self):
        self._deliverers: Dict[DeliveryMethod, Deliverer] = {}

    def register(self, deliverer: Deliverer) -> None:
        method = DeliveryMethod(deliverer.method)
        if method in self._deliverers:
            raise ValueError(f"duplicate_deliverer_for_method:{method.value}")
        self._deliverers[method] = deliverer

    def get(self, method: DeliveryMethod) -> Optional[Deliverer]:
        return self._deliverers.get(DeliveryMethod(method))

    @property
    def methods(self):
        return sorted(m.value for m in self._deliverers)


def default_registry(
    notifier: Notifier,
    signing_secret: str = "",
    timeout: float = 30.0,
    client: Optional[httpx.AsyncClient] = None,
) -> DelivererRegistry:
    registry = DelivererRegistry()
    registry.register(ApiDeliverer(signing_secret=signing_secret, timeout=timeout, client=client))
    registry.register(EmailDeliverer(notifier))
    registry.register(ManualDeliverer())
    return registry

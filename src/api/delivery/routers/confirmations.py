"""
Confirmation Webhooks

Inbound receipts from university portals. Requests are signed with the
shared webhook secret: X-Signature carries sha256=<hex> over
"<X-Timestamp>.<raw body>".
"""

import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ValidationError as PydanticValidationError, model_validator

from ....core.submissions import ConfirmationMethod, SubmissionPipeline
from ...shared.dependencies import get_pipeline
from ...shared.exceptions import InvalidSignatureError, ValidationError
from ...shared.middleware import get_trace_id
from ...shared.responses import ErrorDetail, SuccessResponse
from ...shared.security import SIGNATURE_HEADER, TIMESTAMP_HEADER, verify_webhook_signature

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/confirmations", tags=["confirmations"])


class WebhookStatus(str, Enum):
    CONFIRMED = "confirmed"
    RECEIVED = "received"
    REJECTED = "rejected"
    FAILED = "failed"


class ConfirmationWebhook(BaseModel):
    """Receipt sent by a university portal."""
    submission_id: Optional[str] = None
    external_reference: Optional[str] = None
    status: WebhookStatus
    confirmed_at: Optional[datetime] = None
    confirmation_code: Optional[str] = None
    receipt_url: Optional[str] = None
    reason: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None

    @model_validator(mode="after")
    def _require_identifier(self) -> "ConfirmationWebhook":
        if not self.submission_id and not self.external_reference:
            raise ValueError("submission_id or external_reference is required")
        return self

    @property
    def identifier(self) -> str:
        return self.submission_id or self.external_reference


def _parse_webhook(raw: bytes) -> ConfirmationWebhook:
    try:
        return ConfirmationWebhook.model_validate_json(raw)
    except PydanticValidationError as e:
        details = [
            ErrorDetail(
                field=".".join(str(loc) for loc in error["loc"]) or None,
                message=error["msg"],
                code=error["type"],
            )
            for error in e.errors()
        ]
        raise ValidationError("Invalid confirmation webhook", details=details) from e


@router.post("/webhook")
async def confirmation_webhook(
    request: Request,
    pipeline: SubmissionPipeline = Depends(get_pipeline),
):
    """
    Apply a confirmation or rejection reported by a university.

    confirmed and received confirm the submission (repeats are no-ops);
    rejected and failed mark it failed with the given reason.
    """
    raw = await request.body()
    if not verify_webhook_signature(
        pipeline.config.webhook_secret,
        raw,
        request.headers.get(SIGNATURE_HEADER),
        request.headers.get(TIMESTAMP_HEADER),
        allow_unsigned=pipeline.config.webhook_insecure,
    ):
        raise InvalidSignatureError()

    webhook = _parse_webhook(raw)

    if webhook.status in (WebhookStatus.CONFIRMED, WebhookStatus.RECEIVED):
        payload = dict(webhook.payload or {})
        payload.setdefault("status", webhook.status.value)
        record = await pipeline.confirmations.confirm(
            webhook.identifier,
            confirmed_at=webhook.confirmed_at,
            payload=payload,
            method=ConfirmationMethod.WEBHOOK,
            confirmation_code=webhook.confirmation_code,
            receipt_url=webhook.receipt_url,
        )
    else:
        reason = webhook.reason or (webhook.payload or {}).get("reason") or webhook.status.value
        record = await pipeline.confirmations.reject(webhook.identifier, str(reason), actor="webhook")

    logger.info(f"Webhook {webhook.status.value} applied to {record.id} (now {record.status.value})")
    return SuccessResponse.create(
        record.to_dict(),
        correlation_id=record.recommendation_id,
        trace_id=get_trace_id(),
    )

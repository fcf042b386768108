"""
Admin/Operator API

Manual interventions on the delivery pipeline: retries, priority changes,
manual confirmation, queue inspection and control of the background loops.
Protected by X-Admin-Key when ADMIN_API_KEY is configured.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from ....core.submissions import ConfirmationMethod, SubmissionPipeline
from ....core.submissions.models import MAX_PRIORITY, MIN_PRIORITY
from ...shared.dependencies import get_pipeline, require_admin
from ...shared.middleware import get_trace_id
from ...shared.responses import ErrorResponse, ListResponse, SuccessResponse

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/admin",
    tags=["admin"],
    responses={401: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
)


class RetryRequest(BaseModel):
    """Request to re-queue a failed submission."""
    priority: Optional[int] = Field(None, ge=MIN_PRIORITY, le=MAX_PRIORITY)


class BulkRetryRequest(BaseModel):
    """Filters for re-queueing failed submissions in bulk; all optional."""
    university_id: Optional[str] = None
    max_retries: Optional[int] = Field(None, ge=0, description="Only records with fewer retries than this")
    older_than_minutes: Optional[float] = Field(None, ge=0, description="Only records that failed this long ago")
    limit: int = Field(1000, ge=1, le=10000)


class PriorityRequest(BaseModel):
    priority: int = Field(..., ge=MIN_PRIORITY, le=MAX_PRIORITY)


class ManualConfirmRequest(BaseModel):
    """Manual confirmation, e.g. after a phone call with the admissions office."""
    confirmation_code: Optional[str] = None
    receipt_url: Optional[str] = None
    confirmed_at: Optional[datetime] = None
    notes: Optional[str] = None
    override: bool = False


# Submission interventions

@router.post("/submissions/{submission_id}/retry")
async def retry_submission(
    submission_id: str,
    body: Optional[RetryRequest] = None,
    actor: str = Depends(require_admin),
    pipeline: SubmissionPipeline = Depends(get_pipeline),
):
    """Re-queue a failed submission with a fresh retry budget."""
    priority = body.priority if body else None
    record = await pipeline.scheduler.retry(submission_id, actor, priority=priority)
    return SuccessResponse.create(record.to_dict(), correlation_id=record.recommendation_id, trace_id=get_trace_id())


@router.post("/submissions/retry-failed")
async def retry_failed_submissions(
    body: Optional[BulkRetryRequest] = None,
    actor: str = Depends(require_admin),
    pipeline: SubmissionPipeline = Depends(get_pipeline),
):
    """Re-queue failed submissions, oldest first, optionally filtered."""
    body = body or BulkRetryRequest()
    result = await pipeline.scheduler.retry_failed(
        actor,
        university_id=body.university_id,
        max_retries=body.max_retries,
        older_than_minutes=body.older_than_minutes,
        limit=body.limit,
    )
    return SuccessResponse.create(result.to_dict(), trace_id=get_trace_id())


@router.put("/submissions/{submission_id}/priority")
async def set_submission_priority(
    submission_id: str,
    body: PriorityRequest,
    actor: str = Depends(require_admin),
    pipeline: SubmissionPipeline = Depends(get_pipeline),
):
    record = await pipeline.scheduler.set_priority(submission_id, body.priority)
    logger.info(f"Priority of {submission_id} changed to {body.priority} by {actor}")
    return SuccessResponse.create(record.to_dict(), correlation_id=record.recommendation_id, trace_id=get_trace_id())


@router.post("/submissions/{submission_id}/confirm")
async def confirm_submission(
    submission_id: str,
    body: Optional[ManualConfirmRequest] = None,
    actor: str = Depends(require_admin),
    pipeline: SubmissionPipeline = Depends(get_pipeline),
):
    """
    Confirm a submission by hand.

    Only submitted records can be confirmed unless override is set, which
    also confirms pending and failed records and is audited.
    """
    body = body or ManualConfirmRequest()
    payload: Dict[str, Any] = {"confirmed_by": actor}
    if body.notes:
        payload["notes"] = body.notes

    record = await pipeline.confirmations.confirm(
        submission_id,
        confirmed_at=body.confirmed_at,
        payload=payload,
        method=ConfirmationMethod.MANUAL,
        override=body.override,
        actor=actor,
        confirmation_code=body.confirmation_code,
        receipt_url=body.receipt_url,
    )
    return SuccessResponse.create(record.to_dict(), correlation_id=record.recommendation_id, trace_id=get_trace_id())


# Queue inspection

@router.get("/queue")
async def list_queue(
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    actor: str = Depends(require_admin),
    pipeline: SubmissionPipeline = Depends(get_pipeline),
):
    """Queue entries in dispatch order."""
    entries, total = await pipeline.scheduler.list_entries(limit=limit, offset=offset)
    return ListResponse.create(
        data=[e.to_dict() for e in entries],
        total=total,
        limit=limit,
        offset=offset,
        trace_id=get_trace_id(),
    )


@router.get("/queue/status")
async def queue_status(
    actor: str = Depends(require_admin),
    pipeline: SubmissionPipeline = Depends(get_pipeline),
):
    status = await pipeline.scheduler.queue_status()
    data = status.model_dump()
    data["processor"] = pipeline.processor.get_stats()
    return SuccessResponse.create(data, trace_id=get_trace_id())


# Background loops

@router.post("/scheduler/start")
async def start_scheduler(
    actor: str = Depends(require_admin),
    pipeline: SubmissionPipeline = Depends(get_pipeline),
):
    await pipeline.processor.start()
    logger.info(f"Submission processor started by {actor}")
    return SuccessResponse.create(pipeline.processor.get_stats(), trace_id=get_trace_id())


@router.post("/scheduler/stop")
async def stop_scheduler(
    actor: str = Depends(require_admin),
    pipeline: SubmissionPipeline = Depends(get_pipeline),
):
    await pipeline.processor.stop()
    logger.info(f"Submission processor stopped by {actor}")
    return SuccessResponse.create(pipeline.processor.get_stats(), trace_id=get_trace_id())


@router.post("/scheduler/run")
async def run_scheduler_once(
    actor: str = Depends(require_admin),
    pipeline: SubmissionPipeline = Depends(get_pipeline),
):
    """Process one batch now, whether or not the loop is running."""
    processed = await pipeline.processor.process_batch()
    return SuccessResponse.create({"processed": processed}, trace_id=get_trace_id())


@router.get("/monitoring/health")
async def monitoring_health(
    run: bool = Query(False, description="Run the checks before reporting"),
    actor: str = Depends(require_admin),
    pipeline: SubmissionPipeline = Depends(get_pipeline),
):
    """Latest monitoring findings, queue occupancy and per-university performance."""
    if run:
        await pipeline.monitoring.run_checks()
    report = await pipeline.monitoring.get_health_report()
    return SuccessResponse.create(report, trace_id=get_trace_id())


@router.get("/monitoring/universities")
async def university_performance(
    window_hours: float = Query(24, gt=0, le=24 * 30),
    actor: str = Depends(require_admin),
    pipeline: SubmissionPipeline = Depends(get_pipeline),
):
    """Success rate, confirmation time and health per university."""
    report = await pipeline.monitoring.get_university_performance(window_hours=window_hours)
    return ListResponse.create(data=report, total=len(report), trace_id=get_trace_id())

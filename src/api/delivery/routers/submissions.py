"""
Submission API

Creates the submissions for a finalized recommendation and serves the
polling side of status tracking.
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from ....core.submissions import SubmissionPipeline
from ....core.submissions.models import DEFAULT_PRIORITY, MAX_PRIORITY, MIN_PRIORITY
from ...shared.dependencies import get_pipeline
from ...shared.middleware import get_trace_id
from ...shared.responses import ErrorResponse, ListResponse, SuccessResponse

router = APIRouter(
    prefix="/api/submissions",
    tags=["submissions"],
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)


class SubmissionCreate(BaseModel):
    """Request to deliver a finalized recommendation."""
    recommendation_id: str = Field(..., min_length=1)
    university_ids: Optional[List[str]] = None
    priority: int = Field(DEFAULT_PRIORITY, ge=MIN_PRIORITY, le=MAX_PRIORITY)


@router.post("", status_code=201, response_model=ListResponse[Dict[str, Any]])
async def create_submissions(
    body: SubmissionCreate,
    pipeline: SubmissionPipeline = Depends(get_pipeline),
):
    """
    Create one queued submission per target university.

    Universities default to the ones selected on the letter. Universities
    that already have a submission for this recommendation keep it.
    """
    records = await pipeline.service.create_for_recommendation(
        body.recommendation_id,
        university_ids=body.university_ids,
        priority=body.priority,
    )
    data = [r.to_dict() for r in records]
    return ListResponse.create(
        data=data,
        total=len(data),
        correlation_id=body.recommendation_id,
        trace_id=get_trace_id(),
    )


@router.get("", response_model=ListResponse[Dict[str, Any]])
async def list_submissions(
    recommendation_id: str = Query(..., min_length=1),
    pipeline: SubmissionPipeline = Depends(get_pipeline),
):
    """All submissions of a recommendation."""
    records = await pipeline.service.list_for_recommendation(recommendation_id)
    data = [r.to_dict() for r in records]
    return ListResponse.create(
        data=data,
        total=len(data),
        correlation_id=recommendation_id,
        trace_id=get_trace_id(),
    )


@router.get("/summary")
async def submission_summary(
    recommendation_id: str = Query(..., min_length=1),
    pipeline: SubmissionPipeline = Depends(get_pipeline),
):
    """Per-status counts and per-university details for a recommendation."""
    summary = await pipeline.service.summary(recommendation_id)
    return SuccessResponse.create(summary, correlation_id=recommendation_id, trace_id=get_trace_id())


@router.get("/stats")
async def submission_stats(
    pipeline: SubmissionPipeline = Depends(get_pipeline),
):
    """Totals per status across all recommendations."""
    stats = await pipeline.service.stats()
    return SuccessResponse.create(stats, trace_id=get_trace_id())


@router.delete("")
async def delete_submissions(
    recommendation_id: str = Query(..., min_length=1),
    pipeline: SubmissionPipeline = Depends(get_pipeline),
):
    """Remove every submission of a deleted recommendation (queue rows cascade)."""
    deleted = await pipeline.service.delete_for_recommendation(recommendation_id)
    return SuccessResponse.create({"deleted": deleted}, correlation_id=recommendation_id, trace_id=get_trace_id())


@router.get("/{submission_id}")
async def get_submission(
    submission_id: str,
    pipeline: SubmissionPipeline = Depends(get_pipeline),
):
    """One submission, with its confirmation receipt once confirmed."""
    record = await pipeline.service.get(submission_id)
    data = record.to_dict()
    receipt = await pipeline.store.get_receipt(submission_id)
    data["receipt"] = receipt.to_dict() if receipt else None
    return SuccessResponse.create(data, correlation_id=record.recommendation_id, trace_id=get_trace_id())


@router.get("/{submission_id}/audit")
async def get_submission_audit(
    submission_id: str,
    pipeline: SubmissionPipeline = Depends(get_pipeline),
):
    """Manual and automatic interventions on a submission, oldest first."""
    record = await pipeline.service.get(submission_id)
    entries = await pipeline.store.list_audit(record.id)
    data = [e.to_dict() for e in entries]
    return ListResponse.create(data=data, total=len(data), trace_id=get_trace_id())

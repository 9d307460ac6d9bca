"""
Batch prospects router - API endpoints for batch research jobs.
"""

import csv
import io
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Header, Query, Response, status
from fastapi.responses import StreamingResponse
from sqlalchemy.exc import SQLAlchemyError

from prospect_research.core.dependencies import get_caller_id, get_dispatcher, get_job_service
from prospect_research.errors import raise_app_error
from prospect_research.schemas.batch import (
    BatchJobCreate,
    BatchJobCreateResponse,
    BatchJobDetail,
    BatchJobRead,
    BatchJobStatusUpdate,
    ProcessBatchResponse,
    RetryItemResponse,
)
from prospect_research.services.batch_dispatcher import (
    BatchDispatcher,
    BatchStateUnavailableError,
    ItemNotFoundError,
    JobNotFoundError,
    RetryRejectedError,
)
from prospect_research.services.batch_job_service import BatchJobService
from prospect_research.services.state_machine import InvalidTransitionError

router = APIRouter(prefix="/api/batch-prospects", tags=["batch-prospects"])

EXPORT_COLUMNS = [
    "index",
    "name",
    "address",
    "city",
    "state",
    "zip",
    "status",
    "romy_score",
    "romy_score_tier",
    "capacity_rating",
    "estimated_net_worth",
    "estimated_gift_capacity",
    "recommended_ask",
    "sources_count",
    "error_message",
]


def _raise_for_domain_error(exc: Exception) -> None:
    """Translate service exceptions into the standard error payload."""
    if isinstance(exc, JobNotFoundError):
        raise_app_error(404, "JOB_NOT_FOUND", "Job not found", {"job_id": str(exc.job_id)})
    if isinstance(exc, ItemNotFoundError):
        raise_app_error(404, "ITEM_NOT_FOUND", "Item not found", {"item_id": str(exc.item_id)})
    if isinstance(exc, RetryRejectedError):
        raise_app_error(409, "RETRY_REJECTED", str(exc))
    if isinstance(exc, InvalidTransitionError):
        raise_app_error(409, "INVALID_TRANSITION", str(exc), {"current": exc.current, "target": exc.target})
    if isinstance(exc, (BatchStateUnavailableError, SQLAlchemyError, OSError)):
        raise_app_error(503, "BATCH_STATE_UNAVAILABLE", "Batch state is temporarily unavailable")
    raise exc


@router.post("", response_model=BatchJobCreateResponse, status_code=status.HTTP_201_CREATED)
async def create_batch_job(
    data: BatchJobCreate,
    caller_id: str = Depends(get_caller_id),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    service: BatchJobService = Depends(get_job_service),
):
    """
    Create a batch research job from a list of prospect rows.

    Rows are normalized, deduplicated and validated; credits are charged once
    per Idempotency-Key (or per identical payload when no key is sent).
    """
    try:
        return await service.create_job(caller_id, data, idempotency_key)
    except (SQLAlchemyError, OSError) as exc:
        _raise_for_domain_error(exc)


@router.get("", response_model=List[BatchJobRead])
async def list_batch_jobs(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    caller_id: str = Depends(get_caller_id),
    service: BatchJobService = Depends(get_job_service),
):
    """List the caller's batch jobs, newest first."""
    try:
        return await service.list_jobs(caller_id, limit=limit, offset=offset)
    except (SQLAlchemyError, OSError) as exc:
        _raise_for_domain_error(exc)


@router.get("/{job_id}", response_model=BatchJobDetail)
async def get_batch_job(
    job_id: UUID,
    caller_id: str = Depends(get_caller_id),
    service: BatchJobService = Depends(get_job_service),
):
    """Get a job with all of its items."""
    try:
        return await service.get_job_detail(caller_id, job_id)
    except (JobNotFoundError, SQLAlchemyError, OSError) as exc:
        _raise_for_domain_error(exc)


@router.patch("/{job_id}", response_model=BatchJobRead)
async def update_batch_job_status(
    job_id: UUID,
    data: BatchJobStatusUpdate,
    caller_id: str = Depends(get_caller_id),
    service: BatchJobService = Depends(get_job_service),
):
    """Pause, resume (processing) or cancel a job."""
    try:
        return await service.update_status(caller_id, job_id, data.status)
    except (JobNotFoundError, InvalidTransitionError, SQLAlchemyError, OSError) as exc:
        _raise_for_domain_error(exc)


@router.delete("/{job_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_batch_job(
    job_id: UUID,
    caller_id: str = Depends(get_caller_id),
    service: BatchJobService = Depends(get_job_service),
):
    """Delete a job; its items are removed with it."""
    try:
        await service.delete_job(caller_id, job_id)
    except (JobNotFoundError, SQLAlchemyError, OSError) as exc:
        _raise_for_domain_error(exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{job_id}/process-batch", response_model=ProcessBatchResponse)
async def process_batch(
    job_id: UUID,
    caller_id: str = Depends(get_caller_id),
    dispatcher: BatchDispatcher = Depends(get_dispatcher),
):
    """Process the next bounded slice of a job. Call again while has_more is true."""
    try:
        return await dispatcher.process_batch(job_id, caller_id)
    except (JobNotFoundError, BatchStateUnavailableError) as exc:
        _raise_for_domain_error(exc)


@router.post("/{job_id}/items/{item_id}/retry", response_model=RetryItemResponse)
async def retry_batch_item(
    job_id: UUID,
    item_id: UUID,
    caller_id: str = Depends(get_caller_id),
    dispatcher: BatchDispatcher = Depends(get_dispatcher),
):
    """Manually retry one failed or pending item."""
    try:
        return await dispatcher.retry_item(job_id, item_id, caller_id)
    except (JobNotFoundError, ItemNotFoundError, RetryRejectedError, BatchStateUnavailableError) as exc:
        _raise_for_domain_error(exc)


@router.get("/{job_id}/export")
async def export_batch_job_csv(
    job_id: UUID,
    caller_id: str = Depends(get_caller_id),
    service: BatchJobService = Depends(get_job_service),
):
    """Export a job's items as CSV."""
    try:
        detail = await service.get_job_detail(caller_id, job_id)
    except (JobNotFoundError, SQLAlchemyError, OSError) as exc:
        _raise_for_domain_error(exc)

    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow(EXPORT_COLUMNS)
    for item in detail.items:
        writer.writerow(
            [
                item.item_index + 1,
                item.prospect_name or "",
                item.prospect_address or "",
                item.prospect_city or "",
                item.prospect_state or "",
                item.prospect_zip or "",
                item.status.value,
                item.romy_score if item.romy_score is not None else "",
                item.romy_score_tier or "",
                item.capacity_rating or "",
                item.estimated_net_worth if item.estimated_net_worth is not None else "",
                item.estimated_gift_capacity if item.estimated_gift_capacity is not None else "",
                item.recommended_ask if item.recommended_ask is not None else "",
                len(item.sources_found or []),
                item.error_message or "",
            ]
        )

    payload = output.getvalue()
    filename = f"batch-{job_id}.csv"
    return StreamingResponse(
        iter([payload]),
        media_type="text/csv",
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )
